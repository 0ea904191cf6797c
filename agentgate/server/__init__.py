"""HTTP server for agentgate."""

from agentgate.server.app import create_app

__all__ = ["create_app"]
