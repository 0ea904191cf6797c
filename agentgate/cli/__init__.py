"""Command-line interface for agentgate."""
