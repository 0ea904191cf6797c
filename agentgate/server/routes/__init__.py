"""Route registration."""

from fastapi import FastAPI


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""
    from agentgate.server.routes.agents import router as agents_router
    from agentgate.server.routes.auth import router as auth_router
    from agentgate.server.routes.confirmations import router as confirmations_router
    from agentgate.server.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(agents_router)
    app.include_router(confirmations_router)
    app.include_router(auth_router)
