"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentgate import __version__
from agentgate.server.routes import register_routes


def create_app(cors_origins: list[str] | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Close remote tool sessions on shutdown
        from agentgate.server.dependencies import shutdown_gateway

        await shutdown_gateway()

    app = FastAPI(
        title="agentgate",
        description="Chat-driven LLM agent gateway",
        version=__version__,
        lifespan=lifespan,
    )

    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    return app
