"""FastAPI dependencies: the shared gateway and bearer-token auth."""

from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException

from agentgate.core.gateway import Gateway, get_gateway, reset_gateway

logger = logging.getLogger(__name__)


def gateway_dependency() -> Gateway:
    return get_gateway()


def require_token(
    authorization: str | None = Header(default=None),
    gateway: Gateway = Depends(gateway_dependency),
) -> None:
    """Enforce ``Authorization: Bearer <token>`` when the config sets one."""
    expected = gateway.config.http.auth_token
    if not expected:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or token != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing bearer token")


async def shutdown_gateway() -> None:
    """Close remote sessions and drop the gateway."""
    from agentgate.core import gateway as gateway_module

    current = gateway_module._gateway
    if current is not None:
        try:
            await current.close()
        except Exception as e:
            logger.warning("Error while closing remote sessions: %s", e)
    reset_gateway()
