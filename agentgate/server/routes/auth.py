"""OAuth redirect target for remote tool endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse

from agentgate.core.gateway import Gateway
from agentgate.server.dependencies import gateway_dependency

router = APIRouter(tags=["auth"])


@router.get("/mcp/callback", response_class=HTMLResponse)
async def mcp_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    gateway: Gateway = Depends(gateway_dependency),
):
    """Hand the authorization code to the endpoint waiting for it."""
    if error:
        raise HTTPException(status_code=400, detail=f"Authorization failed: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing 'code' or 'state'")
    if not gateway.sessions.complete_pending_auth(state, code):
        raise HTTPException(status_code=404, detail="No pending authorization matches this state")
    return "<html><body><h3>Authorization complete.</h3><p>You can close this window.</p></body></html>"
