"""Resolves pending tool-confirmation decisions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from agentgate.core.gateway import Gateway
from agentgate.server.dependencies import gateway_dependency, require_token
from agentgate.server.models import ConfirmationDecision

router = APIRouter(tags=["confirmations"], dependencies=[Depends(require_token)])


@router.get("/confirmations")
async def list_confirmations(gateway: Gateway = Depends(gateway_dependency)) -> list[dict]:
    return [
        {"token": d.token, "conversation_id": d.conversation_id, "user_id": d.user_id, "text": d.text}
        for d in gateway.gate.pending()
    ]


@router.post("/confirmations/{token}")
async def resolve_confirmation(
    token: str,
    decision: ConfirmationDecision,
    gateway: Gateway = Depends(gateway_dependency),
):
    pending = gateway.gate.get(token)
    if pending is None:
        raise HTTPException(status_code=404, detail="No pending confirmation for this token")
    if not gateway.gate.resolve(token, decision.user_id, decision.approved):
        raise HTTPException(status_code=403, detail="Only the requester can answer this confirmation")
    return {"token": token, "approved": decision.approved}
