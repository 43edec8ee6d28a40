"""API routes for host view signals (visibility and connectivity)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter(prefix="/signals", tags=["signals"])


class VisibilityRequest(BaseModel):
    visible: bool


@router.post("/visibility")
async def set_visibility(body: VisibilityRequest, request: Request) -> dict[str, Any]:
    host_signals = request.app.state.services.signals
    host_signals.set_visible(body.visible)
    return {"visible": host_signals.visible}


@router.post("/online")
async def notify_online(request: Request) -> dict[str, Any]:
    request.app.state.services.signals.notify_online()
    return {"status": "ok"}
