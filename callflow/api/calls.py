from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from callflow.core.app_context import get_app_context
from callflow.flow_core.ir import FlowGraph
from callflow.services.call_sessions import CallSessionManager, CallSessionNotFound

router = APIRouter(prefix="/calls", tags=["calls"])


def _sessions(request: Request) -> CallSessionManager:
    return get_app_context(request.app).sessions


@router.post("/{call_id}", status_code=201)
async def open_call(call_id: str, graph: FlowGraph, request: Request) -> dict[str, Any]:
    """Start tracking a live call against the flow in the body."""
    engine = await _sessions(request).open(call_id, graph)
    return engine.snapshot()


@router.post("/{call_id}/events", status_code=202)
async def post_call_event(call_id: str, event: dict[str, Any], request: Request) -> dict[str, Any]:
    """Queue one platform event; the engine applies it asynchronously."""
    try:
        _sessions(request).submit(call_id, event)
    except CallSessionNotFound:
        raise HTTPException(status_code=404, detail="Call session not found") from None
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc
    return {"accepted": True}


@router.get("/{call_id}")
async def get_call(call_id: str, request: Request) -> dict[str, Any]:
    sessions = _sessions(request)
    try:
        engine = sessions.get(call_id)
    except CallSessionNotFound:
        raise HTTPException(status_code=404, detail="Call session not found") from None
    await engine.settle()
    return engine.snapshot()


@router.delete("/{call_id}")
async def close_call(call_id: str, request: Request) -> dict[str, Any]:
    try:
        return await _sessions(request).close(call_id)
    except CallSessionNotFound:
        raise HTTPException(status_code=404, detail="Call session not found") from None
