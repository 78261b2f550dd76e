from __future__ import annotations

from fastapi import APIRouter

from callflow.api.calls import router as calls_router
from callflow.api.flows import router as flows_router

api_router = APIRouter(prefix="/api")

api_router.include_router(flows_router)
api_router.include_router(calls_router)
