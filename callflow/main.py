from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from callflow.core.app_context import AppContext, get_app_context, set_app_context
from callflow.core.logging import RequestIdMiddleware, setup_logging
from callflow.flow_core.generator import FlowGenerator
from callflow.router import api_router
from callflow.services.call_sessions import CallSessionManager
from callflow.settings import get_settings

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    ctx = get_app_context(app)
    if ctx.settings.classifier_enabled:
        logger.info(
            "Remote intent classification enabled: model=%s provider=%s",
            ctx.settings.classifier_model,
            ctx.settings.classifier_provider,
        )
    else:
        logger.info(
            "OPENAI_API_KEY not set; intent resolution uses keyword matching only "
            "and flow generation is unavailable"
        )

    yield

    logger.info("Application shutting down; closing %d call sessions", len(ctx.sessions))
    await ctx.sessions.close_all()


app = FastAPI(
    title="Callflow API",
    version="0.1.0",
    description="Voice call flow compilation and live call tracking",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "Authorization", "X-Request-ID"],
)
app.add_middleware(RequestIdMiddleware)

_settings = get_settings()
set_app_context(
    app,
    AppContext(
        settings=_settings,
        sessions=CallSessionManager(_settings),
        generator=FlowGenerator.from_settings(_settings),
    ),
)


@app.get("/health", response_class=PlainTextResponse)
async def health() -> str:
    return "ok"


app.include_router(api_router)
