from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from fastapi import FastAPI

    from callflow.flow_core.generator import FlowGenerator
    from callflow.services.call_sessions import CallSessionManager
    from callflow.settings import Settings


@dataclass(slots=True)
class AppContext:
    settings: Settings
    sessions: CallSessionManager
    generator: FlowGenerator


def set_app_context(app: FastAPI, ctx: AppContext) -> None:
    # Store one typed context object under app.state
    app.state.ctx = ctx


def get_app_context(app: FastAPI) -> AppContext:
    return cast("AppContext", app.state.ctx)
