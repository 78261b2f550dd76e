"""Live call sessions: one traversal engine per call id."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from callflow.flow_core.engine import TraversalEngine
from callflow.flow_core.events import CallEnd, CallError, CallStart, parse_call_event
from callflow.flow_core.view import RecordingFlowView

if TYPE_CHECKING:
    from collections.abc import Callable

    from callflow.flow_core.ir import FlowGraph
    from callflow.settings import Settings

logger = logging.getLogger(__name__)


class CallSessionNotFound(KeyError):
    pass


class CallSessionManager:
    """Registry of running engines keyed by call id.

    Engines never share state; closing a session stops its engine and drops
    any background work still in flight. A session whose call ended or
    errored is closed automatically once ``finished_session_ttl_seconds``
    pass without a new call-start.
    """

    def __init__(
        self,
        settings: Settings,
        engine_factory: Callable[[FlowGraph, str], TraversalEngine] | None = None,
    ) -> None:
        self._settings = settings
        self._engine_factory = engine_factory or self._default_engine
        self._engines: dict[str, TraversalEngine] = {}
        self._expiry: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    def _default_engine(self, graph: FlowGraph, call_id: str) -> TraversalEngine:
        return TraversalEngine.from_settings(
            graph, self._settings, view=RecordingFlowView(), call_id=call_id
        )

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._engines

    def __len__(self) -> int:
        return len(self._engines)

    async def open(self, call_id: str, graph: FlowGraph) -> TraversalEngine:
        """Start tracking ``call_id`` against ``graph``, replacing any previous session."""
        async with self._lock:
            self._cancel_expiry(call_id)
            previous = self._engines.pop(call_id, None)
            if previous is not None:
                logger.info("Replacing existing session for call %s", call_id)
                await previous.stop()
            engine = self._engine_factory(graph, call_id)
            await engine.start()
            self._engines[call_id] = engine
        logger.info("Opened call session %s (%d nodes)", call_id, len(graph.nodes))
        return engine

    def get(self, call_id: str) -> TraversalEngine:
        try:
            return self._engines[call_id]
        except KeyError:
            raise CallSessionNotFound(call_id) from None

    def submit(self, call_id: str, raw_event: dict[str, Any]) -> None:
        """Parse a raw platform event and hand it to the call's engine.

        Raises ``CallSessionNotFound`` for unknown calls and pydantic's
        ``ValidationError`` for payloads that are not call events.
        """
        engine = self.get(call_id)
        event = parse_call_event(raw_event)
        engine.submit(event)
        if isinstance(event, CallStart):
            self._cancel_expiry(call_id)
        elif isinstance(event, CallEnd | CallError):
            self._schedule_expiry(call_id, engine)

    async def close(self, call_id: str) -> dict[str, Any]:
        async with self._lock:
            self._cancel_expiry(call_id)
            engine = self._engines.pop(call_id, None)
        if engine is None:
            raise CallSessionNotFound(call_id)
        snapshot = engine.snapshot()
        await engine.stop()
        logger.info("Closed call session %s", call_id)
        return snapshot

    async def close_all(self) -> None:
        async with self._lock:
            for call_id in list(self._expiry):
                self._cancel_expiry(call_id)
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            await engine.stop()

    def _schedule_expiry(self, call_id: str, engine: TraversalEngine) -> None:
        self._cancel_expiry(call_id)
        ttl = max(self._settings.finished_session_ttl_seconds, 0.0)
        task = asyncio.create_task(self._expire(call_id, engine, ttl), name=f"expire-{call_id}")
        self._expiry[call_id] = task

    def _cancel_expiry(self, call_id: str) -> None:
        task = self._expiry.pop(call_id, None)
        if task is not None:
            task.cancel()

    async def _expire(self, call_id: str, engine: TraversalEngine, ttl: float) -> None:
        await asyncio.sleep(ttl)
        async with self._lock:
            # The call id may have been reopened with a new engine meanwhile
            self._expiry.pop(call_id, None)
            if self._engines.get(call_id) is not engine:
                return
            self._engines.pop(call_id)
        await engine.stop()
        logger.info("Expired finished call session %s", call_id)
