"""Live traversal engine: keeps a call's position in its flow up to date."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, assert_never

from callflow.core.logging import call_id_ctx_var

from .events import CallEnd, CallError, CallEvent, CallStart, Message, SpeechEnd, SpeechStart
from .intent import IntentResolver, IntentResult, candidates_for_branch, match_branch_edge
from .ir import (
    ActionNode,
    ApiConfig,
    BranchNode,
    EndNode,
    FlowGraph,
    ListenNode,
    MessageNode,
    StartNode,
)
from .markers import parse_node_marker, strip_node_markers
from .state import TraversalState
from .view import FlowView, RecordingFlowView

if TYPE_CHECKING:
    from callflow.settings import Settings

    from .actions.base import ActionExecutor, ActionResult, ContextInjector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _DeferredCompletion:
    epoch: int
    node_id: str
    clear_highlight: bool = False


@dataclass(frozen=True, slots=True)
class _ClassificationDone:
    epoch: int
    ticket: int
    branch_id: str
    result: IntentResult | None


@dataclass(frozen=True, slots=True)
class _ActionDone:
    epoch: int
    node_id: str
    result: ActionResult


# Everything the consumer task applies: platform events and background completions
_Input = (
    CallStart
    | SpeechStart
    | SpeechEnd
    | Message
    | CallEnd
    | CallError
    | _DeferredCompletion
    | _ClassificationDone
    | _ActionDone
)


class TraversalEngine:
    """Single-writer state machine for one live call.

    Every input goes through one queue consumed by one task: platform events as
    well as the completions of work started in the background (intent
    classification, Action lookups, delayed node completions). Background work
    never touches the state directly. Its completion carries the epoch it was
    issued in (and, for classifications, the branch and ticket), and is dropped
    when the traversal has moved on. ``submit`` never blocks, so a slow
    classifier cannot hold up the event stream.

    The graph is read-only here.
    """

    def __init__(
        self,
        graph: FlowGraph,
        resolver: IntentResolver | None = None,
        *,
        view: FlowView | None = None,
        action_executor: ActionExecutor | None = None,
        context_injector: ContextInjector | None = None,
        start_completion_delay: float = 0.3,
        end_completion_delay: float = 1.0,
        call_id: str | None = None,
    ) -> None:
        self._graph = graph
        self._resolver = resolver or IntentResolver()
        self._view: FlowView = view if view is not None else RecordingFlowView()
        self._action_executor = action_executor
        self._context_injector = context_injector
        self._start_delay = start_completion_delay
        self._end_delay = end_completion_delay
        self._call_id = call_id

        self._state = TraversalState()
        self._queue: asyncio.Queue[_Input] = asyncio.Queue()
        self._runner: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._tickets = itertools.count(1)

    @classmethod
    def from_settings(
        cls,
        graph: FlowGraph,
        settings: Settings,
        *,
        view: FlowView | None = None,
        call_id: str | None = None,
    ) -> TraversalEngine:
        """Wire the production collaborators described by ``settings``."""
        from callflow.core.langchain_adapter import build_classifier

        from .actions import ApiLookupExecutor, ControlUrlContextInjector

        return cls(
            graph,
            IntentResolver(build_classifier(settings)),
            view=view,
            action_executor=ApiLookupExecutor(
                proxy_url=settings.action_proxy_url,
                proxy_token=settings.action_proxy_token,
                timeout=settings.action_timeout_seconds,
            ),
            context_injector=ControlUrlContextInjector(
                timeout=settings.context_injection_timeout_seconds
            ),
            start_completion_delay=settings.start_completion_delay,
            end_completion_delay=settings.end_completion_delay,
            call_id=call_id,
        )

    @property
    def graph(self) -> FlowGraph:
        return self._graph

    @property
    def state(self) -> TraversalState:
        return self._state

    @property
    def view(self) -> FlowView:
        return self._view

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if not self.running:
            self._runner = asyncio.create_task(self._run(), name=f"traversal-{self._call_id or 'call'}")

    async def stop(self) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if self._runner is not None:
            pending.append(self._runner)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._runner = None
        self._tasks.clear()

    async def __aenter__(self) -> TraversalEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def submit(self, event: CallEvent) -> None:
        """Queue a platform event. Returns immediately."""
        self._queue.put_nowait(event)

    async def settle(self) -> None:
        """Wait until every queued input has been applied."""
        self._require_running()
        await self._queue.join()

    async def drain(self) -> None:
        """Wait until queued inputs and all background work have finished."""
        self._require_running()
        while True:
            await self._queue.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    def snapshot(self) -> dict[str, Any]:
        data: dict[str, Any] = {"call_id": self._call_id, **self._state.to_dict()}
        view_snapshot = getattr(self._view, "snapshot", None)
        if callable(view_snapshot):
            data["view"] = view_snapshot()
        return data

    def _require_running(self) -> None:
        if not self.running:
            raise RuntimeError("Traversal engine is not running; call start() first")

    async def _run(self) -> None:
        call_id_ctx_var.set(self._call_id)
        while True:
            item = await self._queue.get()
            try:
                self._apply(item)
            except Exception:
                # One bad input must not stop tracking for the rest of the call
                logger.exception("Failed to apply %s", type(item).__name__)
            finally:
                self._queue.task_done()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _apply(self, item: _Input) -> None:
        if isinstance(item, CallStart):
            self._on_call_start(item)
        elif isinstance(item, CallError):
            self._on_error(item)
        elif isinstance(item, _DeferredCompletion):
            self._on_deferred_completion(item)
        elif isinstance(item, _ClassificationDone):
            self._on_classification_done(item)
        elif isinstance(item, _ActionDone):
            self._on_action_done(item)
        elif not self._state.is_active:
            logger.debug("Ignoring %s: no active call", item.type)
        elif isinstance(item, SpeechStart):
            self._on_speech_start()
        elif isinstance(item, SpeechEnd):
            self._on_speech_end()
        elif isinstance(item, Message):
            self._on_message(item)
        elif isinstance(item, CallEnd):
            self._on_call_end()
        else:
            assert_never(item)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------
    def _complete(self, node_id: str) -> None:
        if self._state.mark_visited(node_id):
            self._view.complete(node_id)

    def _move_to(self, node_id: str) -> None:
        self._state.current_node_id = node_id
        self._view.highlight(node_id)

    def _schedule_completion(self, node_id: str, delay: float, *, clear_highlight: bool = False) -> None:
        item = _DeferredCompletion(self._state.epoch, node_id, clear_highlight)

        async def _later() -> None:
            await asyncio.sleep(delay)
            self._queue.put_nowait(item)

        self._spawn(_later())

    # ------------------------------------------------------------------
    # Platform events
    # ------------------------------------------------------------------
    def _on_call_start(self, event: CallStart) -> None:
        logger.info("Call started - resetting flow")
        self._state = TraversalState(
            epoch=self._state.epoch + 1,
            is_active=True,
            customer_phone=event.customer_phone,
            call_control_handle=event.control_handle,
            started_at=datetime.now(),
        )
        self._view.reset()

        if self._state.customer_phone is None:
            logger.info("No customer phone in call data")
        if self._state.call_control_handle is None:
            logger.warning("No call control handle in call data - context injection disabled")

        start = self._graph.start_node()
        if start is None:
            logger.warning("Flow has no Start node; nothing to track")
            return
        self._move_to(start.id)
        self._schedule_completion(start.id, self._start_delay)

    def _on_speech_start(self) -> None:
        st = self._state
        current_id = st.current_node_id
        if current_id is None:
            return
        node = self._graph.node_by_id(current_id)

        if st.is_classifying and isinstance(node, BranchNode):
            logger.debug("Waiting for intent classification, not advancing")
            return

        if isinstance(node, StartNode) or st.is_visited(current_id):
            next_id = self._graph.next_node_id(current_id)
            if next_id is not None and not st.is_visited(next_id):
                logger.info("Advancing from %s to %s", current_id, next_id)
                self._complete(current_id)
                self._move_to(next_id)
        else:
            self._view.highlight(current_id)

    def _on_speech_end(self) -> None:
        st = self._state
        current_id = st.current_node_id
        if current_id is None:
            return
        node = self._graph.node_by_id(current_id)
        self._complete(current_id)

        if not isinstance(node, MessageNode | ActionNode):
            return

        if isinstance(node, ActionNode):
            api_config = node.data.api_config
            if api_config is not None and api_config.endpoint:
                self._dispatch_action(node, api_config)

        next_id = self._graph.next_node_id(current_id)
        next_node = self._graph.node_by_id(next_id)
        if next_node is None or st.is_visited(next_node.id):
            return
        logger.info("Moving to next node %s (%s)", next_node.id, next_node.type)
        self._move_to(next_node.id)
        if isinstance(next_node, EndNode):
            self._schedule_completion(next_node.id, self._end_delay)

    def _on_message(self, event: Message) -> None:
        st = self._state
        transcript = event.transcript or ""
        clean = strip_node_markers(transcript)
        if clean:
            st.add_line(event.role, clean, st.current_node_id)
        if not transcript:
            return
        if event.role == "assistant":
            self._on_assistant_message(transcript)
        elif event.role == "user":
            self._on_user_message(transcript)

    def _on_assistant_message(self, transcript: str) -> None:
        st = self._state
        marked_id = parse_node_marker(transcript)
        if marked_id is not None and self._graph.node_by_id(marked_id) is None:
            logger.warning("Marker names unknown node %r; ignoring it", marked_id)
            marked_id = None

        if marked_id is not None:
            previous = st.current_node_id
            if previous is not None and previous != marked_id:
                self._complete(previous)
                st.detected_intent = None
                if st.is_classifying:
                    logger.info("Marker moved past %s; pending classification is superseded", previous)
                    st.clear_classification()
            self._move_to(marked_id)
            if isinstance(self._graph.node_by_id(marked_id), EndNode):
                self._schedule_completion(marked_id, self._end_delay)
            return

        current_id = st.current_node_id
        node = self._graph.node_by_id(current_id)
        if isinstance(node, StartNode) and not st.is_visited(node.id):
            next_id = self._graph.next_node_id(node.id)
            if next_id is not None:
                logger.info("No marker; moving from start to %s", next_id)
                self._complete(node.id)
                self._move_to(next_id)
        elif isinstance(node, BranchNode) and st.detected_intent:
            edge = match_branch_edge(self._graph, node.id, st.detected_intent)
            if edge is not None:
                logger.info("Cached intent %r routes %s -> %s", st.detected_intent, node.id, edge.target)
                self._complete(node.id)
                self._move_to(edge.target)
            else:
                logger.warning("No branch edge matches cached intent %r", st.detected_intent)
            st.detected_intent = None

    def _on_user_message(self, transcript: str) -> None:
        st = self._state
        current_id = st.current_node_id
        if current_id is None:
            return
        node = self._graph.node_by_id(current_id)

        if isinstance(node, ListenNode):
            self._complete(node.id)
            next_node = self._graph.node_by_id(self._graph.next_node_id(node.id))
            if next_node is None:
                return
            # Highlight the branch right away; routing follows classification
            self._move_to(next_node.id)
            if isinstance(next_node, BranchNode):
                self._classify(next_node.id, transcript)
        elif isinstance(node, BranchNode):
            self._classify(node.id, transcript)

    def _on_call_end(self) -> None:
        st = self._state
        logger.info("Call ended")
        if st.current_node_id is not None:
            self._complete(st.current_node_id)

        end = self._graph.end_node()
        if end is not None and not st.is_visited(end.id):
            self._view.highlight(end.id)
            self._schedule_completion(end.id, self._end_delay, clear_highlight=True)
        else:
            self._view.highlight(None)

        st.is_active = False
        st.clear_classification()
        st.detected_intent = None
        st.current_node_id = None
        st.ended_at = datetime.now()

    def _on_error(self, event: CallError) -> None:
        logger.error("Call platform error: %s", event.payload)
        self._view.reset()
        self._state = TraversalState(epoch=self._state.epoch + 1, ended_at=datetime.now())

    # ------------------------------------------------------------------
    # Background work and its completions
    # ------------------------------------------------------------------
    def _on_deferred_completion(self, item: _DeferredCompletion) -> None:
        if item.epoch != self._state.epoch:
            logger.debug("Dropping completion of %s from an earlier call", item.node_id)
            return
        self._complete(item.node_id)
        if item.clear_highlight and self._state.current_node_id is None:
            self._view.highlight(None)

    def _classify(self, branch_id: str, transcript: str) -> None:
        st = self._state
        candidates = candidates_for_branch(self._graph, branch_id)
        if not candidates:
            logger.warning("Branch %s has no choices to classify against", branch_id)
            return
        ticket = next(self._tickets)
        st.is_classifying = True
        st.classification_ticket = ticket
        logger.info("Classifying intent for branch %s. Options: %s", branch_id, candidates)
        self._spawn(self._run_classification(st.epoch, ticket, branch_id, transcript, candidates))

    async def _run_classification(
        self, epoch: int, ticket: int, branch_id: str, transcript: str, candidates: list[str]
    ) -> None:
        result: IntentResult | None
        try:
            result = await self._resolver.resolve(transcript, candidates)
        except Exception as e:
            logger.error("Intent classification error: %s", e)
            result = None
        self._queue.put_nowait(_ClassificationDone(epoch, ticket, branch_id, result))

    def _on_classification_done(self, item: _ClassificationDone) -> None:
        st = self._state
        if item.epoch != st.epoch or not st.is_active:
            logger.debug("Dropping classification for %s from an earlier call", item.branch_id)
            return
        if st.classification_ticket != item.ticket:
            # A marker moved past the branch, or a newer classification took over
            logger.info("Dropping superseded classification for %s", item.branch_id)
            return
        st.clear_classification()
        if st.current_node_id != item.branch_id:
            logger.info(
                "Dropping stale classification for %s; traversal is at %s",
                item.branch_id,
                st.current_node_id,
            )
            return

        result = item.result
        if result is None or result.intent is None:
            logger.info("No clear intent detected: %s", result.reasoning if result else "error")
            return

        logger.info("Detected intent %r (confidence %.2f)", result.intent, result.confidence)
        st.detected_intent = result.intent
        edge = match_branch_edge(self._graph, item.branch_id, result.intent)
        if edge is None:
            logger.warning("No branch edge matches intent %r", result.intent)
            return
        logger.info("Routing %s -> %s", item.branch_id, edge.target)
        self._complete(item.branch_id)
        self._move_to(edge.target)
        st.detected_intent = None

    def _dispatch_action(self, node: ActionNode, api_config: ApiConfig) -> None:
        if self._action_executor is None:
            logger.warning("Action %s has an API config but no executor is configured", node.id)
            return
        executor = self._action_executor
        epoch = self._state.epoch
        phone = self._state.customer_phone

        async def _run_action() -> None:
            from .actions.base import ActionResult

            try:
                result = await executor.execute(api_config, phone)
            except Exception as e:
                logger.error("Action lookup for %s raised: %s", node.id, e)
                result = ActionResult(success=False, error=str(e))
            self._queue.put_nowait(_ActionDone(epoch, node.id, result))

        logger.info("Action node %s has an API config, executing", node.id)
        self._spawn(_run_action())

    def _on_action_done(self, item: _ActionDone) -> None:
        st = self._state
        result = item.result
        if item.epoch != st.epoch:
            logger.debug("Dropping action result for %s from an earlier call", item.node_id)
            return
        if not result.success:
            logger.warning("Action lookup for %s failed: %s", item.node_id, result.error)
            return
        if not result.context:
            logger.info("Action lookup for %s returned no context fields", item.node_id)
            return
        handle = st.call_control_handle
        if handle is None or self._context_injector is None:
            logger.warning("Cannot inject context for %s - no call control available", item.node_id)
            return
        self._spawn(self._context_injector.inject(handle, result.context))
