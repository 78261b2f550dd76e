from __future__ import annotations

from typing import Any

import pytest
from flow_test_utils import FakeExecutor, FakeInjector, GatedResolver, call_start_payload

from callflow.flow_core.actions.base import ActionResult
from callflow.flow_core.engine import TraversalEngine
from callflow.flow_core.events import (
    CallEnd,
    CallError,
    CallStart,
    Message,
    SpeechEnd,
    SpeechStart,
)
from callflow.flow_core.intent import IntentResolver
from callflow.flow_core.ir import FlowGraph
from callflow.flow_core.view import RecordingFlowView
from callflow.settings import Settings


def make_engine(graph: FlowGraph, resolver: Any = None, **kwargs: Any) -> TraversalEngine:
    return TraversalEngine(
        graph,
        resolver or IntentResolver(),
        view=RecordingFlowView(),
        start_completion_delay=0,
        end_completion_delay=0,
        call_id="test-call",
        **kwargs,
    )


def _view(engine: TraversalEngine) -> RecordingFlowView:
    assert isinstance(engine.view, RecordingFlowView)
    return engine.view


async def _reach_branch(engine: TraversalEngine, utterance: str = "I want A") -> None:
    engine.submit(CallStart(payload=call_start_payload()))
    engine.submit(SpeechStart())
    engine.submit(SpeechEnd())
    engine.submit(Message(role="user", transcript=utterance))
    await engine.settle()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_start_then_end_visits_start_and_end(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(CallEnd())
        await engine.drain()

    assert engine.state.visited_nodes == {"start", "end"}
    assert engine.state.current_node_id is None
    assert not engine.state.is_active
    assert _view(engine).highlighted is None
    assert _view(engine).completed == {"start", "end"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_start_records_caller(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        await engine.drain()

    state = engine.state
    assert state.is_active
    assert state.current_node_id == "start"
    assert state.visited_nodes == {"start"}
    assert state.customer_phone == "+15551234567"
    assert state.call_control_handle == "https://calls.example.com/control/abc"
    assert state.started_at is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_branch_scenario_routes_to_matching_message(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        await _reach_branch(engine, "I want A")
        await engine.drain()

    state = engine.state
    assert state.current_node_id == "msg-a"
    assert state.visited_nodes == {"start", "greeting", "listen", "branch"}
    assert not state.is_classifying
    assert state.detected_intent is None

    highlights = [op.node_id for op in _view(engine).ops if op.op == "highlight"]
    assert highlights == ["start", "greeting", "listen", "branch", "msg-a"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_branch_is_highlighted_before_classification_resolves(branching_graph: FlowGraph) -> None:
    resolver = GatedResolver("B")
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine, "the second one")

        assert engine.state.current_node_id == "branch"
        assert engine.state.is_classifying
        assert _view(engine).highlighted == "branch"
        # Optimistic highlight is not completion
        assert "branch" not in engine.state.visited_nodes
        assert resolver.calls == [("the second one", ["A", "B"])]

        resolver.release.set()
        await engine.drain()

    assert engine.state.current_node_id == "msg-b"
    assert "branch" in engine.state.visited_nodes


@pytest.mark.unit
@pytest.mark.asyncio
async def test_marker_during_classification_wins(branching_graph: FlowGraph) -> None:
    resolver = GatedResolver("A")
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine)
        assert engine.state.is_classifying

        engine.submit(Message(role="assistant", transcript="[[NODE:msg-b]] You picked B."))
        await engine.settle()
        assert engine.state.current_node_id == "msg-b"
        assert not engine.state.is_classifying

        resolver.release.set()
        await engine.drain()

    assert engine.state.current_node_id == "msg-b"
    assert "msg-a" not in engine.state.visited_nodes
    assert _view(engine).highlighted == "msg-b"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_error_discards_pending_classification(branching_graph: FlowGraph) -> None:
    resolver = GatedResolver("A")
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine)
        epoch = engine.state.epoch

        engine.submit(CallError(payload={"message": "transport lost"}))
        await engine.settle()
        resolver.release.set()
        await engine.drain()

    state = engine.state
    assert state.epoch == epoch + 1
    assert state.current_node_id is None
    assert state.visited_nodes == set()
    assert not state.is_active
    assert _view(engine).completed == set()
    assert _view(engine).highlighted is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_speech_start_does_not_advance_while_classifying(branching_graph: FlowGraph) -> None:
    resolver = GatedResolver(None)
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine)
        ops_before = len(_view(engine).ops)

        engine.submit(SpeechStart())
        await engine.settle()
        assert engine.state.current_node_id == "branch"
        assert len(_view(engine).ops) == ops_before

        resolver.release.set()
        await engine.drain()

    # No intent: position unchanged, classification flag cleared
    assert engine.state.current_node_id == "branch"
    assert not engine.state.is_classifying


@pytest.mark.unit
@pytest.mark.asyncio
async def test_newer_classification_owns_the_pending_flag(branching_graph: FlowGraph) -> None:
    resolver = GatedResolver("A")
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine, "hmm")
        engine.submit(Message(role="user", transcript="A please"))
        await engine.settle()
        assert len(resolver.calls) == 2

        resolver.release.set()
        await engine.drain()

    assert engine.state.current_node_id == "msg-a"
    assert not engine.state.is_classifying


@pytest.mark.unit
@pytest.mark.asyncio
async def test_events_before_call_start_are_ignored(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(SpeechStart())
        engine.submit(Message(role="assistant", transcript="[[NODE:greeting]] Hi"))
        engine.submit(CallEnd())
        await engine.drain()

    assert engine.state.current_node_id is None
    assert engine.state.visited_nodes == set()
    assert _view(engine).ops == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_marker_jumps_and_completes_previous(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(Message(role="assistant", transcript="[[NODE:listen]] What would you like?"))
        await engine.drain()

    assert engine.state.current_node_id == "listen"
    assert "start" in engine.state.visited_nodes
    assert engine.state.transcript[-1].content == "What would you like?"
    assert engine.state.transcript[-1].role == "assistant"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_marker_to_end_completes_it(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(Message(role="assistant", transcript="[[NODE:end]] Goodbye!"))
        await engine.drain()

    assert engine.state.current_node_id == "end"
    assert "end" in engine.state.visited_nodes


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_marker_falls_back_to_start_advance(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(Message(role="assistant", transcript="[[NODE:nope]] Hello there"))
        await engine.drain()

    assert engine.state.current_node_id == "greeting"
    assert "start" in engine.state.visited_nodes


@pytest.mark.unit
@pytest.mark.asyncio
async def test_superseded_classification_is_dropped_when_branch_is_reentered(
    branching_graph: FlowGraph,
) -> None:
    resolver = GatedResolver("A")
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine)
        engine.submit(Message(role="assistant", transcript="[[NODE:msg-b]] B it is."))
        engine.submit(Message(role="assistant", transcript="[[NODE:branch]] Actually, which one?"))
        await engine.settle()
        assert engine.state.current_node_id == "branch"
        assert engine.state.classification_ticket is None

        resolver.release.set()
        await engine.drain()
        assert engine.state.current_node_id == "branch"
        assert "msg-a" not in engine.state.visited_nodes

        # A fresh classification issued after re-entry still routes
        engine.submit(Message(role="user", transcript="A please"))
        await engine.drain()

    assert engine.state.current_node_id == "msg-a"
    assert len(resolver.calls) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unmatched_intent_is_cached_then_cleared_by_assistant_turn(
    branching_graph: FlowGraph,
) -> None:
    resolver = GatedResolver("Z")
    async with make_engine(branching_graph, resolver) as engine:
        await _reach_branch(engine, "something else")
        resolver.release.set()
        await engine.drain()

        assert engine.state.current_node_id == "branch"
        assert engine.state.detected_intent == "Z"
        assert not engine.state.is_classifying
        assert "branch" not in engine.state.visited_nodes

        engine.submit(Message(role="assistant", transcript="Sorry, could you repeat that?"))
        await engine.drain()

    assert engine.state.current_node_id == "branch"
    assert engine.state.detected_intent is None
    assert "branch" not in engine.state.visited_nodes


@pytest.mark.unit
@pytest.mark.asyncio
async def test_speech_start_on_unvisited_node_rehighlights(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(SpeechStart())
        engine.submit(SpeechStart())
        await engine.drain()

    # The greeting has not finished, so the second speech-start stays put
    assert engine.state.current_node_id == "greeting"
    highlights = [op.node_id for op in _view(engine).ops if op.op == "highlight"]
    assert highlights == ["start", "greeting", "greeting"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_new_call_resets_previous_traversal(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        await _reach_branch(engine)
        await engine.drain()
        first_epoch = engine.state.epoch

        engine.submit(CallStart(payload=call_start_payload()))
        await engine.drain()

    assert engine.state.epoch == first_epoch + 1
    assert engine.state.visited_nodes == {"start"}
    assert engine.state.current_node_id == "start"
    assert [op.op for op in _view(engine).ops].count("reset") == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_action_lookup_injects_context(action_graph: FlowGraph) -> None:
    context = "[CONTEXT UPDATE] Customer information retrieved:\n- Name: Ada"
    executor = FakeExecutor(ActionResult(success=True, context=context))
    injector = FakeInjector()
    engine = make_engine(action_graph, action_executor=executor, context_injector=injector)
    async with engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(SpeechStart())
        engine.submit(SpeechEnd())
        await engine.drain()

    assert executor.calls[0][0].endpoint == "https://crm.example.com/customers/{phone}"
    assert executor.calls[0][1] == "+15551234567"
    assert injector.injected == [("https://calls.example.com/control/abc", context)]
    assert engine.state.current_node_id == "end"
    assert engine.state.visited_nodes == {"start", "lookup", "end"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_action_without_control_handle_skips_injection(action_graph: FlowGraph) -> None:
    executor = FakeExecutor(ActionResult(success=True, context="[CONTEXT UPDATE] x"))
    injector = FakeInjector()
    engine = make_engine(action_graph, action_executor=executor, context_injector=injector)
    async with engine:
        engine.submit(CallStart(payload={"customer": {"number": "+1"}}))
        engine.submit(SpeechStart())
        engine.submit(SpeechEnd())
        await engine.drain()

    assert len(executor.calls) == 1
    assert injector.injected == []
    assert engine.state.current_node_id == "end"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_action_does_not_stop_traversal(action_graph: FlowGraph) -> None:
    executor = FakeExecutor(ActionResult(success=False, error="HTTP 500"))
    injector = FakeInjector()
    engine = make_engine(action_graph, action_executor=executor, context_injector=injector)
    async with engine:
        engine.submit(CallStart(payload=call_start_payload()))
        engine.submit(SpeechStart())
        engine.submit(SpeechEnd())
        engine.submit(CallEnd())
        await engine.drain()

    assert injector.injected == []
    assert engine.state.visited_nodes == {"start", "lookup", "end"}
    assert not engine.state.is_active


@pytest.mark.unit
@pytest.mark.asyncio
async def test_snapshot_includes_view(branching_graph: FlowGraph) -> None:
    async with make_engine(branching_graph) as engine:
        engine.submit(CallStart(payload=call_start_payload()))
        await engine.drain()
        snapshot = engine.snapshot()

    assert snapshot["call_id"] == "test-call"
    assert snapshot["current_node_id"] == "start"
    assert snapshot["has_call_control"] is True
    assert snapshot["view"] == {"highlighted": "start", "completed": ["start"]}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_settle_requires_running_engine(branching_graph: FlowGraph) -> None:
    engine = make_engine(branching_graph)
    with pytest.raises(RuntimeError):
        await engine.settle()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_engine_from_settings_runs_scenario(branching_graph: FlowGraph) -> None:
    settings = Settings(
        openai_api_key=None,
        start_completion_delay_ms=0,
        end_completion_delay_ms=0,
    )
    engine = TraversalEngine.from_settings(branching_graph, settings, call_id="from-settings")
    async with engine:
        await _reach_branch(engine, "A")
        await engine.drain()

    assert engine.state.current_node_id == "msg-a"
