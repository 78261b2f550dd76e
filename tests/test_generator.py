from __future__ import annotations

import json

import pytest
from flow_test_utils import FakeBackend, generated_flow_payload

from callflow.flow_core.generator import (
    FLOW_GENERATOR_SYSTEM_PROMPT,
    FlowGenerator,
    GeneratedFlowShapeError,
    check_generated_shape,
    parse_generated_flow,
)
from callflow.flow_core.validation import validate


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generates_valid_laid_out_flow() -> None:
    backend = FakeBackend(json.dumps(generated_flow_payload()))
    result = await FlowGenerator(backend).generate("  a pizza shop  ")

    assert result.success
    assert result.error is None
    assert result.summary == "Pizza ordering with two options."
    assert result.graph is not None
    assert validate(result.graph).valid

    positions = {n.id: (n.position.x, n.position.y) for n in result.graph.nodes}
    assert positions["start-1"] == (300, 50)
    assert positions["branch-1"] == (300, 470)
    assert positions["msg-margherita"] == (200, 610)
    assert positions["msg-pepperoni"] == (400, 610)
    assert positions["end-1"] == (300, 750)

    edges = result.graph.to_payload()["edges"]
    assert all(e["animated"] is True for e in edges)

    system_prompt, user_message = backend.prompts[0]
    assert system_prompt == FLOW_GENERATOR_SYSTEM_PROMPT
    assert user_message == "Create a voice agent flow for: a pizza shop"


@pytest.mark.unit
def test_fenced_reply_without_summary_is_accepted() -> None:
    payload = generated_flow_payload()
    del payload["summary"]
    graph, summary = parse_generated_flow("```json\n" + json.dumps(payload) + "\n```")

    assert summary == "Flow generated successfully"
    assert len(graph.nodes) == 7


@pytest.mark.unit
def test_shape_errors_are_collected() -> None:
    assert check_generated_shape([]) == ["Reply is not a JSON object"]
    assert check_generated_shape({"nodes": []}) == ["Missing or invalid edges array"]

    errors = check_generated_shape(
        {
            "nodes": [{"id": "a", "type": "start", "data": {}}, {"type": "end"}],
            "edges": [{"id": "e1", "source": "a"}],
        }
    )
    assert errors == [
        "Missing label for node a",
        'Invalid node structure: {"type": "end"}',
        'Invalid edge structure: {"id": "e1", "source": "a"}',
    ]

    with pytest.raises(GeneratedFlowShapeError):
        parse_generated_flow('{"nodes": "nope", "edges": []}')


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_json_reply_fails_cleanly() -> None:
    result = await FlowGenerator(FakeBackend("Sure! Here is your flow.")).generate("pizza")

    assert not result.success
    assert result.graph is None
    assert result.error == "Failed to parse AI response. Please try again."


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_node_type_is_reported() -> None:
    payload = generated_flow_payload()
    payload["nodes"][1]["type"] = "sms"
    result = await FlowGenerator(FakeBackend(json.dumps(payload))).generate("pizza")

    assert not result.success
    assert result.error == "Invalid flow structure"
    assert result.errors


@pytest.mark.unit
@pytest.mark.asyncio
async def test_structurally_invalid_flow_is_rejected_with_graph() -> None:
    payload = generated_flow_payload()
    for edge in payload["edges"]:
        if edge["source"] == "branch-1":
            edge.pop("label")
    result = await FlowGenerator(FakeBackend(json.dumps(payload))).generate("pizza")

    assert not result.success
    assert result.graph is not None
    assert result.errors == [
        'Branch "Route by pizza" has a connection without a condition label',
        'Branch "Route by pizza" has a connection without a condition label',
    ]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_backend_failure_is_returned_not_raised() -> None:
    result = await FlowGenerator(FakeBackend(RuntimeError("rate limited"))).generate("pizza")

    assert not result.success
    assert result.error == "Failed to generate flow: rate limited"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_without_backend_generation_is_unavailable() -> None:
    generator = FlowGenerator()
    assert not generator.available

    result = await generator.generate("pizza")
    assert not result.success
    assert "OPENAI_API_KEY" in (result.error or "")

    blank = await FlowGenerator(FakeBackend("{}")).generate("   ")
    assert blank.error == "Describe the agent to generate a flow"
