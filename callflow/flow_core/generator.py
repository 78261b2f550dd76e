"""Draft a flow graph from a plain-language description of the agent."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .ir import FlowGraph
from .layout import apply_positions, initial_layout
from .normalize import strip_code_fences
from .validation import validate

if TYPE_CHECKING:
    from callflow.core.llm import CompletionBackend
    from callflow.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Flow generated successfully"

FLOW_GENERATOR_SYSTEM_PROMPT = """You design conversational flows for phone voice agents.
Turn the user's description into a flow graph.

NODE TYPES (each node has id, type, position {x, y} and data {label, ...}):
- start: entry point, data {"label": "Call Starts"}. Exactly one per flow.
- message: the agent speaks, data {"label": "Short title", "content": "What the agent says"}.
- listen: wait for the caller, data {"label": "Wait for response"}. Place after a question.
- branch: route on the caller's answer, data {"label": "Route by intent"}. Place after a listen.
- action: API call or data lookup, data {"label": "Action name", "actionType": "data_lookup"}.
- transfer: hand the call to a person, data {"label": "Transfer to Human", "transferNumber": "+1234567890"}.
- end: hang up, data {"label": "End Call", "endMessage": "Thank you, goodbye!"}.

RULES:
1. Begin with the start node.
2. Follow every question with a listen node.
3. Follow a listen with a branch when the answer selects between paths.
4. Every edge leaving a branch has a label naming the option; match the target's label.
5. Every path ends at an end or transfer node.
6. Use short, descriptive labels.

EDGES: {"id": "e-source-target", "source": "source-id", "target": "target-id", "label": "Option"}
Only branch edges carry a label.

RESPOND WITH JSON ONLY, no markdown:
{"nodes": [...], "edges": [...], "summary": "One sentence describing the flow"}"""


class GeneratedFlowShapeError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass(frozen=True, slots=True)
class GenerationResult:
    success: bool
    graph: FlowGraph | None = None
    summary: str = ""
    error: str | None = None
    errors: list[str] = field(default_factory=list)


def check_generated_shape(payload: Any) -> list[str]:
    """Shape problems that keep a model reply from being read as a graph at all."""
    if not isinstance(payload, dict):
        return ["Reply is not a JSON object"]
    errors: list[str] = []
    nodes = payload.get("nodes")
    edges = payload.get("edges")
    if not isinstance(nodes, list):
        errors.append("Missing or invalid nodes array")
    if not isinstance(edges, list):
        errors.append("Missing or invalid edges array")
    if errors:
        return errors

    for node in nodes:
        if not isinstance(node, dict) or not node.get("id") or not node.get("type"):
            errors.append(f"Invalid node structure: {json.dumps(node)}")
            continue
        data = node.get("data")
        if not isinstance(data, dict) or not data.get("label"):
            errors.append(f"Missing label for node {node['id']}")
    for edge in edges:
        if not isinstance(edge, dict) or not all(edge.get(k) for k in ("id", "source", "target")):
            errors.append(f"Invalid edge structure: {json.dumps(edge)}")
    return errors


def parse_generated_flow(raw: str) -> tuple[FlowGraph, str]:
    """Read a model reply into a laid-out graph and its summary.

    Raises ``json.JSONDecodeError`` for non-JSON replies,
    ``GeneratedFlowShapeError`` for JSON that is not a graph, and pydantic's
    ``ValidationError`` for unknown node types or malformed fields. Structural
    rules are left to :func:`validate`.
    """
    payload = json.loads(strip_code_fences(raw))
    shape_errors = check_generated_shape(payload)
    if shape_errors:
        raise GeneratedFlowShapeError(shape_errors)

    for edge in payload["edges"]:
        edge.setdefault("animated", True)
    summary = str(payload.get("summary") or DEFAULT_SUMMARY)

    graph = FlowGraph.from_payload({"nodes": payload["nodes"], "edges": payload["edges"]})
    # Positions from the model are replaced by BFS leveling from Start
    return apply_positions(graph, initial_layout(graph)), summary


class FlowGenerator:
    """Ask a language model for a flow and keep it only if it validates."""

    def __init__(self, backend: CompletionBackend | None = None) -> None:
        self._backend = backend

    @classmethod
    def from_settings(cls, settings: Settings) -> FlowGenerator:
        from callflow.core.langchain_adapter import build_flow_drafter

        return cls(build_flow_drafter(settings))

    @property
    def available(self) -> bool:
        return self._backend is not None

    async def generate(self, description: str) -> GenerationResult:
        """Never raises; failures come back as ``success=False`` with an error."""
        description = description.strip()
        if not description:
            return GenerationResult(success=False, error="Describe the agent to generate a flow")
        if self._backend is None:
            return GenerationResult(
                success=False, error="No language model configured; set OPENAI_API_KEY"
            )

        logger.info("Generating flow for: %r", description)
        try:
            raw = await self._backend.complete(
                FLOW_GENERATOR_SYSTEM_PROMPT, f"Create a voice agent flow for: {description}"
            )
        except Exception as e:
            logger.error("Flow generation request failed: %s", e)
            return GenerationResult(success=False, error=f"Failed to generate flow: {e}")

        logger.debug("Flow generator raw reply: %r", raw)
        try:
            graph, summary = parse_generated_flow(raw or "")
        except json.JSONDecodeError:
            logger.warning("Flow generator reply is not JSON")
            return GenerationResult(
                success=False, error="Failed to parse AI response. Please try again."
            )
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            logger.warning("Generated flow has invalid fields: %s", errors)
            return GenerationResult(success=False, error="Invalid flow structure", errors=errors)
        except GeneratedFlowShapeError as e:
            logger.warning("Generated flow has invalid shape: %s", e.errors)
            return GenerationResult(success=False, error="Invalid flow structure", errors=e.errors)

        result = validate(graph)
        if not result.valid:
            logger.warning("Generated flow failed validation: %s", result.errors)
            return GenerationResult(
                success=False,
                graph=graph,
                summary=summary,
                error="Invalid flow structure",
                errors=result.errors,
            )

        logger.info("Generated flow with %d nodes and %d edges", len(graph.nodes), len(graph.edges))
        return GenerationResult(success=True, graph=graph, summary=summary)
