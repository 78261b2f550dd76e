"""Resolve a caller's utterance to one of a branch's choices."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .ir import FlowEdge, FlowGraph
from .normalize import find_best_match, strip_code_fences

if TYPE_CHECKING:
    from callflow.core.llm import CompletionBackend

logger = logging.getLogger(__name__)

QUICK_MATCH_CONFIDENCE = 0.85
LLM_DEFAULT_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.75
NONE_SENTINEL = "NONE"

@dataclass(frozen=True, slots=True)
class IntentResult:
    intent: str | None
    confidence: float
    reasoning: str


def build_classification_prompt(candidates: list[str]) -> str:
    numbered = "\n".join(f'{i}. "{c}"' for i, c in enumerate(candidates, 1))
    return (
        "You are an intent classifier. Match user speech to one of these options:\n\n"
        f"OPTIONS:\n{numbered}\n\n"
        "RULES:\n"
        "- Return the EXACT option text if matched (copy character-for-character)\n"
        '- "margarita" -> "Margarita Pizza" (partial word match is valid)\n'
        '- "pepperoni" -> "Pepperoni Pizza" (partial word match is valid)\n'
        f'- If no match possible, return "{NONE_SENTINEL}"\n\n'
        "RESPOND WITH JSON ONLY:\n"
        f'{{"intent": "EXACT OPTION TEXT OR {NONE_SENTINEL}", "confidence": 0.9}}'
    )


def _parse_reply(raw: str) -> tuple[str | None, float | None]:
    """Pull the claimed intent and confidence out of a model reply."""
    text = strip_code_fences(raw)
    try:
        parsed: Any = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return (text or None), None
    if isinstance(parsed, str):
        return (parsed or None), None
    if not isinstance(parsed, dict):
        return None, None
    intent = parsed.get("intent")
    confidence = parsed.get("confidence")
    if not isinstance(confidence, int | float) or isinstance(confidence, bool):
        confidence = None
    else:
        confidence = min(max(float(confidence), 0.0), 1.0)
    return (str(intent) if intent is not None else None), confidence


class IntentResolver:
    """Tiered resolution: local fuzzy match, remote classifier, local fallback.

    A returned intent is always one of the given candidates, byte for byte: the
    remote reply is only used as a query for the local matcher. ``resolve``
    never raises; backend failures degrade to the fallback tier.
    """

    def __init__(self, backend: CompletionBackend | None = None) -> None:
        self._backend = backend

    @property
    def has_remote(self) -> bool:
        return self._backend is not None

    async def resolve(self, utterance: str, candidates: list[str]) -> IntentResult:
        logger.info("Classifying %r against %s", utterance, candidates)

        quick = find_best_match(utterance, candidates)
        if quick is not None:
            return IntentResult(quick, QUICK_MATCH_CONFIDENCE, "Quick keyword match")

        if self._backend is None:
            logger.info("No classifier credential configured, using keyword fallback")
            return self._fallback(utterance, candidates)

        try:
            raw = await self._backend.complete(
                build_classification_prompt(candidates), f'User said: "{utterance}"'
            )
        except Exception as e:
            logger.warning("Intent classifier failed, using keyword fallback: %s", e)
            return self._fallback(utterance, candidates)

        logger.debug("Classifier raw reply: %r", raw)
        claimed, confidence = _parse_reply(raw or "")
        if claimed is None or claimed.strip().upper() == NONE_SENTINEL:
            return IntentResult(None, confidence or 0.0, "No match (LLM)")

        matched = find_best_match(claimed, candidates)
        if matched is not None:
            return IntentResult(
                matched,
                confidence if confidence is not None else LLM_DEFAULT_CONFIDENCE,
                "LLM classification",
            )
        return IntentResult(
            None, 0.0, f'LLM returned "{claimed}" but no match in available intents'
        )

    @staticmethod
    def _fallback(utterance: str, candidates: list[str]) -> IntentResult:
        match = find_best_match(utterance, candidates)
        if match is not None:
            return IntentResult(match, FALLBACK_CONFIDENCE, "Keyword match (fallback)")
        return IntentResult(None, 0.0, "No match found (fallback)")


def _choice_label(graph: FlowGraph, edge: FlowEdge) -> str:
    if edge.has_label:
        return str(edge.label)
    target = graph.node_by_id(edge.target)
    return target.label if target is not None else ""


def candidates_for_branch(graph: FlowGraph, branch_id: str) -> list[str]:
    """Choice labels of a branch: edge label, else the target node's label."""
    return [
        label for label in (_choice_label(graph, e) for e in graph.outgoing(branch_id)) if label
    ]


def match_branch_edge(graph: FlowGraph, branch_id: str, intent: str | None) -> FlowEdge | None:
    """Find the outgoing edge of ``branch_id`` that ``intent`` selects.

    Exact (case-insensitive) match on the edge label or target label first,
    then substring containment in either direction.
    """
    if not intent:
        return None
    wanted = intent.lower().strip()
    if not wanted:
        return None
    edges = graph.outgoing(branch_id)

    def labels(edge: FlowEdge) -> tuple[str, str]:
        target = graph.node_by_id(edge.target)
        edge_label = (edge.label or "").lower().strip()
        node_label = (target.label if target is not None else "").lower().strip()
        return edge_label, node_label

    for edge in edges:
        edge_label, node_label = labels(edge)
        if (edge_label and edge_label == wanted) or (node_label and node_label == wanted):
            return edge

    for edge in edges:
        edge_label, node_label = labels(edge)
        if edge_label and (edge_label in wanted or wanted in edge_label):
            return edge
        if node_label and (node_label in wanted or wanted in node_label):
            return edge
    return None
