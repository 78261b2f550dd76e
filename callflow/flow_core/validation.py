"""Structural validation for flow graphs before they are published."""

from __future__ import annotations

from dataclasses import dataclass, field

from .ir import BranchNode, FlowGraph, NodeKind


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


class FlowValidationError(ValueError):
    """Raised where an invalid graph must not proceed (publishing)."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Flow validation failed:\n" + "\n".join(self.errors))


def _display(label: str, node_id: str) -> str:
    return label if label.strip() else node_id


def validate(graph: FlowGraph) -> ValidationResult:
    """Check every structural rule and report all violations.

    Never raises. Each message names the offending node by its label (the id is
    used when the label is blank).
    """
    errors: list[str] = []

    starts = graph.nodes_of_kind(NodeKind.START)
    if not starts:
        errors.append("Flow must have a Start node")
    elif len(starts) > 1:
        names = ", ".join(f'"{_display(n.label, n.id)}"' for n in starts)
        errors.append(f"Flow can only have one Start node (found {names})")

    if not any(n.is_terminal for n in graph.nodes):
        errors.append("Flow must have at least one End or Transfer node")

    seen_ids: set[str] = set()
    for node in graph.nodes:
        if node.id in seen_ids:
            errors.append(f'Duplicate node id "{node.id}"')
        seen_ids.add(node.id)

    for edge in graph.edges:
        if edge.source not in seen_ids:
            errors.append(f'Connection "{edge.id}" starts at missing node "{edge.source}"')
        if edge.target not in seen_ids:
            errors.append(f'Connection "{edge.id}" ends at missing node "{edge.target}"')

    with_incoming = {e.target for e in graph.edges}
    with_outgoing = {e.source for e in graph.edges}

    for node in graph.nodes:
        name = _display(node.label, node.id)
        if node.type != NodeKind.START and node.id not in with_incoming:
            errors.append(f'Node "{name}" has no incoming connection')
        if not node.is_terminal and node.id not in with_outgoing:
            errors.append(f'Node "{name}" has no outgoing connection')

    for node in graph.nodes:
        if not isinstance(node, BranchNode):
            continue
        name = _display(node.label, node.id)
        labels_seen: set[str] = set()
        for edge in graph.outgoing(node.id):
            if not edge.has_label:
                errors.append(f'Branch "{name}" has a connection without a condition label')
                continue
            key = edge.label.strip().lower()  # type: ignore[union-attr]
            if key in labels_seen:
                errors.append(f'Branch "{name}" has duplicate condition label "{edge.label}"')
            labels_seen.add(key)

    return ValidationResult(valid=not errors, errors=errors)


def ensure_valid(graph: FlowGraph) -> None:
    result = validate(graph)
    if not result.valid:
        raise FlowValidationError(result.errors)
