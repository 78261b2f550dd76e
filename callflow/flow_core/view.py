"""The visual side of a live traversal: which node glows, which are done."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol


class FlowView(Protocol):
    def highlight(self, node_id: str | None) -> None: ...

    def complete(self, node_id: str) -> None: ...

    def reset(self) -> None: ...


@dataclass(slots=True)
class ViewOp:
    op: Literal["highlight", "complete", "reset"]
    node_id: str | None = None


@dataclass(slots=True)
class RecordingFlowView:
    """In-memory view used by the HTTP surface, the CLI and tests.

    Keeps the current highlight, the completed set and the ordered list of
    operations so a client can replay the animation.
    """

    highlighted: str | None = None
    completed: set[str] = field(default_factory=set)
    ops: list[ViewOp] = field(default_factory=list)

    def highlight(self, node_id: str | None) -> None:
        self.highlighted = node_id
        self.ops.append(ViewOp("highlight", node_id))

    def complete(self, node_id: str) -> None:
        self.completed.add(node_id)
        self.ops.append(ViewOp("complete", node_id))

    def reset(self) -> None:
        self.highlighted = None
        self.completed.clear()
        self.ops.append(ViewOp("reset"))

    def snapshot(self) -> dict[str, Any]:
        return {
            "highlighted": self.highlighted,
            "completed": sorted(self.completed),
        }
