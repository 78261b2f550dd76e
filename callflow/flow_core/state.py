"""Per-call traversal state owned by the traversal engine."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

MAX_TRANSCRIPT_LINES = 200


@dataclass(slots=True)
class TranscriptLine:
    """One utterance of the live call, markers removed."""

    timestamp: datetime
    role: Literal["user", "assistant", "system"]
    content: str
    node_id: str | None = None


@dataclass(slots=True)
class TraversalState:
    """Where one live call is in its flow.

    ``visited_nodes`` only grows while a call runs. ``epoch`` changes on every
    call-start and error so that async completions issued earlier can tell they
    are stale.
    """

    epoch: int = 0
    is_active: bool = False
    current_node_id: str | None = None
    visited_nodes: set[str] = field(default_factory=set)

    is_classifying: bool = False
    classification_ticket: int | None = None
    detected_intent: str | None = None

    customer_phone: str | None = None
    call_control_handle: str | None = None

    transcript: deque[TranscriptLine] = field(
        default_factory=lambda: deque(maxlen=MAX_TRANSCRIPT_LINES)
    )
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def is_visited(self, node_id: str | None) -> bool:
        return node_id is not None and node_id in self.visited_nodes

    def mark_visited(self, node_id: str) -> bool:
        """Record completion. Returns False if it was already visited."""
        if node_id in self.visited_nodes:
            return False
        self.visited_nodes.add(node_id)
        return True

    def clear_classification(self) -> None:
        self.is_classifying = False
        self.classification_ticket = None

    def add_line(
        self,
        role: Literal["user", "assistant", "system"],
        content: str,
        node_id: str | None = None,
    ) -> None:
        self.transcript.append(
            TranscriptLine(timestamp=datetime.now(), role=role, content=content, node_id=node_id)
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and logs."""
        return {
            "epoch": self.epoch,
            "is_active": self.is_active,
            "current_node_id": self.current_node_id,
            "visited_nodes": sorted(self.visited_nodes),
            "is_classifying": self.is_classifying,
            "detected_intent": self.detected_intent,
            "customer_phone": self.customer_phone,
            "has_call_control": self.call_control_handle is not None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "transcript": [
                {
                    "timestamp": line.timestamp.isoformat(),
                    "role": line.role,
                    "content": line.content,
                    "node_id": line.node_id,
                }
                for line in self.transcript
            ],
        }
