"""Base interfaces for Action node side effects.

Actions run beside a live call. Their failures must never reach the traversal,
so every implementation reports problems through its result instead of raising.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..ir import ApiConfig


@dataclass(frozen=True)
class ActionResult:
    """Result of an external action execution.

    ``context`` is the human-readable block to inject into the call; it may be
    empty on success when no response field is enabled.
    """

    success: bool
    context: str = ""
    error: str | None = None
    data: Any | None = None

    @property
    def has_context(self) -> bool:
        return self.success and bool(self.context)


class ActionExecutor(ABC):
    @abstractmethod
    async def execute(self, api_config: ApiConfig, customer_phone: str | None) -> ActionResult:
        """Run the lookup described by ``api_config``.

        Should not raise exceptions; all errors are captured in ActionResult.
        """


class ContextInjector(ABC):
    @abstractmethod
    async def inject(self, handle: str, context: str) -> bool:
        """Push ``context`` into the live call identified by ``handle``.

        Fire-and-forget: returns False on failure, never raises.
        """
