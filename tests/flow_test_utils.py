"""Fakes shared by the engine, intent and API tests."""

from __future__ import annotations

import asyncio
from typing import Any

from callflow.flow_core.actions.base import ActionExecutor, ActionResult, ContextInjector
from callflow.flow_core.intent import IntentResult
from callflow.flow_core.ir import ApiConfig, FlowEdge


def edge(source: str, target: str, label: str | None = None) -> FlowEdge:
    return FlowEdge(id=f"e-{source}-{target}", source=source, target=target, label=label)


class GatedResolver:
    """Resolver whose answers are held until the test releases them."""

    def __init__(self, intent: str | None, confidence: float = 0.9) -> None:
        self.intent = intent
        self.confidence = confidence
        self.release = asyncio.Event()
        self.calls: list[tuple[str, list[str]]] = []

    async def resolve(self, utterance: str, candidates: list[str]) -> IntentResult:
        self.calls.append((utterance, candidates))
        await self.release.wait()
        return IntentResult(self.intent, self.confidence, "gated")


class FakeExecutor(ActionExecutor):
    def __init__(self, result: ActionResult) -> None:
        self.result = result
        self.calls: list[tuple[ApiConfig, str | None]] = []

    async def execute(self, api_config: ApiConfig, customer_phone: str | None) -> ActionResult:
        self.calls.append((api_config, customer_phone))
        return self.result


class FakeInjector(ContextInjector):
    def __init__(self) -> None:
        self.injected: list[tuple[str, str]] = []

    async def inject(self, handle: str, context: str) -> bool:
        self.injected.append((handle, context))
        return True


class FakeBackend:
    """Completion backend returning a canned reply (or raising)."""

    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.prompts: list[tuple[str, str]] = []

    async def complete(self, system_prompt: str, user_message: str) -> str:
        self.prompts.append((system_prompt, user_message))
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def call_start_payload(**extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "customer": {"number": "+15551234567"},
        "monitor": {"controlUrl": "https://calls.example.com/control/abc"},
    }
    payload.update(extra)
    return payload


def generated_flow_payload() -> dict[str, Any]:
    """A model reply for a two-option pizza line, with careless positions."""
    return {
        "nodes": [
            {"id": "start-1", "type": "start", "position": {"x": 0, "y": 0}, "data": {"label": "Call Starts"}},
            {
                "id": "msg-greeting",
                "type": "message",
                "position": {"x": 0, "y": 0},
                "data": {"label": "Greeting", "content": "Welcome! Margherita or Pepperoni?"},
            },
            {"id": "listen-1", "type": "listen", "position": {"x": 0, "y": 0}, "data": {"label": "Wait for order"}},
            {"id": "branch-1", "type": "branch", "data": {"label": "Route by pizza"}},
            {
                "id": "msg-margherita",
                "type": "message",
                "data": {"label": "Margherita", "content": "One Margherita coming up."},
            },
            {
                "id": "msg-pepperoni",
                "type": "message",
                "data": {"label": "Pepperoni", "content": "One Pepperoni coming up."},
            },
            {"id": "end-1", "type": "end", "data": {"label": "End Call", "endMessage": "Goodbye!"}},
        ],
        "edges": [
            {"id": "e-start-greeting", "source": "start-1", "target": "msg-greeting"},
            {"id": "e-greeting-listen", "source": "msg-greeting", "target": "listen-1"},
            {"id": "e-listen-branch", "source": "listen-1", "target": "branch-1"},
            {"id": "e-branch-margherita", "source": "branch-1", "target": "msg-margherita", "label": "Margherita"},
            {"id": "e-branch-pepperoni", "source": "branch-1", "target": "msg-pepperoni", "label": "Pepperoni"},
            {"id": "e-margherita-end", "source": "msg-margherita", "target": "end-1"},
            {"id": "e-pepperoni-end", "source": "msg-pepperoni", "target": "end-1"},
        ],
        "summary": "Pizza ordering with two options.",
    }
