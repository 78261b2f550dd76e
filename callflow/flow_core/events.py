"""Call telemetry events consumed by the traversal engine."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class CallStart(BaseModel):
    type: Literal["call-start"] = "call-start"
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def customer_phone(self) -> str | None:
        customer = self.payload.get("customer")
        if isinstance(customer, dict):
            number = customer.get("number")
            if isinstance(number, str) and number:
                return number
        return None

    @property
    def control_handle(self) -> str | None:
        """Opaque handle used to inject context into the live call."""
        monitor = self.payload.get("monitor")
        if isinstance(monitor, dict):
            url = monitor.get("controlUrl")
            if isinstance(url, str) and url:
                return url
        url = self.payload.get("controlUrl")
        if isinstance(url, str) and url:
            return url
        return None


class SpeechStart(BaseModel):
    """Agent started speaking."""

    type: Literal["speech-start"] = "speech-start"


class SpeechEnd(BaseModel):
    """Agent finished speaking."""

    type: Literal["speech-end"] = "speech-end"


class Message(BaseModel):
    type: Literal["message"] = "message"
    role: Literal["assistant", "user", "system"] = "assistant"
    transcript: str = ""


class CallEnd(BaseModel):
    type: Literal["call-end"] = "call-end"


class CallError(BaseModel):
    type: Literal["error"] = "error"
    payload: Any = None


CallEvent = Annotated[
    CallStart | SpeechStart | SpeechEnd | Message | CallEnd | CallError,
    Field(discriminator="type"),
]

_call_event_adapter: TypeAdapter[CallEvent] = TypeAdapter(CallEvent)


def parse_call_event(raw: dict[str, Any]) -> CallEvent:
    """Parse a platform event dict.

    Accepts both the flat shape (``{"type": "message", "role": ..., "transcript": ...}``)
    and the wrapped shape used by client SDK callbacks
    (``{"type": "message", "data": {...}}``). Raises ``pydantic.ValidationError``
    for unknown types.
    """
    kind = raw.get("type")
    data = raw.get("data")
    if kind in ("call-start", "error"):
        payload = raw.get("payload", data)
        if payload is None and kind == "call-start":
            payload = {}
        return _call_event_adapter.validate_python({"type": kind, "payload": payload})
    if kind == "message" and isinstance(data, dict):
        merged = {"type": kind, **{k: v for k, v in data.items() if k in ("role", "transcript")}}
        return _call_event_adapter.validate_python(merged)
    return _call_event_adapter.validate_python(
        {k: v for k, v in raw.items() if k != "data"}
    )
