from __future__ import annotations

from typing import Protocol


class CompletionBackend(Protocol):
    """Remote language model answering one system prompt and one user turn.

    Replies are untrusted; callers validate whatever comes back.
    """

    async def complete(self, system_prompt: str, user_message: str) -> str: ...
