from __future__ import annotations

import asyncio
import logging

import requests

from .base import ContextInjector

logger = logging.getLogger(__name__)


class ControlUrlContextInjector(ContextInjector):
    """Adds a system message to a live call through its control URL."""

    def __init__(self, *, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    async def inject(self, handle: str, context: str) -> bool:
        try:
            await asyncio.to_thread(self._post, handle, context)
        except Exception as e:
            logger.error("Failed to inject context: %s", e)
            return False
        logger.info("Context injected into live call")
        return True

    def _post(self, control_url: str, context: str) -> None:
        response = self._session.post(
            control_url,
            json={"type": "add-message", "message": {"role": "system", "content": context}},
            timeout=self._timeout,
        )
        if not response.ok:
            raise RuntimeError(f"Call control error: {response.status_code} - {response.text}")
