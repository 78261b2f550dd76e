from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

import requests

from ..ir import ApiConfig
from .base import ActionExecutor, ActionResult

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "[CONTEXT UPDATE] Customer information retrieved:"
MISSING_VALUE = "N/A"


def get_value_by_path(obj: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts (and list indexes)."""
    current = obj
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
        if current is None:
            return None
    return current


def _display(value: Any) -> str:
    if value is None:
        return MISSING_VALUE
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_context(api_config: ApiConfig, data: Any) -> str:
    """Render the enabled response fields as a context block ("" if none)."""
    enabled = [m for m in api_config.response_mapping if m.enabled]
    if not enabled:
        return ""
    lines = [f"- {m.label}: {_display(get_value_by_path(data, m.path))}" for m in enabled]
    return CONTEXT_HEADER + "\n" + "\n".join(lines)


def build_target_url(endpoint: str, customer_phone: str | None) -> str:
    if customer_phone:
        return endpoint.replace("{phone}", quote(customer_phone, safe=""))
    return endpoint


class ApiLookupExecutor(ActionExecutor):
    """Read-only HTTP lookup for Action nodes.

    With ``proxy_url`` set, the request is relayed through that endpoint, which
    receives ``{"url", "method", "headers"}`` and answers
    ``{"status", "statusText", "data", "error"}``. Otherwise the endpoint is
    called directly. Blocking I/O runs in a worker thread.
    """

    def __init__(
        self,
        *,
        proxy_url: str | None = None,
        proxy_token: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._proxy_url = proxy_url
        self._proxy_token = proxy_token
        self._timeout = timeout
        self._session = session or requests.Session()

    async def execute(self, api_config: ApiConfig, customer_phone: str | None) -> ActionResult:
        if not api_config.endpoint:
            return ActionResult(success=False, error="No API endpoint configured")

        target_url = build_target_url(api_config.endpoint, customer_phone)
        headers = {h.key: h.value for h in api_config.headers if h.key and h.value}

        logger.info("Executing action lookup: %s", target_url)
        try:
            data = await asyncio.to_thread(self._fetch, target_url, headers)
        except Exception as e:
            logger.error("Action lookup failed for %s: %s", target_url, e)
            return ActionResult(success=False, error=str(e) or "API request failed")

        context = format_context(api_config, data)
        logger.debug("Action lookup context: %r", context)
        return ActionResult(success=True, context=context, data=data)

    def _fetch(self, url: str, headers: dict[str, str]) -> Any:
        if self._proxy_url:
            return self._fetch_via_proxy(url, headers)
        response = self._session.get(url, headers=headers, timeout=self._timeout)
        response.raise_for_status()
        return response.json()

    def _fetch_via_proxy(self, url: str, headers: dict[str, str]) -> Any:
        proxy_headers = {"Content-Type": "application/json"}
        if self._proxy_token:
            proxy_headers["Authorization"] = f"Bearer {self._proxy_token}"
        response = self._session.post(
            self._proxy_url,  # type: ignore[arg-type]
            json={"url": url, "method": "GET", "headers": headers},
            headers=proxy_headers,
            timeout=self._timeout,
        )
        result = response.json()
        status = result.get("status", response.status_code) if isinstance(result, dict) else None
        if not response.ok or not isinstance(result, dict) or (isinstance(status, int) and status >= 400):
            detail = result.get("error") if isinstance(result, dict) else None
            if not detail and isinstance(result, dict):
                detail = f"HTTP {status}: {result.get('statusText', '')}".strip()
            raise RuntimeError(detail or f"Proxy error: HTTP {response.status_code}")
        return result.get("data")
