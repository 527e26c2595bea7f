"""
Deskpilot Tool Webhook Client

Invokes a tool's workflow webhook over HTTP (httpx).

- Outbound parameters are screened for placeholder values the model
  invented ("<customer name>", "john@example.com", "TBD"...). Such a
  call is reported as ``blocked`` and never sent.
- Integration credentials travel in the request body under
  ``_integrations``.
- Transport errors and 5xx responses are retried with exponential
  backoff. Timeouts are NOT retried: the side effect may already have
  happened and there is no reconciliation.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any

import httpx

from deskpilot.collaborators import WebhookResult
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.webhooks")

INTEGRATIONS_FIELD = "_integrations"

_PLACEHOLDER_VALUES = frozenset({
    "placeholder",
    "tbd",
    "tba",
    "undefined",
    "xxx",
    "john doe",
    "jane doe",
    "your name",
    "customer name",
    "your email",
    "your phone",
    "123-456-7890",
    "555-555-5555",
    "1234567890",
})

_PLACEHOLDER_PATTERNS = (
    re.compile(r"^\s*<[^<>]+>\s*$"),             # <customer name>
    re.compile(r"^\s*\[[^\[\]]+\]\s*$"),         # [email]
    re.compile(r"^\s*\{\{?[^{}]+\}?\}\s*$"),     # {order_id} / {{order_id}}
    re.compile(r"^x{3,}$", re.IGNORECASE),       # xxxx
    re.compile(r"(^|[@.])example\.(com|org|net)$", re.IGNORECASE),
    re.compile(r"^example@", re.IGNORECASE),
    re.compile(r"\bplaceholder\b", re.IGNORECASE),
)


def is_placeholder_value(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text:
        return False
    if text.casefold() in _PLACEHOLDER_VALUES:
        return True
    return any(p.search(text) for p in _PLACEHOLDER_PATTERNS)


def find_placeholders(params: dict[str, Any], prefix: str = "") -> list[str]:
    """Dotted names of every parameter holding a placeholder value."""
    found: list[str] = []
    for key, value in params.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            found.extend(find_placeholders(value, prefix=f"{name}."))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    found.extend(find_placeholders(item, prefix=f"{name}[{i}]."))
                elif is_placeholder_value(item):
                    found.append(f"{name}[{i}]")
        elif is_placeholder_value(value):
            found.append(name)
    return found


class HttpToolWebhook:
    """ToolWebhook implementation over an httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str = "http://localhost:5678/",
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def build_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return self._base_url + url.lstrip("/")

    async def execute(
        self,
        url: str,
        params: dict[str, Any],
        credentials: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> WebhookResult:
        placeholders = find_placeholders(params or {})
        if placeholders:
            logger.warning("Placeholder values detected: %s", ", ".join(placeholders))
            return WebhookResult(
                success=False,
                blocked=True,
                error=(
                    f"Placeholder values detected in parameters: {', '.join(placeholders)}."
                ),
            )

        body = dict(params or {})
        if credentials:
            body[INTEGRATIONS_FIELD] = credentials

        full_url = self.build_url(url)
        deadline = timeout or self._timeout
        started = time.monotonic()
        last: WebhookResult | None = None

        for attempt in range(self._max_attempts):
            last = await self._attempt(full_url, body, deadline, started)
            if last.success or last.timed_out or not self._retryable(last):
                return last
            if attempt < self._max_attempts - 1:
                delay = self._retry_base_delay * (2 ** attempt)
                logger.info(
                    "Retrying webhook in %.1fs (attempt %d/%d)", delay, attempt + 2, self._max_attempts,
                )
                await asyncio.sleep(delay)

        return last

    @staticmethod
    def _retryable(result: WebhookResult) -> bool:
        return result.status_code is None or result.status_code >= 500

    async def _attempt(
        self,
        url: str,
        body: dict[str, Any],
        deadline: float,
        started: float,
    ) -> WebhookResult:
        try:
            response = await asyncio.wait_for(
                self._client.post(url, json=body, timeout=deadline),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            elapsed = (time.monotonic() - started) * 1000
            logger.error("Webhook timeout after %.0fs", deadline, extra={"duration_ms": elapsed})
            return WebhookResult(
                success=False,
                error=f"Tool execution timed out after {int(deadline * 1000)}ms",
                execution_time_ms=elapsed,
                timed_out=True,
            )
        except httpx.HTTPError as e:
            elapsed = (time.monotonic() - started) * 1000
            logger.error("Webhook transport error: %s", e, extra={"duration_ms": elapsed})
            return WebhookResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                execution_time_ms=elapsed,
            )

        elapsed = (time.monotonic() - started) * 1000

        if response.is_error:
            logger.error(
                "Webhook returned %d", response.status_code, extra={"duration_ms": elapsed},
            )
            return WebhookResult(
                success=False,
                error=f"Webhook returned {response.status_code}: {response.text}",
                execution_time_ms=elapsed,
                status_code=response.status_code,
            )

        return WebhookResult(
            success=True,
            data=self._decode(response),
            execution_time_ms=elapsed,
            status_code=response.status_code,
        )

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        text = response.text
        if "application/json" in response.headers.get("content-type", ""):
            if not text:
                return {}
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return {"error": "Invalid JSON response", "raw": text[:200]}
        return text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
