"""Built-in httpx client for the host platform's HTTP API.

Implements HostClient against the host server:

- ``GET    /session/{id}/message?limit=N``
- ``POST   /session``
- ``POST   /session/{id}/message``
- ``DELETE /session/{id}``
- ``PATCH  /session/{id}``

Connection failures and 5xx responses are retried with exponential
backoff via tenacity; everything else fails immediately with
HostClientError.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
import tenacity

from butler_sync.exceptions import HostClientError, HostTimeoutError
from butler_sync.host.protocols import first_text_part

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {500, 502, 503, 504}


def _is_retryable(exc: BaseException) -> bool:
    """Retryable: 5xx and connection errors. Timeouts are not retried."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.ConnectError)


class HttpHostClient:
    """Async httpx client for the host platform.

    Usage::

        async with HttpHostClient("http://127.0.0.1:4096") as host:
            messages = await host.session_messages("ses_123")
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Host server URL.
            timeout: Request timeout in seconds.
            max_retries: Attempts after the first for retryable errors.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=tenacity.wait_exponential(multiplier=0.25, min=0, max=4),
            stop=tenacity.stop_after_attempt(self._max_retries + 1),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return await retryer(self._do_request, method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise HostTimeoutError(f"{method} {url} timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise HostClientError(
                f"{method} {url} failed: HTTP {exc.response.status_code} - {exc.response.text}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise HostClientError(f"{method} {url} failed: {exc}") from exc

    async def _do_request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Execute a single request (no retry)."""
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise HostClientError(f"Unexpected response body: {response.text[:200]}") from exc

    # ------------------------------------------------------------------
    # HostClient
    # ------------------------------------------------------------------

    async def session_messages(self, session_id: str, *, limit: int = 5) -> list[dict[str, Any]]:
        response = await self._request("GET", f"/session/{session_id}/message", params={"limit": limit})
        data = self._json(response)
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def create_session(self, title: str) -> str | None:
        response = await self._request("POST", "/session", json={"title": title})
        data = self._json(response)
        if isinstance(data, dict) and isinstance(data.get("id"), str):
            return data["id"]
        return None

    async def prompt(
        self,
        session_id: str,
        *,
        provider: str,
        model: str,
        system: str,
        text: str,
    ) -> str | None:
        payload = {
            "model": {"providerID": provider, "modelID": model},
            "system": system,
            "tools": {},
            "parts": [{"type": "text", "text": text}],
        }
        response = await self._request("POST", f"/session/{session_id}/message", json=payload)
        data = self._json(response)
        if not isinstance(data, dict):
            return None
        return first_text_part(data.get("parts"))

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/session/{session_id}")

    async def update_session_title(self, session_id: str, title: str) -> None:
        await self._request("PATCH", f"/session/{session_id}", json={"title": title})

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpHostClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
