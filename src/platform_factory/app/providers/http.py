"""Shared async HTTP plumbing for the provisioning provider clients.

Every provider client authenticates with a static token handed to its
constructor (never read from the process environment here), retries
transient failures with exponential backoff and full jitter, and honours
``Retry-After`` on 429s. Errors surface as ``ProviderAPIError`` subclasses
so step modules can decide between ``wait`` and ``fail``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Mapping

import httpx

logger = logging.getLogger(__name__)

# Status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_DEFAULT_MAX_RETRIES = 2
_DEFAULT_BASE_DELAY = 0.5  # seconds
_DEFAULT_MAX_DELAY = 8.0  # seconds


def call_budget_seconds(
    timeout_seconds: float,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_delay: float = _DEFAULT_MAX_DELAY,
) -> float:
    """Upper bound for one retried request.

    Every attempt runs into the timeout and every retry sleeps the full
    capped delay (``Retry-After`` is capped at ``max_delay`` as well).
    """
    return timeout_seconds * (max_retries + 1) + max_delay * max_retries


# ── Exception hierarchy ─────────────────────────────────────────


class ProviderAPIError(Exception):
    """Base exception for provider REST API errors."""

    def __init__(
        self,
        provider: str,
        status_code: int,
        message: str = "",
        *,
        response_body: str = "",
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"{provider} API error {status_code}: {message}")

    @property
    def is_transient(self) -> bool:
        """Rate limits, 5xx and network-level failures are worth retrying."""
        return self.status_code == 0 or self.status_code in _RETRYABLE_STATUS_CODES

    @property
    def code(self) -> str:
        return f"{self.provider}_api_error"


class ProviderNotFoundError(ProviderAPIError):
    """Resource not found (404)."""

    def __init__(self, provider: str, message: str = "Resource not found", **kwargs: Any) -> None:
        super().__init__(provider, 404, message, **kwargs)


class ProviderTimeoutError(ProviderAPIError):
    """Request timed out or the connection failed."""

    def __init__(self, provider: str, message: str = "Request timed out") -> None:
        super().__init__(provider, 0, message)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


# ── Base client ──────────────────────────────────────────────────


class ProviderHTTPClient:
    """Token-authenticated JSON client with retry; subclassed per provider."""

    provider = "provider"

    def __init__(
        self,
        *,
        token: str,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not token:
            raise ValueError(f"{self.provider} token is required")

        self._token = token
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    def _auth_headers(self) -> dict[str, str]:
        # Never log these headers.
        return {"Authorization": f"Bearer {self._token}"}

    def _default_params(self) -> dict[str, str]:
        return {}

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = _extract_message(payload, message)
        except (ValueError, KeyError):
            pass

        if resp.status_code == 404:
            raise ProviderNotFoundError(self.provider, message=message, response_body=body)

        raise ProviderAPIError(
            self.provider,
            resp.status_code,
            message,
            response_body=body,
        )

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry for transient errors."""
        url = f"{self._base_url}{path}"
        headers = self._auth_headers()
        query = {**self._default_params(), **(params or {})}

        last_exc: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                # httpx applies the timeout per phase; wait_for caps the whole attempt.
                resp = await asyncio.wait_for(
                    self._client.request(
                        method,
                        url,
                        headers=headers,
                        json=json,
                        params=query or None,
                        timeout=self._timeout,
                    ),
                    timeout=self._timeout,
                )
            except (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError) as e:
                last_exc = ProviderTimeoutError(self.provider, str(e) or type(e).__name__)
                if attempt < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "%s request failed (attempt %d/%d), retrying in %.1fs",
                        self.provider,
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                        extra={"provider": self.provider},
                    )
                    await asyncio.sleep(delay)
                    continue
                raise last_exc from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                return resp

            if attempt < self._max_retries:
                delay = self._retry_after_delay(resp, attempt)
                logger.warning(
                    "%s %s %s returned %d (attempt %d/%d), retrying in %.1fs",
                    self.provider,
                    method,
                    path,
                    resp.status_code,
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                    extra={"provider": self.provider},
                )
                await asyncio.sleep(delay)
            else:
                return resp

        if last_exc:
            raise last_exc
        raise ProviderAPIError(self.provider, 0, "exhausted retries with no response")

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return min(max(float(retry_after), 0.1), self._max_delay)
            except ValueError:
                pass
        return self._backoff_delay(attempt)

    # ── JSON helpers used by subclasses ──────────────────────────

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        resp = await self._request_with_retry(method, path, json=json, params=params)
        self._raise_for_status(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _get_or_none(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> Any | None:
        """GET that maps 404 to None."""
        try:
            return await self._request_json("GET", path, params=params)
        except ProviderNotFoundError:
            return None

    async def _delete(self, path: str) -> bool:
        """DELETE returning False when the resource is already gone."""
        try:
            await self._request_json("DELETE", path)
        except ProviderNotFoundError:
            return False
        return True


def _extract_message(payload: Mapping[str, Any], default: str) -> str:
    error = payload.get("error")
    if isinstance(error, Mapping):
        return str(error.get("message") or error.get("code") or default)
    if error:
        return str(error)
    detail = payload.get("detail")
    if isinstance(detail, Mapping):
        return str(detail.get("message") or default)
    return str(payload.get("message") or detail or default)


# ── Endpoint probe ───────────────────────────────────────────────


class EndpointProbe:
    """Unauthenticated GET used to check that a deployed route answers."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    async def probe(self, url: str) -> int | None:
        """Return the HTTP status for ``url``, or None on a network error."""
        try:
            resp = await self._client.get(url, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.info("Endpoint probe failed for %s: %s", url, e)
            return None
        return resp.status_code
