from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from m365assess.core.config import Settings
from m365assess.core.errors import (
    GraphApiError,
    GraphNotFoundError,
    GraphPermissionError,
    GraphTransientError,
)
from m365assess.services.graph.auth import ClientCredentials, TokenAcquirer, acquire_app_token


logger = logging.getLogger(__name__)

RETRY_STATUSES = {429, 502, 503, 504}
_MAX_RETRY_AFTER_S = 30.0


def _retry_after_seconds(headers: httpx.Headers) -> float | None:
    raw = headers.get("Retry-After")
    if not raw:
        return None
    try:
        return min(float(raw), _MAX_RETRY_AFTER_S)
    except ValueError:
        return None


def _error_fields(response: httpx.Response) -> tuple[str | None, str]:
    # Graph errors look like {"error": {"code": ..., "message": ...}}.
    try:
        body = response.json()
    except ValueError:
        return None, (response.text or "")[:400]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), str(error.get("message") or "")
    return None, str(body)[:400]


def map_graph_error(response: httpx.Response) -> GraphApiError:
    """Map a failed Graph response to a typed error carrying status and message."""
    graph_code, message = _error_fields(response)
    status = response.status_code
    text = message or response.reason_phrase or "Graph request failed"
    if status in RETRY_STATUSES or status >= 500:
        return GraphTransientError(text, status=status, graph_code=graph_code)
    if status == 403 or graph_code == "Authorization_RequestDenied":
        return GraphPermissionError(text, status=status, graph_code=graph_code)
    if status == 404:
        return GraphNotFoundError(text, status=status, graph_code=graph_code)
    return GraphApiError(text, status=status, graph_code=graph_code)


class GraphClient:
    """Async Microsoft Graph client bound to one app identity and tenant.

    GET requests retry throttling and gateway errors, honoring Retry-After.
    Writes are not retried here; callers wrap them in ``retry_async`` when an
    operation is safe to repeat.
    """

    def __init__(
        self,
        token_provider: Callable[[], Awaitable[str]],
        *,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout_s: float = 15.0,
        max_retries: int = 2,
        backoff_s: float = 1.0,
        max_pages: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(0, max_retries)
        self._backoff_s = backoff_s
        self._max_pages = max_pages
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        retries: int | None = None,
    ) -> httpx.Response:
        method = method.upper()
        if retries is None:
            retries = self._max_retries if method == "GET" else 0
        url = self._url(path)
        token = await self._token_provider()
        request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        attempt = 0
        while True:
            try:
                response = await self._client.request(
                    method, url, params=params, json=json, headers=request_headers
                )
            except httpx.TransportError as exc:
                if attempt >= retries:
                    logger.warning("graph_transport_error method=%s url=%s error=%s", method, url, type(exc).__name__)
                    raise GraphTransientError(f"Graph request failed: {type(exc).__name__}") from exc
                await asyncio.sleep(self._backoff_s * (2**attempt) * random.uniform(0.5, 1.5))
                attempt += 1
                continue
            if response.status_code < 400:
                return response
            if response.status_code in RETRY_STATUSES and attempt < retries:
                sleep_s = _retry_after_seconds(response.headers)
                if sleep_s is None:
                    sleep_s = self._backoff_s * (2**attempt) * random.uniform(0.5, 1.5)
                logger.info(
                    "graph_retry method=%s url=%s status=%s attempt=%s",
                    method,
                    url,
                    response.status_code,
                    attempt,
                )
                await asyncio.sleep(sleep_s)
                attempt += 1
                continue
            error = map_graph_error(response)
            logger.warning(
                "graph_request_failed method=%s url=%s status=%s code=%s",
                method,
                url,
                response.status_code,
                error.graph_code,
            )
            raise error

    async def get_json(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self.request("GET", path, params=params)
        return response.json() if response.content else {}

    async def iter_pages(
        self, path: str, *, params: dict[str, Any] | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        # Follow @odata.nextLink; the link already embeds the first request's query.
        next_url: str | None = path
        page_params = params
        pages = 0
        while next_url:
            page = await self.get_json(next_url, params=page_params)
            yield page
            pages += 1
            if pages >= self._max_pages:
                logger.info("graph_page_limit_reached path=%s pages=%s", path, pages)
                break
            next_url = page.get("@odata.nextLink")
            page_params = None

    async def get_all(self, path: str, *, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        async for page in self.iter_pages(path, params=params):
            items.extend(page.get("value") or [])
        return items

    async def post_json(self, path: str, payload: Any, *, retries: int | None = None) -> dict[str, Any]:
        response = await self.request("POST", path, json=payload, retries=retries)
        return response.json() if response.content else {}

    async def patch_json(self, path: str, payload: Any) -> None:
        await self.request("PATCH", path, json=payload)

    async def delete(self, path: str) -> None:
        await self.request("DELETE", path)


class GraphClientFactory:
    """Builds Graph clients with cached app-only tokens for a credential set."""

    def __init__(
        self,
        settings: Settings,
        *,
        token_acquirer: TokenAcquirer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._token_acquirer = token_acquirer or self._acquire
        self._transport = transport

    async def _acquire(self, credentials: ClientCredentials) -> str:
        return await acquire_app_token(credentials, login_base_url=self._settings.login_base_url)

    async def acquire_token(self, credentials: ClientCredentials) -> str:
        return await self._token_acquirer(credentials)

    def client(self, credentials: ClientCredentials, *, token: str | None = None) -> GraphClient:
        # A pre-acquired token lets callers surface auth errors before any fan-out.
        async def _token() -> str:
            if token is not None:
                return token
            return await self._token_acquirer(credentials)

        return GraphClient(
            _token,
            base_url=self._settings.graph_base_url,
            timeout_s=self._settings.ext_call_timeout_ms / 1000.0,
            max_retries=max(0, self._settings.ext_retry_max_attempts - 1),
            backoff_s=self._settings.ext_retry_backoff_ms / 1000.0,
            max_pages=self._settings.graph_max_pages,
            transport=self._transport,
        )
