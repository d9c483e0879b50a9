from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from chatrelay.logging import get_logger
from chatrelay.service.errors import ProviderTimeoutError
from chatrelay.service.providers import ProviderRequest
from chatrelay.service.trace import (
    TraceRecorder,
    redact_headers_for_trace,
    summarize_body_for_trace,
    summarize_error_for_trace,
)

logger = get_logger(__name__)

DEFAULT_BACKOFF_429_MS = 15000
DEFAULT_BACKOFF_5XX_MS = 2000

Sleeper = Callable[[float], Awaitable[Any]]


class ProviderRequester:
    """POSTs a prepared request with one deadline and at most one retry.

    A 429 waits ``backoff_429_ms`` and a 5xx waits ``backoff_5xx_ms`` before
    the single retry; whatever the retry returns is handed back unchanged.
    Transport errors are never retried.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        backoff_429_ms: int = DEFAULT_BACKOFF_429_MS,
        backoff_5xx_ms: int = DEFAULT_BACKOFF_5XX_MS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.backoff_429_ms = max(0, int(backoff_429_ms))
        self.backoff_5xx_ms = max(0, int(backoff_5xx_ms))
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # The per-call deadline below bounds every request
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request_with_backoff(
        self,
        request: ProviderRequest,
        *,
        trace: Optional[TraceRecorder] = None,
        session_id: Optional[str] = None,
        route: str = "completion",
        trace_context: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        context = {"route": route, "provider": request.provider_label, "session_id": session_id}
        if trace_context:
            context.update(trace_context)

        def log_trace(event_type: str, payload: Dict[str, Any]) -> None:
            if trace is not None:
                trace.log(event_type, {**context, **payload})

        timeout_s = max(0.001, request.timeout_ms / 1000)
        try:
            return await asyncio.wait_for(
                self._run_with_retry(request, log_trace), timeout=timeout_s
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "provider_request_timeout",
                url=request.url,
                timeout_ms=request.timeout_ms,
                session_id=session_id,
            )
            log_trace("http:provider_error", {"url": request.url, "error": "timeout"})
            raise ProviderTimeoutError(
                "AI API request timed out", detail={"timeout_ms": request.timeout_ms}
            ) from exc

    async def _run_with_retry(
        self,
        request: ProviderRequest,
        log_trace: Callable[[str, Dict[str, Any]], None],
    ) -> httpx.Response:
        attempt = 1
        response = await self._request_once(request, log_trace, attempt)
        backoff_ms: Optional[int] = None
        if response.status_code == 429:
            backoff_ms = self.backoff_429_ms
        elif response.status_code >= 500:
            backoff_ms = self.backoff_5xx_ms
        if backoff_ms is None:
            return response

        logger.warning(
            "provider_retry_scheduled",
            status=response.status_code,
            backoff_ms=backoff_ms,
            url=request.url,
        )
        log_trace(
            "http:provider_retry",
            {"attempt": attempt, "status": response.status_code, "backoff_ms": backoff_ms},
        )
        await response.aclose()
        await self._sleep(backoff_ms / 1000)
        attempt += 1
        return await self._request_once(request, log_trace, attempt)

    async def _request_once(
        self,
        request: ProviderRequest,
        log_trace: Callable[[str, Dict[str, Any]], None],
        attempt: int,
    ) -> httpx.Response:
        log_trace(
            "http:provider_request",
            {
                "attempt": attempt,
                "url": request.url,
                "timeout_ms": request.timeout_ms,
                "headers": redact_headers_for_trace(request.headers),
                "body": summarize_body_for_trace(request.body),
            },
        )
        started = time.monotonic()
        client = self._get_client()
        try:
            response = await client.post(
                request.url,
                headers=request.headers,
                content=json.dumps(request.body, ensure_ascii=False).encode("utf-8"),
            )
        except Exception as exc:
            log_trace(
                "http:provider_error",
                {
                    "attempt": attempt,
                    "url": request.url,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "error": summarize_error_for_trace(exc),
                },
            )
            raise
        log_trace(
            "http:provider_response",
            {
                "attempt": attempt,
                "url": request.url,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "status": response.status_code,
                "status_text": response.reason_phrase,
                "headers": redact_headers_for_trace(dict(response.headers)),
            },
        )
        return response
