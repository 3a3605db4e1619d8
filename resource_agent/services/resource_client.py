"""Async HTTP executor for the resource API.

Takes one CallPlan, performs exactly one request and folds every outcome
(success, HTTP error, transport failure, timeout, undecodable body) into an
ExecutionResult.  Nothing is retried here; retry decisions belong to the
orchestration loop, which sees the classified failure.

All requests carry the API token as a Bearer header.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any

import httpx

from resource_agent.config import (
    REQUEST_TIMEOUT_SECONDS,
    RESOURCE_API_BASE_URL,
    RESOURCE_API_TOKEN,
)
from resource_agent.models import CallPlan, ExecutionResult
from resource_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

METRICS_SERVICE = "resource_api"


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query_params(params: dict[str, Any] | None) -> dict[str, str]:
    """Drop ``None`` values and coerce the rest to query-string strings."""
    if not params:
        return {}
    return {key: _stringify(value) for key, value in params.items() if value is not None}


def _is_json(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    return "json" in content_type.lower()


def _decode(response: httpx.Response) -> Any:
    """Parse *response* per its content type.  May raise ValueError."""
    if _is_json(response):
        if not response.content:
            return None
        return response.json()
    return response.text


class ResourceClient:
    """Executes CallPlans against the resource API over one shared
    ``httpx.AsyncClient``.

    The client never raises for request outcomes; only task cancellation
    propagates, so an aborted conversation stops at the in-flight request.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token or RESOURCE_API_TOKEN
        self._base_url = (base_url or RESOURCE_API_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Request building ─────────────────────────────────────────────

    def _request_kwargs(self, plan: CallPlan) -> dict[str, Any]:
        if plan.method == "GET":
            query = build_query_params(plan.params)
            return {"params": query} if query else {}

        payload = plan.body if plan.body is not None else plan.params
        if payload is None:
            return {}
        return {
            "json": payload,
            "headers": {"Content-Type": "application/json"},
        }

    def _resolve_url(self, plan: CallPlan, kwargs: dict[str, Any]) -> str:
        url = httpx.URL(self._base_url + plan.endpoint)
        if "params" in kwargs:
            url = url.copy_merge_params(kwargs["params"])
        return str(url)

    # ── Execution ────────────────────────────────────────────────────

    async def execute(self, plan: CallPlan) -> ExecutionResult:
        """Perform exactly one request for *plan* and normalize the outcome."""
        kwargs = self._request_kwargs(plan)
        operation = plan.describe()
        request_url = self._base_url + plan.endpoint

        t0 = time.perf_counter()
        try:
            request_url = self._resolve_url(plan, kwargs)
            response = await asyncio.wait_for(
                self._client.request(plan.method, plan.endpoint, **kwargs),
                # Outer guard in case the transport ignores its own timeout
                timeout=self._timeout + 1,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            return self._network_failure(
                plan, request_url, t0, f"Request timed out after {self._timeout:.0f}s ({type(exc).__name__})",
            )
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            return self._network_failure(plan, request_url, t0, str(exc) or type(exc).__name__)

        elapsed = (time.perf_counter() - t0) * 1000
        status = response.status_code
        status_text = response.reason_phrase or ""

        if not response.is_success:
            try:
                data = _decode(response)
            except ValueError:
                data = response.text
            error = f"HTTP {status}: {status_text}" if status_text else f"HTTP {status}"
            logger.info("%s -> %s (%.0fms)", operation, error, elapsed)
            metrics.record_failure(
                METRICS_SERVICE, operation, error_type=f"http_{status}", latency_ms=elapsed,
            )
            return ExecutionResult(
                success=False,
                data=data,
                error=error,
                http_status=status,
                http_status_text=status_text,
                execution_time_ms=elapsed,
                request_url=request_url,
                network_error=False,
                plan_executed=plan,
            )

        try:
            data = _decode(response)
        except ValueError as exc:
            logger.warning("%s returned an undecodable body: %s", operation, exc)
            metrics.record_failure(
                METRICS_SERVICE, operation, error_type="decode_error", latency_ms=elapsed,
            )
            return ExecutionResult(
                success=False,
                data=response.text,
                error=f"Failed to parse response body: {exc}",
                http_status=status,
                http_status_text=status_text,
                execution_time_ms=elapsed,
                request_url=request_url,
                network_error=False,
                plan_executed=plan,
            )

        logger.debug("%s -> %d (%.0fms)", operation, status, elapsed)
        metrics.record_success(METRICS_SERVICE, operation, latency_ms=elapsed)
        return ExecutionResult(
            success=True,
            data=data,
            http_status=status,
            http_status_text=status_text,
            execution_time_ms=elapsed,
            request_url=request_url,
            plan_executed=plan,
        )

    def _network_failure(
        self, plan: CallPlan, request_url: str, t0: float, message: str,
    ) -> ExecutionResult:
        elapsed = (time.perf_counter() - t0) * 1000
        logger.warning("%s failed before a response was received: %s", plan.describe(), message)
        metrics.record_failure(
            METRICS_SERVICE, plan.describe(), error_type="network", latency_ms=elapsed,
        )
        return ExecutionResult(
            success=False,
            error=message,
            http_status=0,
            execution_time_ms=elapsed,
            request_url=request_url,
            network_error=True,
            plan_executed=plan,
        )


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: ResourceClient | None = None
_client_lock = threading.Lock()


def get_resource_client() -> ResourceClient:
    """Return a module-level ResourceClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = ResourceClient()
    return _client
