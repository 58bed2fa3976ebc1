from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx

from open_llm_gateway.errors import (
    UpstreamConnectionError,
    UpstreamError,
    UpstreamTimeoutError,
)

logger = logging.getLogger("uvicorn.error")

SleepFn = Callable[[float], Awaitable[Any]]
JitterFn = Callable[[float, float], float]
AuditHook = Callable[[dict[str, Any]], None]


def _default_retry_statuses() -> frozenset[int]:
    return frozenset({429, *range(500, 600)})


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter_seconds: float = 0.25
    retry_statuses: frozenset[int] = field(default_factory=_default_retry_statuses)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retry_statuses

    def backoff_seconds(
        self,
        attempt: int,
        retry_after: float | None = None,
        jitter: JitterFn = random.uniform,
    ) -> float:
        exponent = max(0, attempt - 1)
        computed = min(self.max_delay_seconds, self.base_delay_seconds * (2**exponent))
        if self.jitter_seconds > 0:
            computed += jitter(0.0, self.jitter_seconds)
        if retry_after is not None and retry_after > computed:
            return retry_after
        return computed


@dataclass(frozen=True, slots=True)
class UpstreamRequestSpec:
    body: dict[str, Any]
    headers: dict[str, str]
    method: str = "POST"


def parse_retry_after_seconds(headers: httpx.Headers) -> float | None:
    raw = headers.get("retry-after")
    if not raw:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
        if math.isfinite(seconds) and seconds >= 0:
            return seconds
        return None
    except (TypeError, ValueError):
        pass

    try:
        retry_dt = parsedate_to_datetime(value)
        if retry_dt.tzinfo is None:
            retry_dt = retry_dt.replace(tzinfo=timezone.utc)
        delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, float(delta))
    except (TypeError, ValueError, IndexError):
        return None


def _request_error(exc: httpx.RequestError, label: str) -> UpstreamError:
    detail = str(exc).strip() or repr(exc)
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTimeoutError(backend=label, detail=detail)
    error_type = exc.__class__.__name__.strip() or "RequestError"
    return UpstreamConnectionError(backend=label, error_type=error_type, detail=detail)


class RetryingExecutor:
    """Sends one logical upstream request with bounded retries.

    Only the HTTP layer is classified here: 429 and 5xx responses plus
    transport errors are retried with exponential backoff and jitter, any
    other status is handed back untouched. After the last attempt the final
    response is returned, or the final transport error is raised as an
    ``UpstreamTimeoutError`` / ``UpstreamConnectionError``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        jitter: JitterFn = random.uniform,
        audit_hook: AuditHook | None = None,
    ) -> None:
        self.client = client
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._jitter = jitter
        self._audit_hook = audit_hook

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def send(
        self,
        url: str,
        request_spec: UpstreamRequestSpec,
        label: str,
        *,
        stream: bool = False,
        request_id: str | None = None,
    ) -> httpx.Response:
        max_attempts = self.policy.max_attempts
        attempt = 0
        while True:
            attempt += 1
            attempt_started = time.perf_counter()
            try:
                request = self.client.build_request(
                    method=request_spec.method,
                    url=url,
                    json=request_spec.body,
                    headers=dict(request_spec.headers),
                )
                response = await self.client.send(request, stream=stream)
            except httpx.RequestError as exc:
                error = _request_error(exc, label)
                latency_ms = (time.perf_counter() - attempt_started) * 1000.0
                if attempt >= max_attempts:
                    logger.warning(
                        (
                            "gateway_request_error request_id=%s backend=%s "
                            "attempt=%d/%d error_type=%s error=%s"
                        ),
                        request_id,
                        label,
                        attempt,
                        max_attempts,
                        exc.__class__.__name__,
                        error,
                    )
                    self._audit(
                        "gateway_request_error",
                        request_id=request_id,
                        backend=label,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error_type=exc.__class__.__name__,
                        is_timeout=isinstance(exc, httpx.TimeoutException),
                        attempt_latency_ms=round(latency_ms, 3),
                    )
                    raise error from exc
                delay = self.policy.backoff_seconds(attempt, jitter=self._jitter)
                self._log_retry(
                    request_id=request_id,
                    label=label,
                    attempt=attempt,
                    status=None,
                    reason=exc.__class__.__name__,
                    delay=delay,
                )
                await self._sleep(delay)
                continue

            latency_ms = (time.perf_counter() - attempt_started) * 1000.0
            status_code = response.status_code
            if not self.policy.is_retryable_status(status_code) or attempt >= max_attempts:
                logger.info(
                    "gateway_upstream_response request_id=%s backend=%s attempt=%d/%d status=%d latency_ms=%.2f",
                    request_id,
                    label,
                    attempt,
                    max_attempts,
                    status_code,
                    latency_ms,
                )
                self._audit(
                    "gateway_upstream_response",
                    request_id=request_id,
                    backend=label,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    status=status_code,
                    retries_exhausted=self.policy.is_retryable_status(status_code),
                    attempt_latency_ms=round(latency_ms, 3),
                )
                return response

            retry_after = parse_retry_after_seconds(response.headers)
            delay = self.policy.backoff_seconds(
                attempt, retry_after=retry_after, jitter=self._jitter
            )
            await response.aclose()
            self._log_retry(
                request_id=request_id,
                label=label,
                attempt=attempt,
                status=status_code,
                reason="status",
                delay=delay,
                retry_after=retry_after,
            )
            await self._sleep(delay)

    def _log_retry(
        self,
        *,
        request_id: str | None,
        label: str,
        attempt: int,
        status: int | None,
        reason: str,
        delay: float,
        retry_after: float | None = None,
    ) -> None:
        logger.info(
            "gateway_retry request_id=%s backend=%s attempt=%d/%d status=%s reason=%s delay_seconds=%.3f",
            request_id,
            label,
            attempt,
            self.policy.max_attempts,
            status,
            reason,
            delay,
        )
        self._audit(
            "gateway_retry",
            request_id=request_id,
            backend=label,
            attempt=attempt,
            max_attempts=self.policy.max_attempts,
            status=status,
            reason=reason,
            delay_seconds=round(delay, 3),
            retry_after_seconds=retry_after,
        )
