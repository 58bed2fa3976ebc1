from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Any

import httpx
import pytest

from open_llm_gateway.errors import UpstreamConnectionError, UpstreamTimeoutError
from open_llm_gateway.retry import (
    RetryingExecutor,
    RetryPolicy,
    UpstreamRequestSpec,
    parse_retry_after_seconds,
)

URL = "http://primary.test/v1/chat/completions"


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _no_jitter(_low: float, _high: float) -> float:
    return 0.0


def _executor(
    handler: Any,
    policy: RetryPolicy | None = None,
    sleep: _SleepRecorder | None = None,
    audit: list[dict[str, Any]] | None = None,
) -> RetryingExecutor:
    return RetryingExecutor(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        policy or RetryPolicy(max_attempts=4),
        sleep=sleep or _SleepRecorder(),
        jitter=_no_jitter,
        audit_hook=audit.append if audit is not None else None,
    )


def _spec() -> UpstreamRequestSpec:
    return UpstreamRequestSpec(
        body={"model": "arkaios", "messages": [{"role": "user", "content": "hi"}]},
        headers={"Content-Type": "application/json"},
    )


def test_backoff_grows_exponentially_and_caps_at_max_delay() -> None:
    policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=3.0, jitter_seconds=0.0)

    assert [policy.backoff_seconds(attempt) for attempt in range(1, 6)] == [
        0.5,
        1.0,
        2.0,
        3.0,
        3.0,
    ]


def test_backoff_adds_jitter_within_bounds() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, jitter_seconds=0.25)
    calls: list[tuple[float, float]] = []

    def jitter(low: float, high: float) -> float:
        calls.append((low, high))
        return high

    assert policy.backoff_seconds(1, jitter=jitter) == pytest.approx(1.25)
    assert calls == [(0.0, 0.25)]


def test_backoff_prefers_larger_retry_after_hint() -> None:
    policy = RetryPolicy(base_delay_seconds=0.5, jitter_seconds=0.0)

    assert policy.backoff_seconds(1, retry_after=5.0) == 5.0
    assert policy.backoff_seconds(3, retry_after=0.1) == 2.0


def test_retry_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_retry_policy_classifies_statuses() -> None:
    policy = RetryPolicy()

    assert policy.is_retryable_status(429)
    assert policy.is_retryable_status(500)
    assert policy.is_retryable_status(599)
    assert not policy.is_retryable_status(400)
    assert not policy.is_retryable_status(403)
    assert not policy.is_retryable_status(200)


def test_parse_retry_after_seconds_supports_delta_and_http_date() -> None:
    assert parse_retry_after_seconds(httpx.Headers({"retry-after": "7"})) == 7.0
    assert parse_retry_after_seconds(httpx.Headers({})) is None
    assert parse_retry_after_seconds(httpx.Headers({"retry-after": "soon"})) is None

    future = datetime.now(timezone.utc) + timedelta(seconds=30)
    parsed = parse_retry_after_seconds(
        httpx.Headers({"retry-after": format_datetime(future, usegmt=True)})
    )
    assert parsed is not None
    assert 25.0 <= parsed <= 30.0

    past = datetime.now(timezone.utc) - timedelta(seconds=30)
    assert (
        parse_retry_after_seconds(
            httpx.Headers({"retry-after": format_datetime(past, usegmt=True)})
        )
        == 0.0
    )


def test_rate_limited_backend_gets_exactly_max_attempts_requests() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(429, json={"error": "slow down"})

    sleep = _SleepRecorder()
    executor = _executor(handler, RetryPolicy(max_attempts=4), sleep)

    response = asyncio.run(executor.send(URL, _spec(), "primary"))

    assert calls["count"] == 4
    assert response.status_code == 429
    assert response.json() == {"error": "slow down"}
    assert len(sleep.delays) == 3


def test_transient_server_error_is_retried_until_success() -> None:
    statuses = iter([503, 502, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={"ok": True})

    sleep = _SleepRecorder()
    executor = _executor(
        handler,
        RetryPolicy(max_attempts=4, base_delay_seconds=0.5, jitter_seconds=0.0),
        sleep,
    )

    response = asyncio.run(executor.send(URL, _spec(), "primary"))

    assert response.status_code == 200
    assert sleep.delays == [0.5, 1.0]


def test_non_retryable_status_returns_immediately() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(403, text="forbidden")

    sleep = _SleepRecorder()
    executor = _executor(handler, sleep=sleep)

    response = asyncio.run(executor.send(URL, _spec(), "primary"))

    assert response.status_code == 403
    assert calls["count"] == 1
    assert sleep.delays == []


def test_retry_after_header_extends_backoff() -> None:
    statuses = iter([429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        headers = {"retry-after": "4"} if status == 429 else {}
        return httpx.Response(status, headers=headers, json={})

    sleep = _SleepRecorder()
    executor = _executor(
        handler,
        RetryPolicy(max_attempts=3, base_delay_seconds=0.5, jitter_seconds=0.0),
        sleep,
    )

    response = asyncio.run(executor.send(URL, _spec(), "primary"))

    assert response.status_code == 200
    assert sleep.delays == [4.0]


def test_every_attempt_sends_identical_payload() -> None:
    bodies: list[dict[str, Any]] = []
    spec = _spec()
    original_body = json.loads(json.dumps(spec.body))

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(500)

    executor = _executor(handler, RetryPolicy(max_attempts=3))
    asyncio.run(executor.send(URL, spec, "primary"))

    assert bodies == [original_body] * 3
    assert spec.body == original_body


def test_connection_errors_are_retried_then_succeed() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ok": True})

    executor = _executor(handler)
    response = asyncio.run(executor.send(URL, _spec(), "primary"))

    assert response.status_code == 200
    assert calls["count"] == 2


def test_exhausted_timeouts_raise_timeout_error() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ReadTimeout("read timed out", request=request)

    audit: list[dict[str, Any]] = []
    executor = _executor(handler, RetryPolicy(max_attempts=2), audit=audit)

    with pytest.raises(UpstreamTimeoutError) as excinfo:
        asyncio.run(executor.send(URL, _spec(), "primary"))

    assert calls["count"] == 2
    assert excinfo.value.backend == "primary"
    assert excinfo.value.status is None
    assert isinstance(excinfo.value.__cause__, httpx.ReadTimeout)
    assert audit[-1]["event"] == "gateway_request_error"
    assert audit[-1]["is_timeout"] is True


def test_exhausted_connection_errors_raise_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    executor = _executor(handler, RetryPolicy(max_attempts=3))

    with pytest.raises(UpstreamConnectionError) as excinfo:
        asyncio.run(executor.send(URL, _spec(), "primary"))

    assert excinfo.value.error_type == "ConnectError"
    assert not isinstance(excinfo.value, UpstreamTimeoutError)


def test_retries_are_reported_to_audit_hook() -> None:
    statuses = iter([429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={})

    audit: list[dict[str, Any]] = []
    executor = _executor(handler, audit=audit)
    asyncio.run(executor.send(URL, _spec(), "primary", request_id="req-1"))

    events = [event["event"] for event in audit]
    assert events == ["gateway_retry", "gateway_upstream_response"]
    assert audit[0]["status"] == 429
    assert audit[0]["request_id"] == "req-1"
    assert audit[1]["status"] == 200


def test_non_finite_retry_after_values_are_ignored() -> None:
    for raw in ("inf", "Infinity", "-inf", "nan"):
        assert parse_retry_after_seconds(httpx.Headers({"retry-after": raw})) is None


def test_infinite_retry_after_falls_back_to_computed_backoff() -> None:
    statuses = iter([429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        headers = {"retry-after": "inf"} if status == 429 else {}
        return httpx.Response(status, headers=headers, json={})

    sleep = _SleepRecorder()
    executor = _executor(
        handler,
        RetryPolicy(max_attempts=2, base_delay_seconds=0.5, jitter_seconds=0.0),
        sleep,
    )

    response = asyncio.run(executor.send(URL, _spec(), "primary"))

    assert response.status_code == 200
    assert sleep.delays == [0.5]
