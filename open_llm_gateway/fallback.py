from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

import httpx

from open_llm_gateway.adapters import adapter_for, degraded_message
from open_llm_gateway.canonical import CanonicalRequest, CanonicalResponse
from open_llm_gateway.errors import (
    ConfigurationError,
    FallbackExhaustedError,
    UpstreamError,
    UpstreamHTTPError,
)
from open_llm_gateway.extraction import body_text
from open_llm_gateway.registry import BackendDescriptor, BackendRegistry
from open_llm_gateway.retry import RetryingExecutor

logger = logging.getLogger("uvicorn.error")

DEGRADED_BACKEND = "degraded"
PRIMARY_TIER = "primary"

TierOutcome = Literal["success", "rate_limited", "failed", "unconfigured", "skipped"]

_FALLBACK_ERROR_KEYS = {
    "secondary": "fallback_error",
    "relay": "fallback_relay_error",
}


def fallback_error_key(tier: str) -> str:
    return _FALLBACK_ERROR_KEYS.get(tier.strip().lower(), f"fallback_{tier}_error")


@dataclass(slots=True)
class TierAttempt:
    tier: str
    backend: str
    outcome: TierOutcome
    status: int | None = None
    error: str | None = None


@dataclass(slots=True)
class DispatchResult:
    backend: str
    response: CanonicalResponse | None = None
    stream: httpx.Response | None = None
    attempts: list[TierAttempt] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.response is not None and self.response.degraded

    @property
    def attempted_backends(self) -> list[str]:
        return [attempt.backend for attempt in self.attempts]


class FallbackOrchestrator:
    """Walks the tiers primary -> fallback order -> degraded for one request.

    Only a retry-exhausted 429 moves the request to the next tier. Any other
    upstream failure ends the walk and is raised to the API layer, and the
    degraded tier never touches the network.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        executor: RetryingExecutor,
        *,
        fallback_enabled: bool | None = None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._fallback_enabled = (
            registry.config.fallback_enabled
            if fallback_enabled is None
            else fallback_enabled
        )
        self._audit_hook = audit_hook

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def dispatch(
        self, request: CanonicalRequest, request_id: str | None = None
    ) -> DispatchResult:
        attempts: list[TierAttempt] = []
        primary = self._registry.resolve(request.model_id)
        if not primary.is_configured:
            raise ConfigurationError(primary.name)

        try:
            return await self._run_tier(
                PRIMARY_TIER, primary, request, request_id, attempts
            )
        except UpstreamError as exc:
            if not exc.is_rate_limited or not self._fallback_enabled:
                raise
            primary_error = exc

        fallback_errors: dict[str, str] = {}
        for tier in self._registry.fallback_order:
            descriptor = self._registry.resolve_backend(tier)
            error_key = fallback_error_key(tier)
            if any(
                attempt.backend.lower() == descriptor.name.lower()
                for attempt in attempts
            ):
                message = f"Backend {descriptor.name} was already attempted."
                attempts.append(
                    TierAttempt(tier, descriptor.name, "skipped", error=message)
                )
                fallback_errors[error_key] = message
                self._log_fallback(request_id, tier, descriptor.name, "already_attempted")
                continue
            if not descriptor.is_configured:
                message = str(ConfigurationError(descriptor.name))
                attempts.append(
                    TierAttempt(tier, descriptor.name, "unconfigured", error=message)
                )
                fallback_errors[error_key] = message
                self._log_fallback(request_id, tier, descriptor.name, "unconfigured")
                continue

            self._log_fallback(request_id, tier, descriptor.name, "attempt")
            try:
                return await self._run_tier(tier, descriptor, request, request_id, attempts)
            except UpstreamError as exc:
                fallback_errors[error_key] = str(exc)
                if exc.is_rate_limited:
                    continue
                raise FallbackExhaustedError(
                    primary_error=primary_error,
                    failing_error=exc,
                    fallback_errors=fallback_errors,
                    attempted_backends=[attempt.backend for attempt in attempts],
                ) from exc

        return self._degraded(request, request_id, attempts)

    async def _run_tier(
        self,
        tier: str,
        descriptor: BackendDescriptor,
        request: CanonicalRequest,
        request_id: str | None,
        attempts: list[TierAttempt],
    ) -> DispatchResult:
        try:
            result = await self._call_backend(descriptor, request, request_id)
        except UpstreamError as exc:
            attempts.append(
                TierAttempt(
                    tier,
                    descriptor.name,
                    "rate_limited" if exc.is_rate_limited else "failed",
                    status=exc.status,
                    error=str(exc),
                )
            )
            raise
        attempts.append(TierAttempt(tier, descriptor.name, "success", status=200))
        result.attempts = attempts
        return result

    async def _call_backend(
        self,
        descriptor: BackendDescriptor,
        request: CanonicalRequest,
        request_id: str | None,
    ) -> DispatchResult:
        adapter = adapter_for(descriptor.mode)
        prepared = adapter.build_request(descriptor, request)
        passthrough_stream = request.stream and adapter.supports_stream_passthrough()
        logger.info(
            "gateway_attempt request_id=%s backend=%s mode=%s auth_slot=%s stream=%s",
            request_id,
            descriptor.name,
            descriptor.mode.value,
            descriptor.auth_slot,
            passthrough_stream,
        )
        upstream = await self._executor.send(
            prepared.url,
            prepared.spec,
            descriptor.name,
            stream=passthrough_stream,
            request_id=request_id,
        )
        if not upstream.is_success:
            raw = await upstream.aread()
            await upstream.aclose()
            raise UpstreamHTTPError(
                backend=descriptor.name,
                status=upstream.status_code,
                body=body_text(raw),
            )

        if passthrough_stream:
            return DispatchResult(backend=descriptor.name, stream=upstream)

        text = adapter.extract_text(
            descriptor, upstream.content, prompt=request.current_text
        )
        return DispatchResult(
            backend=descriptor.name,
            response=CanonicalResponse(text=text, source_backend=descriptor.name),
        )

    def _degraded(
        self,
        request: CanonicalRequest,
        request_id: str | None,
        attempts: list[TierAttempt],
    ) -> DispatchResult:
        logger.warning(
            "gateway_degraded request_id=%s attempted_backends=%s",
            request_id,
            ",".join(attempt.backend for attempt in attempts),
        )
        self._audit(
            "gateway_degraded",
            request_id=request_id,
            attempted_backends=[attempt.backend for attempt in attempts],
            prompt_preview=request.current_text[:200],
        )
        return DispatchResult(
            backend=DEGRADED_BACKEND,
            response=CanonicalResponse(
                text=degraded_message(request.current_text),
                source_backend=DEGRADED_BACKEND,
                degraded=True,
            ),
            attempts=attempts,
        )

    def _log_fallback(
        self, request_id: str | None, tier: str, backend: str, reason: str
    ) -> None:
        logger.info(
            "gateway_fallback request_id=%s tier=%s backend=%s reason=%s",
            request_id,
            tier,
            backend,
            reason,
        )
        self._audit(
            "gateway_fallback",
            request_id=request_id,
            tier=tier,
            backend=backend,
            reason=reason,
        )
