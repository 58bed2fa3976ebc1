from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)

from open_llm_gateway.canonical import CanonicalRequest
from open_llm_gateway.config import load_gateway_config
from open_llm_gateway.errors import GatewayError
from open_llm_gateway.fallback import DispatchResult, FallbackOrchestrator
from open_llm_gateway.gateway.audit import JsonlAuditLogger
from open_llm_gateway.gateway.auth import AuthConfigurationError, Authenticator
from open_llm_gateway.registry import BackendRegistry
from open_llm_gateway.responses import (
    Surface,
    completion_body,
    single_text_event_stream,
)
from open_llm_gateway.retry import RetryingExecutor, RetryPolicy
from open_llm_gateway.settings import Settings, get_settings

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

app = FastAPI(
    title="Open-LLM Gateway",
    description="OpenAI-compatible gateway with backend adapters, retries and tiered fallback.",
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def _emit_terminal_event(
    *,
    audit_hook: Callable[[dict[str, Any]], None] | None,
    request_id: str,
    path: str,
    stream: bool,
    status: int,
    outcome: str,
    backend: str | None = None,
    degraded: bool = False,
    attempted_backends: list[str] | None = None,
    error_type: str | None = None,
) -> None:
    if audit_hook is None:
        return
    event: dict[str, Any] = {
        "event": "gateway_terminal",
        "request_id": request_id,
        "path": path,
        "stream": stream,
        "status": int(status),
        "outcome": outcome,
        "degraded": degraded,
    }
    if backend:
        event["backend"] = backend
    if attempted_backends is not None:
        event["attempted_backends"] = list(attempted_backends)
    if error_type:
        event["error_type"] = error_type
    try:
        audit_hook(event)
    except Exception as exc:
        logger.debug("audit_write_failed event=gateway_terminal error=%s", exc)


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def _gateway_headers(request_id: str, result: DispatchResult) -> dict[str, str]:
    return {
        "x-gateway-request-id": request_id,
        "x-gateway-backend": result.backend,
        "x-gateway-degraded": "true" if result.degraded else "false",
        "x-gateway-attempted-backends": ",".join(result.attempted_backends),
    }


async def _read_json_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(
            status_code=400, detail=f"Expected JSON body: {exc}"
        ) from exc

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400, detail="Expected a JSON object request body."
        )
    return payload


def _canonical_request(
    payload: dict[str, Any], surface: Surface, default_model: str
) -> CanonicalRequest:
    model = payload.get("model")
    model_id = model.strip() if isinstance(model, str) and model.strip() else default_model
    stream = bool(payload.get("stream", False))
    if surface == "chat":
        messages = payload.get("messages")
        if messages is None:
            messages = []
        if not isinstance(messages, list):
            raise HTTPException(
                status_code=400, detail="Expected 'messages' to be a list."
            )
        return CanonicalRequest.from_chat(model_id, messages, stream=stream)
    return CanonicalRequest.from_prompt(model_id, payload.get("prompt", ""), stream=stream)


def _pipe_upstream_stream(
    upstream: httpx.Response, headers: dict[str, str]
) -> StreamingResponse:
    response_headers = _filter_response_headers(upstream.headers)
    media_type = response_headers.pop("content-type", None) or response_headers.pop(
        "Content-Type", "text/event-stream"
    )
    response_headers["Cache-Control"] = "no-cache"
    response_headers.update(headers)

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        content=stream_generator(),
        status_code=upstream.status_code,
        headers=response_headers,
        media_type=media_type,
    )


async def _dispatch_request(request: Request, path: str, surface: Surface) -> Response:
    payload = await _read_json_payload(request)
    registry: BackendRegistry = app.state.registry
    orchestrator: FallbackOrchestrator = app.state.orchestrator
    audit_hook: Callable[[dict[str, Any]], None] | None = getattr(
        app.state, "audit_event_hook", None
    )
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    request.state.request_id = request_id
    canonical = _canonical_request(payload, surface, registry.default_backend)

    try:
        result = await orchestrator.dispatch(canonical, request_id=request_id)
    except GatewayError as exc:
        logger.warning(
            "gateway_error request_id=%s path=%s error_type=%s status=%d error=%s",
            request_id,
            path,
            exc.__class__.__name__,
            exc.status_code,
            exc,
        )
        _emit_terminal_event(
            audit_hook=audit_hook,
            request_id=request_id,
            path=path,
            stream=canonical.stream,
            status=exc.status_code,
            outcome="error",
            error_type=exc.__class__.__name__,
        )
        raise

    headers = _gateway_headers(request_id, result)
    logger.info(
        "gateway_response request_id=%s path=%s backend=%s degraded=%s attempts=%d stream=%s",
        request_id,
        path,
        result.backend,
        result.degraded,
        len(result.attempts),
        canonical.stream,
    )
    _emit_terminal_event(
        audit_hook=audit_hook,
        request_id=request_id,
        path=path,
        stream=canonical.stream,
        status=200,
        outcome="degraded" if result.degraded else "success",
        backend=result.backend,
        degraded=result.degraded,
        attempted_backends=result.attempted_backends,
    )

    if result.stream is not None:
        return _pipe_upstream_stream(result.stream, headers)

    response = result.response
    if response is None:
        raise GatewayError(f"Backend {result.backend} returned no response.")
    if canonical.stream:
        return StreamingResponse(
            content=single_text_event_stream(
                surface, response.text, canonical.model_id
            ),
            headers={"Cache-Control": "no-cache", **headers},
            media_type="text/event-stream",
        )
    return JSONResponse(
        content=completion_body(surface, response.text, canonical.model_id),
        headers=headers,
    )


def _setup_optional_tracing(
    *,
    app_obj: FastAPI,
    client: httpx.AsyncClient,
    settings: Settings,
) -> None:
    if not settings.observability_tracing_enabled:
        return
    try:
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception as exc:
        logger.warning("observability_tracing_unavailable reason=%s", str(exc))
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.observability_service_name})
    )
    endpoint = settings.observability_otlp_endpoint
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )

            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
            )
        except Exception as exc:
            logger.warning(
                "observability_otlp_exporter_unavailable reason=%s", str(exc)
            )
    trace.set_tracer_provider(provider)

    try:
        FastAPIInstrumentor.instrument_app(app_obj)
    except Exception as exc:
        logger.warning(
            "observability_fastapi_instrumentation_failed reason=%s", str(exc)
        )
    try:
        HTTPXClientInstrumentor().instrument_client(client)
    except Exception as exc:
        logger.warning("observability_httpx_instrumentation_failed reason=%s", str(exc))


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    gateway_config = load_gateway_config(settings.gateway_config_path, settings)
    authenticator = Authenticator(settings)
    audit_logger = JsonlAuditLogger(
        path=settings.gateway_audit_log_path,
        enabled=settings.gateway_audit_log_enabled,
        safe_logging=settings.gateway_audit_safe_logging_enabled,
    )

    def audit_event_hook(event: dict[str, Any]) -> None:
        audit_logger.log(event)

    connect_timeout = max(0.1, settings.backend_connect_timeout_seconds)
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=max(0.1, settings.backend_timeout_seconds),
            connect=connect_timeout,
            read=max(0.1, settings.backend_read_timeout_seconds),
            write=max(0.1, settings.backend_write_timeout_seconds),
            pool=max(0.1, settings.backend_pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
    )
    executor = RetryingExecutor(
        client,
        RetryPolicy(
            max_attempts=max(1, settings.retry_max_attempts),
            base_delay_seconds=max(0.0, settings.retry_base_delay_seconds),
            max_delay_seconds=max(0.0, settings.retry_max_delay_seconds),
            jitter_seconds=max(0.0, settings.retry_jitter_seconds),
        ),
        audit_hook=audit_event_hook,
    )
    registry = BackendRegistry(gateway_config)

    app.state.settings = settings
    app.state.authenticator = authenticator
    app.state.gateway_config = gateway_config
    app.state.audit_logger = audit_logger
    app.state.audit_event_hook = audit_event_hook
    app.state.http_client = client
    app.state.executor = executor
    app.state.registry = registry
    app.state.orchestrator = FallbackOrchestrator(
        registry, executor, audit_hook=audit_event_hook
    )
    _setup_optional_tracing(app_obj=app, client=client, settings=settings)
    logger.info(
        (
            "startup complete gateway_config_path=%s backends=%s default_backend=%s "
            "fallback_order=%s fallback_enabled=%s retry_max_attempts=%d auth_required=%s"
        ),
        settings.gateway_config_path,
        ",".join(
            f"{backend.name}:{backend.mode}" for backend in gateway_config.backends
        ),
        gateway_config.default_backend,
        ",".join(gateway_config.fallback_order),
        gateway_config.fallback_enabled,
        executor.policy.max_attempts,
        authenticator.required,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.get("/")
async def root() -> PlainTextResponse:
    return PlainTextResponse("Open-LLM Gateway (OpenAI compatible). Ready.")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    registry: BackendRegistry = app.state.registry
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "owned_by": backend}
            for model_id, backend in registry.available_models()
        ],
    }


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _dispatch_request(request, "/v1/chat/completions", "chat")


@app.post("/v1/completions")
async def completions(request: Request) -> Response:
    return await _dispatch_request(request, "/v1/completions", "completion")


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    headers: dict[str, str] = {}
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        headers["x-gateway-request-id"] = request_id
    return JSONResponse(
        status_code=exc.status_code, content=exc.to_content(), headers=headers
    )


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run("open_llm_gateway.main:app", host="0.0.0.0", port=4000, reload=False)


if __name__ == "__main__":
    run()
