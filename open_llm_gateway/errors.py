from __future__ import annotations

from typing import Any

ERROR_BODY_PREVIEW_CHARS = 500


def truncate_body(body: str | None, limit: int = ERROR_BODY_PREVIEW_CHARS) -> str:
    if not body:
        return ""
    if len(body) <= limit:
        return body
    return body[:limit] + "..."


class GatewayError(RuntimeError):
    status_code = 500

    def to_content(self) -> dict[str, Any]:
        return {"error": str(self)}


class ConfigurationError(GatewayError):
    """Raised when a backend needed for the request has no base URL."""

    def __init__(self, backend: str) -> None:
        super().__init__(f"Backend '{backend}' is not configured (missing base URL).")
        self.backend = backend


class UpstreamError(GatewayError):
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        backend: str,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.status = status
        self.body = truncate_body(body)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    def to_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {"error": str(self)}
        if self.status is not None:
            content["status"] = self.status
        if self.body:
            content["body"] = self.body
        return content


class UpstreamHTTPError(UpstreamError):
    def __init__(self, *, backend: str, status: int, body: str | None = None) -> None:
        preview = truncate_body(body)
        message = f"Backend {backend} {status}"
        if preview:
            message = f"{message}: {preview}"
        super().__init__(
            message,
            backend=backend,
            status=status,
            body=body,
        )


class UpstreamTimeoutError(UpstreamError):
    def __init__(self, *, backend: str, detail: str) -> None:
        super().__init__(f"Backend {backend} timed out: {detail}", backend=backend)


class UpstreamConnectionError(UpstreamError):
    def __init__(self, *, backend: str, error_type: str, detail: str) -> None:
        super().__init__(
            f"Could not reach backend {backend} ({error_type}): {detail}",
            backend=backend,
        )
        self.error_type = error_type


class FallbackExhaustedError(UpstreamError):
    """A fallback tier failed hard after the primary backend was rate limited."""

    def __init__(
        self,
        *,
        primary_error: UpstreamError,
        failing_error: UpstreamError,
        fallback_errors: dict[str, str],
        attempted_backends: list[str],
    ) -> None:
        super().__init__(
            str(primary_error),
            backend=failing_error.backend,
            status=failing_error.status,
            body=failing_error.body,
        )
        self.primary_error = primary_error
        self.failing_error = failing_error
        self.fallback_errors = dict(fallback_errors)
        self.attempted_backends = list(attempted_backends)

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        content.update(self.fallback_errors)
        content["attempted_backends"] = list(self.attempted_backends)
        return content
