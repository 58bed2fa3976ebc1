from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from open_llm_gateway.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when ingress auth is required but no API key is configured."""


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_enabled
        self.api_keys = set(settings.ingress_api_keys_list)

        if self.required and not self.api_keys:
            raise AuthConfigurationError(
                "Ingress auth is required, but no API keys are configured. "
                "Set INGRESS_API_KEYS or PROXY_API_KEY.",
            )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        if token.strip() not in self.api_keys:
            return _unauthorized("Invalid API key.")

        request.state.auth = AuthResult(method="api_key", principal="api-key-client")
        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
