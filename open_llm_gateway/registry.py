from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from open_llm_gateway.config import BackendConfig, GatewayConfig

OPENAI_CHAT_PATH = "/v1/chat/completions"
DEFAULT_OPENAI_RESPONSE_PATHS = (
    "choices.0.message.content|choices.0.text",
)


class BackendMode(str, Enum):
    OPENAI = "openai"
    GATEWAY = "gateway"
    CUSTOM = "custom"
    RELAY = "relay"


@dataclass(frozen=True, slots=True)
class GatewayFields:
    agent_id: str
    action: str
    objective_field: str


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    name: str
    base_url: str
    mode: BackendMode = BackendMode.OPENAI
    path: str = ""
    upstream_model: str = ""
    auth_key: str | None = None
    auth_slot: str = "public"
    request_field: str = "input"
    response_path_candidates: tuple[str, ...] = ()
    gateway_fields: GatewayFields | None = None
    relay_command: str = "chat"
    degraded_via_values: tuple[str, ...] = ()
    model_ids: tuple[str, ...] = ()

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    def url_for(self, path: str) -> str:
        if not path:
            return self.base_url
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"


def _unconfigured(name: str) -> BackendDescriptor:
    return BackendDescriptor(name=name, base_url="")


def _descriptor_from_config(backend: BackendConfig) -> BackendDescriptor:
    mode = BackendMode(backend.mode)
    candidates = tuple(backend.response_path)
    if mode is BackendMode.OPENAI and not candidates:
        candidates = DEFAULT_OPENAI_RESPONSE_PATHS
    gateway_fields = None
    if mode is BackendMode.GATEWAY:
        gateway_fields = GatewayFields(
            agent_id=backend.gateway.agent_id,
            action=backend.gateway.action,
            objective_field=backend.gateway.objective_field,
        )
    return BackendDescriptor(
        name=backend.name,
        base_url=backend.resolved_base_url(),
        mode=mode,
        path=backend.path.strip(),
        upstream_model=(backend.upstream_model or "").strip() or backend.name,
        auth_key=backend.resolved_auth_key(),
        auth_slot=backend.auth_slot,
        request_field=backend.request_field,
        response_path_candidates=candidates,
        gateway_fields=gateway_fields,
        relay_command=backend.relay_command,
        degraded_via_values=tuple(
            value.strip().lower()
            for value in backend.degraded_via_values
            if value.strip()
        ),
        model_ids=tuple(backend.models),
    )


class BackendRegistry:
    """Maps requested model ids and tier names onto backend descriptors.

    Every call builds a fresh descriptor from the immutable ``GatewayConfig``,
    so credentials supplied through ``*_env`` fields are read at resolution
    time and nothing is shared between requests.
    """

    def __init__(self, config: GatewayConfig) -> None:
        self._config = config

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def default_backend(self) -> str:
        return self._config.default_backend

    @property
    def fallback_order(self) -> list[str]:
        return list(self._config.fallback_order)

    def backend_name_for_model(self, model_id: str | None) -> str:
        normalized = (model_id or "").strip().lower()
        if normalized:
            for backend in self._config.backends:
                if backend.name.strip().lower() == normalized:
                    return backend.name
                if any(model.lower() == normalized for model in backend.models):
                    return backend.name
        # Unknown ids fall through to the default backend instead of failing.
        return self._config.default_backend

    def resolve(self, model_id: str | None) -> BackendDescriptor:
        return self.resolve_backend(self.backend_name_for_model(model_id))

    def resolve_backend(self, name: str) -> BackendDescriptor:
        backend = self._config.backend(name)
        if backend is None:
            return _unconfigured(name)
        return _descriptor_from_config(backend)

    def available_models(self) -> list[tuple[str, str]]:
        models: list[tuple[str, str]] = []
        seen: set[str] = set()
        for backend in self._config.backends:
            for model_id in backend.models or [backend.name]:
                key = model_id.lower()
                if key in seen:
                    continue
                seen.add(key)
                models.append((model_id, backend.name))
        return models
