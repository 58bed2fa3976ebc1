from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gateway_config_path: str = "gateway.yaml"
    default_backend: str = "primary"
    primary_base_url: str = ""
    primary_api_key: str | None = None
    primary_internal_key: str | None = None
    primary_auth_slot: str = "public"
    primary_models: str = "primary"
    secondary_base_url: str = ""
    secondary_api_key: str | None = None
    secondary_models: str = "secondary"
    relay_base_url: str = ""
    relay_api_key: str | None = None
    relay_path: str = "/api/command"
    backend_timeout_seconds: float = 120.0
    backend_connect_timeout_seconds: float = 5.0
    backend_read_timeout_seconds: float = 60.0
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 5.0
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0
    retry_jitter_seconds: float = 0.25
    fallback_enabled: bool = True
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    proxy_api_key: str | None = None
    gateway_audit_log_enabled: bool = False
    gateway_audit_log_path: str = "logs/gateway_events.jsonl"
    gateway_audit_safe_logging_enabled: bool = True
    observability_tracing_enabled: bool = False
    observability_service_name: str = "open-llm-gateway"
    observability_otlp_endpoint: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def ingress_api_keys_list(self) -> list[str]:
        keys = _split_csv(self.ingress_api_keys)
        if self.proxy_api_key and self.proxy_api_key.strip():
            keys.append(self.proxy_api_key.strip())
        return keys

    @property
    def ingress_auth_enabled(self) -> bool:
        # A configured proxy key alone turns ingress auth on.
        return self.ingress_auth_required or bool(
            self.proxy_api_key and self.proxy_api_key.strip()
        )

    @property
    def primary_models_list(self) -> list[str]:
        return _split_csv(self.primary_models)

    @property
    def secondary_models_list(self) -> list[str]:
        return _split_csv(self.secondary_models)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
