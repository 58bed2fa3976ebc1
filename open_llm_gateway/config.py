from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from open_llm_gateway.settings import Settings

DEFAULT_DEGRADED_VIA_VALUES = ["degraded", "fallback", "offline", "cache"]


class GatewayFieldsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str = "assistant"
    action: str = "plan"
    objective_field: str = "objective"


class BackendConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    base_url: str = ""
    base_url_env: str | None = None
    mode: Literal["openai", "gateway", "custom", "relay"] = "openai"
    path: str = ""
    api_key: str | None = None
    api_key_env: str | None = None
    internal_key: str | None = None
    internal_key_env: str | None = None
    auth_slot: Literal["public", "internal"] = "public"
    models: list[str] = Field(default_factory=list)
    upstream_model: str | None = None
    request_field: str = "input"
    response_path: list[str] = Field(default_factory=list)
    gateway: GatewayFieldsConfig = Field(default_factory=GatewayFieldsConfig)
    relay_command: str = "chat"
    degraded_via_values: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DEGRADED_VIA_VALUES)
    )

    @field_validator("response_path", mode="before")
    @classmethod
    def _coerce_response_path(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            normalized = value.strip()
            return [normalized] if normalized else []
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError("Expected 'response_path' to be a string or a list.")

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError("Expected 'models' to be a string or a list.")

    @staticmethod
    def _resolve_env_or_value(env_name: str | None, value: str | None) -> str | None:
        if env_name:
            env_value = os.getenv(env_name, "").strip()
            if env_value:
                return env_value
        return value

    def resolved_base_url(self) -> str:
        raw = self._resolve_env_or_value(self.base_url_env, self.base_url) or ""
        return raw.strip().rstrip("/")

    def resolved_auth_key(self) -> str | None:
        if self.auth_slot == "internal":
            key = self._resolve_env_or_value(self.internal_key_env, self.internal_key)
        else:
            key = self._resolve_env_or_value(self.api_key_env, self.api_key)
        if key is None or not key.strip():
            return None
        return key.strip()


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_backend: str = "primary"
    fallback_order: list[str] = Field(default_factory=lambda: ["secondary", "relay"])
    fallback_enabled: bool = True
    backends: list[BackendConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_names(self) -> GatewayConfig:
        seen: set[str] = set()
        for backend in self.backends:
            key = backend.name.strip().lower()
            if key in seen:
                raise ValueError(f"Duplicate backend name '{backend.name}'.")
            seen.add(key)
        return self

    def backend(self, name: str) -> BackendConfig | None:
        wanted = name.strip().lower()
        for backend in self.backends:
            if backend.name.strip().lower() == wanted:
                return backend
        return None

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayConfig:
        return cls(
            default_backend=settings.default_backend,
            fallback_enabled=settings.fallback_enabled,
            backends=[
                BackendConfig(
                    name="primary",
                    base_url=settings.primary_base_url,
                    api_key=settings.primary_api_key,
                    internal_key=settings.primary_internal_key,
                    auth_slot=(
                        "internal"
                        if settings.primary_auth_slot.strip().lower() == "internal"
                        else "public"
                    ),
                    models=settings.primary_models_list,
                ),
                BackendConfig(
                    name="secondary",
                    base_url=settings.secondary_base_url,
                    api_key=settings.secondary_api_key,
                    models=settings.secondary_models_list,
                ),
                BackendConfig(
                    name="relay",
                    mode="relay",
                    base_url=settings.relay_base_url,
                    api_key=settings.relay_api_key,
                    path=settings.relay_path,
                ),
            ],
        )


def load_gateway_config(config_path: str, settings: Settings) -> GatewayConfig:
    path = Path(config_path)
    if not path.exists():
        return GatewayConfig.from_settings(settings)

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    raw.setdefault("fallback_enabled", settings.fallback_enabled)
    return GatewayConfig.model_validate(raw)
