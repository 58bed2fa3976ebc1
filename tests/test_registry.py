from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from open_llm_gateway.config import BackendConfig, GatewayConfig, load_gateway_config
from open_llm_gateway.registry import (
    DEFAULT_OPENAI_RESPONSE_PATHS,
    BackendMode,
    BackendRegistry,
)
from open_llm_gateway.settings import Settings

FIXTURE_PATH = Path(__file__).resolve().parent / "fixtures" / "gateway.yaml"


def _registry() -> BackendRegistry:
    return BackendRegistry(load_gateway_config(str(FIXTURE_PATH), Settings()))


def test_resolve_matches_model_ids_case_insensitively() -> None:
    registry = _registry()

    assert registry.resolve("AIDA").name == "secondary"
    assert registry.resolve("Arkaios").name == "primary"
    assert registry.resolve("relay").name == "relay"


def test_unknown_model_ids_resolve_to_default_backend() -> None:
    registry = _registry()

    assert registry.resolve("gpt-4o").name == "primary"
    assert registry.resolve("").name == "primary"
    assert registry.resolve(None).name == "primary"


def test_descriptor_normalizes_base_url_and_picks_auth_slot() -> None:
    descriptor = _registry().resolve("arkaios")

    assert descriptor.base_url == "http://primary.test"
    assert descriptor.mode is BackendMode.OPENAI
    assert descriptor.auth_slot == "internal"
    assert descriptor.auth_key == "primary-internal-key"
    assert descriptor.response_path_candidates == DEFAULT_OPENAI_RESPONSE_PATHS


def test_gateway_descriptor_carries_envelope_fields() -> None:
    descriptor = _registry().resolve("aida")

    assert descriptor.mode is BackendMode.GATEWAY
    assert descriptor.gateway_fields is not None
    assert descriptor.gateway_fields.agent_id == "aida"
    assert descriptor.gateway_fields.objective_field == "objective"
    assert descriptor.response_path_candidates == ("result.summary",)
    assert descriptor.url_for(descriptor.path) == "http://secondary.test/gateway/run"


def test_descriptors_are_immutable_and_fresh_per_resolution() -> None:
    registry = _registry()
    first = registry.resolve("arkaios")
    second = registry.resolve("arkaios")

    assert first == second
    assert first is not second
    with pytest.raises(dataclasses.FrozenInstanceError):
        first.base_url = "http://elsewhere"  # type: ignore[misc]


def test_unknown_backend_name_is_unconfigured() -> None:
    descriptor = _registry().resolve_backend("tertiary")

    assert descriptor.name == "tertiary"
    assert descriptor.base_url == ""
    assert descriptor.is_configured is False


def test_credentials_and_base_url_resolve_from_environment(monkeypatch: Any) -> None:
    monkeypatch.setenv("CUSTOM_BASE_URL", "http://custom.test///")
    monkeypatch.setenv("CUSTOM_KEY", "env-key")
    registry = BackendRegistry(
        GatewayConfig(
            default_backend="custom",
            backends=[
                BackendConfig(
                    name="custom",
                    mode="custom",
                    base_url_env="CUSTOM_BASE_URL",
                    api_key_env="CUSTOM_KEY",
                    response_path="data.reply|output",
                )
            ],
        )
    )

    descriptor = registry.resolve("anything")

    assert descriptor.base_url == "http://custom.test"
    assert descriptor.auth_key == "env-key"
    assert descriptor.response_path_candidates == ("data.reply|output",)


def test_missing_config_file_builds_backends_from_settings(tmp_path: Path) -> None:
    settings = Settings(
        primary_base_url="http://arkaios.test/",
        primary_api_key="ark-key",
        primary_models="arkaios",
        secondary_base_url="",
        secondary_models="aida",
        relay_base_url="http://relay.test",
    )

    config = load_gateway_config(str(tmp_path / "absent.yaml"), settings)
    registry = BackendRegistry(config)

    assert registry.resolve("arkaios").base_url == "http://arkaios.test"
    assert registry.resolve("arkaios").auth_key == "ark-key"
    assert registry.resolve("aida").is_configured is False
    relay = registry.resolve_backend("relay")
    assert relay.mode is BackendMode.RELAY
    assert relay.path == "/api/command"


def test_available_models_lists_every_backend() -> None:
    assert _registry().available_models() == [
        ("arkaios", "primary"),
        ("aida", "secondary"),
        ("relay", "relay"),
    ]


def test_duplicate_backend_names_are_rejected() -> None:
    with pytest.raises(ValidationError):
        GatewayConfig(
            backends=[
                BackendConfig(name="primary", base_url="http://a"),
                BackendConfig(name="Primary", base_url="http://b"),
            ]
        )


def test_yaml_document_must_be_an_object(tmp_path: Path) -> None:
    path = tmp_path / "gateway.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_gateway_config(str(path), Settings())


def test_upstream_model_defaults_to_backend_name() -> None:
    registry = BackendRegistry(
        GatewayConfig(
            backends=[
                BackendConfig(name="primary", base_url="http://a"),
                BackendConfig(
                    name="secondary", base_url="http://b", upstream_model=" aida-large "
                ),
            ]
        )
    )

    assert registry.resolve_backend("primary").upstream_model == "primary"
    assert registry.resolve_backend("secondary").upstream_model == "aida-large"
