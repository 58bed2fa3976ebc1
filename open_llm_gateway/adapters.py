from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from open_llm_gateway.canonical import CanonicalRequest
from open_llm_gateway.extraction import (
    body_text,
    coerce_text,
    parse_json_body,
    pick_first,
    pick_path,
    stringify_body,
)
from open_llm_gateway.registry import (
    OPENAI_CHAT_PATH,
    BackendDescriptor,
    BackendMode,
)
from open_llm_gateway.retry import UpstreamRequestSpec

COMMON_TEXT_FIELDS = ("text", "reply", "response", "content")
DEGRADED_MESSAGE_TEMPLATE = (
    "[degraded] All upstream model backends are busy right now, so this reply "
    "was generated by the gateway without contacting a model. "
    'Your request was received: "{prompt}". Please try again shortly.'
)


def degraded_message(prompt: str) -> str:
    return DEGRADED_MESSAGE_TEMPLATE.format(prompt=prompt)


@dataclass(frozen=True, slots=True)
class PreparedRequest:
    url: str
    body: dict[str, Any]
    headers: dict[str, str]

    @property
    def spec(self) -> UpstreamRequestSpec:
        return UpstreamRequestSpec(body=self.body, headers=self.headers)


def build_headers(descriptor: BackendDescriptor, stream: bool = False) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream" if stream else "application/json",
    }
    if descriptor.auth_key:
        headers["Authorization"] = f"Bearer {descriptor.auth_key}"
    return headers


class ProtocolAdapter:
    mode: BackendMode

    def build_request(
        self, descriptor: BackendDescriptor, request: CanonicalRequest
    ) -> PreparedRequest:
        raise NotImplementedError

    def supports_stream_passthrough(self) -> bool:
        return False

    def extract_text(
        self, descriptor: BackendDescriptor, raw_body: bytes | str, prompt: str = ""
    ) -> str:
        parsed, ok = parse_json_body(raw_body)
        if not ok:
            return body_text(raw_body)
        return self.extract_from_json(descriptor, parsed, prompt)

    def extract_from_json(
        self, descriptor: BackendDescriptor, data: Any, prompt: str = ""
    ) -> str:
        value = pick_first(data, descriptor.response_path_candidates)
        if value is not None:
            return coerce_text(value)
        return stringify_body(data)


class OpenAIPassthroughAdapter(ProtocolAdapter):
    mode = BackendMode.OPENAI

    def build_request(
        self, descriptor: BackendDescriptor, request: CanonicalRequest
    ) -> PreparedRequest:
        body: dict[str, Any] = {"model": descriptor.upstream_model or descriptor.name}
        if request.messages is not None:
            body["messages"] = request.messages_payload()
        else:
            body["prompt"] = request.prompt
        body["stream"] = bool(request.stream)
        return PreparedRequest(
            url=descriptor.url_for(OPENAI_CHAT_PATH),
            body=body,
            headers=build_headers(descriptor, stream=request.stream),
        )

    def supports_stream_passthrough(self) -> bool:
        return True


class GatewayEnvelopeAdapter(ProtocolAdapter):
    mode = BackendMode.GATEWAY

    def build_request(
        self, descriptor: BackendDescriptor, request: CanonicalRequest
    ) -> PreparedRequest:
        fields = descriptor.gateway_fields
        if fields is None:
            raise ValueError(f"Backend '{descriptor.name}' has no gateway fields.")
        body = {
            "agent_id": fields.agent_id,
            "action": fields.action,
            "params": {fields.objective_field: request.current_text},
        }
        return PreparedRequest(
            url=descriptor.url_for(descriptor.path),
            body=body,
            headers=build_headers(descriptor),
        )

    def extract_from_json(
        self, descriptor: BackendDescriptor, data: Any, prompt: str = ""
    ) -> str:
        fragments: list[str] = []
        objective_field = (
            descriptor.gateway_fields.objective_field
            if descriptor.gateway_fields is not None
            else "objective"
        )
        objective = pick_path(
            data, f"result.params.{objective_field}|params.{objective_field}"
        )
        if objective is not None:
            fragments.append(f"Objective: {coerce_text(objective)}")

        picked = pick_first(data, descriptor.response_path_candidates)
        if picked is not None:
            fragments.append(coerce_text(picked))

        note = pick_path(data, "note|result.note")
        if note is not None:
            fragments.append(coerce_text(note))

        steps = pick_path(data, "steps|result.steps")
        if isinstance(steps, list) and steps:
            fragments.append(_numbered_steps(steps))

        fragments = [fragment for fragment in fragments if fragment]
        if not fragments:
            return stringify_body(data)
        return "\n".join(fragments)


def _step_text(step: Any) -> str:
    if isinstance(step, dict):
        for key in ("description", "title", "action", "text", "name"):
            value = step.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return stringify_body(step)
    return coerce_text(step)


def _numbered_steps(steps: list[Any]) -> str:
    return "\n".join(
        f"{index}. {_step_text(step)}" for index, step in enumerate(steps, start=1)
    )


class CustomAdapter(ProtocolAdapter):
    mode = BackendMode.CUSTOM

    def build_request(
        self, descriptor: BackendDescriptor, request: CanonicalRequest
    ) -> PreparedRequest:
        body = {descriptor.request_field: request.current_text, "model": "custom"}
        return PreparedRequest(
            url=descriptor.url_for(descriptor.path),
            body=body,
            headers=build_headers(descriptor),
        )

    def pick_text(self, descriptor: BackendDescriptor, data: Any) -> Any:
        value = pick_first(data, descriptor.response_path_candidates)
        if value is not None:
            return value
        if isinstance(data, dict):
            for field_name in COMMON_TEXT_FIELDS:
                if data.get(field_name) is not None:
                    return data[field_name]
        return None

    def extract_from_json(
        self, descriptor: BackendDescriptor, data: Any, prompt: str = ""
    ) -> str:
        value = self.pick_text(descriptor, data)
        if value is not None:
            return coerce_text(value)
        return stringify_body(data)


class RelayAdapter(CustomAdapter):
    mode = BackendMode.RELAY

    def build_request(
        self, descriptor: BackendDescriptor, request: CanonicalRequest
    ) -> PreparedRequest:
        body = {
            "command": descriptor.relay_command,
            "params": {"prompt": request.current_text},
        }
        return PreparedRequest(
            url=descriptor.url_for(descriptor.path),
            body=body,
            headers=build_headers(descriptor),
        )

    def is_degraded_via(self, descriptor: BackendDescriptor, data: Any) -> bool:
        via = pick_path(data, "via|result.via")
        if not isinstance(via, str):
            return False
        return via.strip().lower() in descriptor.degraded_via_values

    def extract_from_json(
        self, descriptor: BackendDescriptor, data: Any, prompt: str = ""
    ) -> str:
        value = self.pick_text(descriptor, data)
        if self.is_degraded_via(descriptor, data):
            text = coerce_text(value).strip() if value is not None else ""
            if text:
                return text
            if not prompt:
                prompt = coerce_text(pick_path(data, "params.prompt|result.params.prompt"))
            return degraded_message(prompt)
        if value is not None:
            return coerce_text(value)
        return stringify_body(data)


_ADAPTERS: dict[BackendMode, ProtocolAdapter] = {
    BackendMode.OPENAI: OpenAIPassthroughAdapter(),
    BackendMode.GATEWAY: GatewayEnvelopeAdapter(),
    BackendMode.CUSTOM: CustomAdapter(),
    BackendMode.RELAY: RelayAdapter(),
}


def adapter_for(mode: BackendMode | str) -> ProtocolAdapter:
    return _ADAPTERS[BackendMode(mode)]
