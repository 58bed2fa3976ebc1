from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

ChatMessage = dict[str, Any]


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "\n".join(parts)
    if content is None:
        return ""
    return str(content)


@dataclass(frozen=True, slots=True)
class CanonicalRequest:
    model_id: str
    messages: tuple[ChatMessage, ...] | None = None
    prompt: str | None = None
    stream: bool = False

    def __post_init__(self) -> None:
        if (self.messages is None) == (self.prompt is None):
            raise ValueError("Exactly one of 'messages' or 'prompt' must be set.")

    @classmethod
    def from_chat(
        cls, model_id: str, messages: list[ChatMessage], stream: bool = False
    ) -> CanonicalRequest:
        cleaned = tuple(dict(message) for message in messages if isinstance(message, dict))
        return cls(model_id=model_id, messages=cleaned, stream=bool(stream))

    @classmethod
    def from_prompt(
        cls, model_id: str, prompt: Any, stream: bool = False
    ) -> CanonicalRequest:
        if isinstance(prompt, list):
            prompt = "\n".join(str(item) for item in prompt)
        return cls(
            model_id=model_id,
            prompt="" if prompt is None else str(prompt),
            stream=bool(stream),
        )

    @property
    def surface(self) -> Literal["chat", "completion"]:
        return "chat" if self.messages is not None else "completion"

    @property
    def current_text(self) -> str:
        if self.messages is not None:
            if not self.messages:
                return ""
            return _message_text(self.messages[-1].get("content"))
        return self.prompt or ""

    def messages_payload(self) -> list[ChatMessage]:
        return [dict(message) for message in self.messages or ()]


@dataclass(frozen=True, slots=True)
class CanonicalResponse:
    text: str
    source_backend: str
    degraded: bool = False
