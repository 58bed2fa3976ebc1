from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator, Literal
from uuid import uuid4

Surface = Literal["chat", "completion"]

SSE_DONE = b"data: [DONE]\n\n"


def _completion_id(surface: Surface) -> str:
    prefix = "chatcmpl" if surface == "chat" else "cmpl"
    return f"{prefix}-{uuid4().hex[:24]}"


def chat_completion_body(text: str, model: str) -> dict[str, Any]:
    return {
        "id": _completion_id("chat"),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
    }


def text_completion_body(text: str, model: str) -> dict[str, Any]:
    return {
        "id": _completion_id("completion"),
        "object": "text_completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "text": text,
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
    }


def completion_body(surface: Surface, text: str, model: str) -> dict[str, Any]:
    if surface == "chat":
        return chat_completion_body(text, model)
    return text_completion_body(text, model)


def _sse_event(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n".encode("utf-8")


def chat_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> bytes:
    return _sse_event(
        {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }
    )


def text_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    text: str,
    finish_reason: str | None = None,
) -> bytes:
    return _sse_event(
        {
            "id": completion_id,
            "object": "text_completion",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "text": text,
                    "logprobs": None,
                    "finish_reason": finish_reason,
                }
            ],
        }
    )


async def single_text_event_stream(
    surface: Surface, text: str, model: str
) -> AsyncIterator[bytes]:
    """Re-emit an already complete answer as an OpenAI-style SSE stream."""
    completion_id = _completion_id(surface)
    created = int(time.time())
    if surface == "chat":
        yield chat_completion_chunk(
            completion_id, created, model, {"role": "assistant", "content": text}
        )
        yield chat_completion_chunk(completion_id, created, model, {}, "stop")
    else:
        yield text_completion_chunk(completion_id, created, model, text)
        yield text_completion_chunk(completion_id, created, model, "", "stop")
    yield SSE_DONE
