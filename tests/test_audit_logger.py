from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from open_llm_gateway.gateway.audit import REDACTED, JsonlAuditLogger, sanitize_event


def _records(path: Path) -> list[dict[str, Any]]:
    return [
        json.loads(line)
        for line in path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "gateway_events.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log({"event": "gateway_terminal", "request_id": "req-1"})
    logger.close()

    records = _records(log_path)
    assert len(records) == 1
    assert records[0]["event"] == "gateway_terminal"
    assert records[0]["request_id"] == "req-1"
    assert isinstance(records[0]["ts"], int)


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_events.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)
    logger.log({"event": "gateway_retry"})
    logger.close()

    assert not log_path.exists()


def test_safe_logging_redacts_prompt_previews(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_events.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True, safe_logging=True)
    logger.log({"event": "gateway_degraded", "prompt_preview": "my private prompt"})
    logger.close()

    assert _records(log_path)[0]["prompt_preview"] == REDACTED


def test_unsafe_logging_keeps_prompt_previews(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_events.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True, safe_logging=False)
    logger.log({"event": "gateway_degraded", "prompt_preview": "visible"})
    logger.close()

    assert _records(log_path)[0]["prompt_preview"] == "visible"


def test_sanitize_event_redacts_nested_prompt_fields() -> None:
    event: dict[str, Any] = {
        "event": "gateway_upstream_response",
        "upstream": {"body_preview": "secret body", "status": 429},
        "attempts": [{"prompt": "secret prompt", "backend": "primary"}],
    }

    sanitized = sanitize_event(event)

    assert sanitized["upstream"] == {"body_preview": REDACTED, "status": 429}
    assert sanitized["attempts"] == [{"prompt": REDACTED, "backend": "primary"}]
    assert event["upstream"]["body_preview"] == "secret body"
