from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

REDACTED = "[redacted]"
PROMPT_BEARING_KEYS = frozenset(
    {
        "prompt",
        "prompt_preview",
        "text",
        "text_preview",
        "body",
        "body_preview",
    }
)


def sanitize_event(event: dict[str, Any]) -> dict[str, Any]:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: REDACTED if key in PROMPT_BEARING_KEYS else _sanitize(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(event)


class JsonlAuditLogger:
    """Appends gateway events to a JSON-lines file from a background thread.

    ``log`` never blocks a request: records go through a bounded queue and
    overflow is counted and reported as a single summary record on close.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        safe_logging: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.safe_logging = safe_logging
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain, name="gateway-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled or self._queue is None:
            return
        if self.safe_logging:
            event = sanitize_event(event)
        line = _encode({"ts": int(time.time()), **event})
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        if self._queue is None or self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _drain(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
