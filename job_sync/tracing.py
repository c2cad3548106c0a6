"""JSONL traces of LLM calls, one directory per sync or enrichment run."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

TRACE_FILENAME = "llm_trace.jsonl"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TraceRecorder:
    """Append LLM call events for one run to ``<trace_dir>/<run_kind>-<run_id>/``.

    Providers call the recorder directly with an event dict; the run context
    (``run_id``, ``run_kind``) is stamped onto every line.
    """

    def __init__(self, output_dir: Path, run_context: dict[str, Any] | None = None):
        self.output_dir = output_dir
        self.run_context = dict(run_context or {})
        self.path = output_dir / TRACE_FILENAME
        self._lock = threading.Lock()

    @classmethod
    def start(cls, trace_dir: str | Path, run_kind: str) -> "TraceRecorder":
        run_id = uuid.uuid4().hex[:12]
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        output_dir = Path(trace_dir).expanduser() / f"{stamp}-{run_kind}-{run_id}"
        return cls(output_dir, {"run_id": run_id, "run_kind": run_kind})

    def __call__(self, event: dict[str, Any]) -> None:
        payload: dict[str, Any] = {**self.run_context, **event}
        payload.setdefault("timestamp", utc_now_iso())

        self.output_dir.mkdir(parents=True, exist_ok=True)
        try:
            line = json.dumps(payload, ensure_ascii=False) + "\n"
        except (TypeError, ValueError) as e:
            # Keep one JSON object per line even for unserializable events.
            line = json.dumps({
                **self.run_context,
                "event_type": "trace_error",
                "job_id": event.get("job_id"),
                "timestamp": utc_now_iso(),
                "error": f"Failed to serialize {event.get('event_type', 'event')}: {e}",
            }, ensure_ascii=False, default=str) + "\n"

        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
