"""Lifecycle event log for templates and sessions.

Each ``LifecycleEvent`` becomes one JSON line in
``<state_dir>/logs/events.jsonl``. The log is diagnostic: writing to it
never raises, so a full disk or a read-only state directory cannot change
how a setup or a session ends.
"""

from __future__ import annotations

import enum
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MAX_BYTES_ENV = "CLAUDE_VM_EVENT_LOG_MAX_BYTES"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024

SUBJECT_TEMPLATE = "template"
SUBJECT_SESSION = "session"


class EventKind(str, enum.Enum):
    TEMPLATE_CREATE_STARTED = "template_create_started"
    TEMPLATE_CREATE_FINISHED = "template_create_finished"
    TEMPLATE_CREATE_FAILED = "template_create_failed"
    SESSION_STARTED = "session_started"
    RUNTIME_FAILED = "runtime_failed"
    TEARDOWN_STARTED = "teardown_started"
    TEARDOWN_FINISHED = "teardown_finished"
    CLEANUP_WARNING = "cleanup_warning"

    @property
    def subject(self) -> str:
        return SUBJECT_TEMPLATE if self.value.startswith("template_") else SUBJECT_SESSION


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    instance: str
    template: str = ""
    stage: str = ""
    phase: str = ""
    exit_code: int | None = None
    capabilities: tuple[str, ...] = ()
    detail: str = ""

    def to_record(self, timestamp: str) -> dict[str, Any]:
        record: dict[str, Any] = {
            "ts": timestamp,
            "event": self.kind.value,
            "subject": self.kind.subject,
            "instance": self.instance,
            "pid": os.getpid(),
        }
        for key in ("template", "stage", "phase", "detail"):
            value = getattr(self, key)
            if value:
                record[key] = value
        if self.exit_code is not None:
            record["exit_code"] = self.exit_code
        if self.capabilities:
            record["capabilities"] = list(self.capabilities)
        return record


def _max_bytes_from_env() -> int:
    try:
        value = int(os.environ.get(MAX_BYTES_ENV, ""))
    except ValueError:
        return DEFAULT_MAX_BYTES
    return value if value > 0 else DEFAULT_MAX_BYTES


class EventLog:
    """Append-only JSONL file that keeps one rotated generation (``.1``)."""

    def __init__(self, state_dir: Path, *, max_bytes: int | None = None) -> None:
        self.path = state_dir / "logs" / "events.jsonl"
        self.max_bytes = max_bytes or _max_bytes_from_env()

    @property
    def rotated_path(self) -> Path:
        return self.path.with_name(self.path.name + ".1")

    def _rotate_if_full(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size >= self.max_bytes:
            self.path.replace(self.rotated_path)

    def append(self, event: LifecycleEvent) -> None:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = json.dumps(event.to_record(timestamp), sort_keys=True) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_full()
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            return
