from __future__ import annotations

import json
from pathlib import Path

import pytest

from claude_vm.events import EventKind, EventLog, LifecycleEvent
from claude_vm.state import TemplateMarker, marker_path


def _records(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_events_are_appended_as_json_lines(tmp_path: Path):
    log = EventLog(tmp_path)
    log.append(LifecycleEvent(EventKind.SESSION_STARTED, "claude-run_x-1", template="claude-tpl_x", capabilities=("git",)))
    log.append(
        LifecycleEvent(EventKind.RUNTIME_FAILED, "claude-run_x-1", stage="runtime", phase="docker/start", exit_code=0)
    )

    first, second = _records(tmp_path / "logs" / "events.jsonl")
    assert first["event"] == "session_started"
    assert first["subject"] == "session"
    assert first["template"] == "claude-tpl_x"
    assert first["capabilities"] == ["git"]
    assert "phase" not in first and "exit_code" not in first
    assert (second["stage"], second["phase"], second["exit_code"]) == ("runtime", "docker/start", 0)


def test_template_events_carry_the_template_subject():
    assert EventKind.TEMPLATE_CREATE_FAILED.subject == "template"
    assert EventKind.CLEANUP_WARNING.subject == "session"


def test_event_log_keeps_one_rotated_generation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CLAUDE_VM_EVENT_LOG_MAX_BYTES", "64")
    log = EventLog(tmp_path)
    assert log.max_bytes == 64
    for index in range(4):
        log.append(LifecycleEvent(EventKind.CLEANUP_WARNING, "i", stage="delete", detail=f"attempt {index}"))

    assert log.rotated_path.name == "events.jsonl.1"
    assert [r["detail"] for r in _records(log.rotated_path)] == ["attempt 2"]
    assert [r["detail"] for r in _records(log.path)] == ["attempt 3"]


@pytest.mark.parametrize("raw", ["", "lots", "0", "-5"])
def test_invalid_size_limit_falls_back_to_default(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, raw: str):
    monkeypatch.setenv("CLAUDE_VM_EVENT_LOG_MAX_BYTES", raw)
    assert EventLog(tmp_path).max_bytes == 5 * 1024 * 1024


def test_event_log_never_raises(tmp_path: Path):
    blocker = tmp_path / "state"
    blocker.write_text("not a directory", encoding="utf-8")
    EventLog(blocker).append(LifecycleEvent(EventKind.TEARDOWN_STARTED, "i"))


def test_template_marker_round_trip(tmp_path: Path):
    marker = TemplateMarker(
        template_name="claude-tpl_demo_12345678",
        project_root="/work/demo",
        capabilities=("git", "gh"),
        disk=20,
        memory=8,
        cpus=4,
        created_at="2026-01-01T00:00:00Z",
    )
    path = marker_path(tmp_path, marker.template_name)
    marker.write(path)
    assert TemplateMarker.from_file(path) == marker
    assert TemplateMarker.from_file(tmp_path / "missing") is None
