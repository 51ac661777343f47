from __future__ import annotations

import subprocess

import pytest

from claude_vm import errors
from claude_vm.errors import CommandExitError, DependencyError, ScriptExecutionError, UserFacingError
from claude_vm.lima import VmManagerError


class FakeLima:
    def __init__(self, *, verbose: bool = False):
        self.verbose = verbose


def test_main_guard_handles_user_facing_error(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise UserFacingError("bad input")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "bad input" in captured.err


def test_main_guard_handles_vm_manager_error(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise VmManagerError("limactl exploded")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "limactl exploded" in captured.err


def test_main_guard_passes_verbose_to_client(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)
    seen = []

    errors.main_guard(lambda lima: seen.append(lima.verbose), verbose=True)
    assert seen == [True]


def test_main_guard_propagates_command_exit_status(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise CommandExitError(42)

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    assert exc_info.value.code == 42
    assert capsys.readouterr().err == ""


def test_main_guard_uses_failed_phase_exit_code(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise ScriptExecutionError("phase broke", phase_name="docker/start", stage="runtime", exit_code=7)

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    assert exc_info.value.code == 7
    assert "phase broke" in capsys.readouterr().err


def test_main_guard_maps_signal_killed_phase_to_one(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise ScriptExecutionError("killed", phase_name="x", stage="setup", exit_code=-9)

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    assert exc_info.value.code == 1


def test_dependency_error_is_user_facing_and_keeps_chain():
    exc = DependencyError("missing", ["gh", "git"])
    assert isinstance(exc, UserFacingError)
    assert exc.chain == ["gh", "git"]


def test_main_guard_handles_file_not_found(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise FileNotFoundError("missing")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "Command not found" in captured.err


def test_main_guard_handles_subprocess_error(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise subprocess.SubprocessError("subprocess fail")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "Command execution failed" in captured.err


def test_main_guard_handles_oserror(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise OSError("os fail")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "OS command failure" in captured.err


def test_main_guard_lists_earlier_phase_notes(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(errors, "LimaClient", FakeLima)

    def run(_lima):
        raise ScriptExecutionError(
            "Error: setup phase 'node/install' failed with exit code 3",
            phase_name="node/install",
            stage="setup",
            exit_code=3,
            notes=["git/config: condition not met: test -f ~/.gitconfig"],
        )

    with pytest.raises(SystemExit):
        errors.main_guard(run)
    err = capsys.readouterr().err
    assert "  earlier: git/config: condition not met: test -f ~/.gitconfig" in err
