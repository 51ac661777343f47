from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from claude_vm.capabilities import Capability, parse_phase
from claude_vm.errors import ScriptExecutionError
from claude_vm.phases import (
    ExecutionContext,
    HostTarget,
    PhaseStatus,
    SharedShell,
    parse_status,
    run_stage,
    schedule,
)


def phase(name: str, script: str, *, stage: str = "runtime", cap_id: str = "demo", **extra):
    raw = {"name": name, "script": script, **extra}
    return parse_phase(raw, stage=stage, base_dir=Path("/"), origin="test", capability_id=cap_id)


@pytest.fixture
def context(tmp_path: Path) -> ExecutionContext:
    return ExecutionContext(
        template_name="claude-tpl_demo_12345678",
        instance_name="claude-run_demo_12345678-1",
        stage="runtime",
        project_root=str(tmp_path),
        project_name="demo",
    )


def test_schedule_puts_capabilities_first_then_user_phases():
    base = Capability(id="base", name="base", description="", phases={"setup": (phase("one", "true", stage="setup", cap_id="base"),)})
    tool = Capability(id="tool", name="tool", description="", phases={"setup": (phase("two", "true", stage="setup", cap_id="tool"),)})
    user = [phase("mine", "true", stage="setup", cap_id=""), phase("later", "true", stage="runtime", cap_id="")]
    assert [p.label for p in schedule([base, tool], "setup", user)] == ["base/one", "tool/two", "mine"]


def test_host_stage_sees_context_and_phase_env(tmp_path: Path, context):
    out = tmp_path / "out.txt"
    phases = [
        phase(
            "record",
            f'echo "$CAPABILITY_ID $LIMA_INSTANCE $CLAUDE_VM_PHASE $GREETING" > {out}',
            stage="host.before_runtime",
            env={"GREETING": "hi"},
        )
    ]
    records = run_stage(phases, HostTarget(cwd=tmp_path), context)
    assert records[0].status is PhaseStatus.COMPLETED
    assert out.read_text().strip() == "demo claude-run_demo_12345678-1 host.before_runtime hi"


def test_guard_false_skips_phase(tmp_path: Path, context, capsys):
    marker = tmp_path / "ran"
    phases = [phase("guarded", f"touch {marker}", stage="host.after_runtime", when="test -e /definitely/not/here")]
    records = run_stage(phases, HostTarget(cwd=tmp_path), context)
    assert records[0].status is PhaseStatus.SKIPPED
    assert not marker.exists()
    assert "demo/guarded: skipped (condition not met" in capsys.readouterr().out


def test_continue_on_error_warns_and_continues(tmp_path: Path, context, capsys):
    marker = tmp_path / "after"
    phases = [
        phase("flaky", "exit 3", stage="host.after_setup", continue_on_error=True),
        phase("next", f"touch {marker}", stage="host.after_setup"),
    ]
    records = run_stage(phases, HostTarget(cwd=tmp_path), context)
    assert [r.status for r in records] == [PhaseStatus.FAILED, PhaseStatus.COMPLETED]
    assert marker.exists()
    assert "phase 'demo/flaky' failed with exit code 3; continuing" in capsys.readouterr().err


def test_failure_aborts_remaining_phases(tmp_path: Path, context):
    marker = tmp_path / "after"
    phases = [
        phase("broken", "exit 5", stage="host.before_setup"),
        phase("never", f"touch {marker}", stage="host.before_setup"),
    ]
    with pytest.raises(ScriptExecutionError, match="host.before_setup phase 'demo/broken' failed with exit code 5") as exc_info:
        run_stage(phases, HostTarget(cwd=tmp_path), context)
    assert not marker.exists()
    assert exc_info.value.exit_code == 5
    assert exc_info.value.phase_name == "demo/broken"
    assert exc_info.value.notes == []


def test_stage_failure_reports_skipped_and_tolerated_phases(tmp_path: Path, context):
    phases = [
        phase("optional", "exit 1", stage="host.before_setup", continue_on_error=True),
        phase("guarded", "true", stage="host.before_setup", when="false"),
        phase("broken", "exit 2", stage="host.before_setup"),
    ]
    with pytest.raises(ScriptExecutionError) as exc_info:
        run_stage(phases, HostTarget(cwd=tmp_path), context)
    assert exc_info.value.notes == [
        "demo/optional: failure tolerated (continue_on_error)",
        "demo/guarded: condition not met: false",
    ]


def _run_shared(tmp_path: Path, context, phases, command: list[str]) -> subprocess.CompletedProcess:
    status = tmp_path / "status"
    script = tmp_path / "entrypoint.sh"
    script.write_text(SharedShell(context=context, status_path=str(status), phases=phases).render(), encoding="utf-8")
    return subprocess.run(["bash", str(script), *command], cwd=tmp_path, text=True, capture_output=True, check=False)


def test_sourced_exports_reach_later_phases_and_command(tmp_path: Path, context):
    phases = [
        phase("env", "export TOOL_HOME=/opt/tool", source=True),
        phase("check", 'test "$TOOL_HOME" = /opt/tool'),
    ]
    proc = _run_shared(tmp_path, context, phases, ["sh", "-c", 'echo "$TOOL_HOME $PROJECT_NAME"'])
    assert proc.returncode == 0
    assert proc.stdout.strip() == "/opt/tool demo"


def test_sourced_phase_overrides_do_not_reach_the_command(tmp_path: Path, context):
    phases = [phase("env", "export NODE_HOME=/opt/node", cap_id="node", source=True, env={"NODE_DEBUG": "1"})]
    proc = _run_shared(
        tmp_path,
        context,
        phases,
        ["sh", "-c", 'echo "cap=$CAPABILITY_ID debug=$NODE_DEBUG home=$NODE_HOME"'],
    )
    assert proc.returncode == 0
    assert proc.stdout.strip() == "cap= debug= home=/opt/node"


def test_sourced_phase_keeps_variables_it_exports_itself(tmp_path: Path, context):
    phases = [phase("env", "export NODE_DEBUG=2", source=True, env={"NODE_DEBUG": "1"})]
    proc = _run_shared(tmp_path, context, phases, ["sh", "-c", 'echo "$NODE_DEBUG"'])
    assert proc.stdout.strip() == "2"


def test_sourced_shell_options_do_not_leak_into_later_phases(tmp_path: Path, context):
    ran = tmp_path / "ran"
    phases = [
        phase("strict", "set -e\nexport A=1", source=True),
        phase("optional", "exit 2", continue_on_error=True),
    ]
    proc = _run_shared(tmp_path, context, phases, ["touch", str(ran)])
    assert proc.returncode == 0
    assert "runtime phase demo/optional failed with exit code 2; continuing" in proc.stderr
    assert ran.exists()
    assert not (tmp_path / "status").exists()


def test_fatal_failure_after_sourced_errexit_writes_status(tmp_path: Path, context):
    phases = [
        phase("strict", "set -eu", source=True),
        phase("broken", "exit 4"),
    ]
    proc = _run_shared(tmp_path, context, phases, ["true"])
    assert proc.returncode == 4
    assert parse_status((tmp_path / "status").read_text()) == ("demo/broken", 4)


def test_subprocess_exports_stay_local(tmp_path: Path, context):
    phases = [phase("local", "export LEAK=1")]
    proc = _run_shared(tmp_path, context, phases, ["sh", "-c", 'test -z "$LEAK"'])
    assert proc.returncode == 0


def test_phase_env_does_not_override_command_environment_for_other_phases(tmp_path: Path, context):
    phases = [
        phase("one", 'test "$CAPABILITY_ID" = first', cap_id="first"),
        phase("two", 'test "$CAPABILITY_ID" = second', cap_id="second"),
    ]
    proc = _run_shared(tmp_path, context, phases, ["true"])
    assert proc.returncode == 0


def test_failed_runtime_phase_prevents_command(tmp_path: Path, context):
    ran = tmp_path / "ran"
    phases = [phase("setup-env", "exit 7"), phase("never", f"touch {ran}")]
    proc = _run_shared(tmp_path, context, phases, ["touch", str(ran)])
    assert proc.returncode == 7
    assert not ran.exists()
    assert parse_status((tmp_path / "status").read_text()) == ("demo/setup-env", 7)


def test_tolerated_runtime_failure_still_runs_command(tmp_path: Path, context):
    ran = tmp_path / "ran"
    phases = [phase("optional", "exit 2", continue_on_error=True)]
    proc = _run_shared(tmp_path, context, phases, ["touch", str(ran)])
    assert proc.returncode == 0
    assert ran.exists()
    assert "runtime phase demo/optional failed with exit code 2" in proc.stderr
    assert not (tmp_path / "status").exists()


def test_runtime_guard_skips_phase(tmp_path: Path, context):
    phases = [phase("guarded", "exit 9", when="false"), phase("allowed", "true", when="true")]
    proc = _run_shared(tmp_path, context, phases, ["true"])
    assert proc.returncode == 0


def test_command_exit_status_is_preserved(tmp_path: Path, context):
    proc = _run_shared(tmp_path, context, [], ["sh", "-c", "exit 4"])
    assert proc.returncode == 4
    assert not (tmp_path / "status").exists()


def test_parse_status_handles_missing_and_malformed():
    assert parse_status("") is None
    assert parse_status("garbage") is None
    assert parse_status("cap/name\tnot-a-number") is None
    assert parse_status("cap/name\t3\n") == ("cap/name", 3)
