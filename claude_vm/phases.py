"""Phase scheduling and script execution on the host and inside the guest.

Every phase goes Pending -> Skipped (guard exited non-zero) or Running ->
Completed/Failed. Host stages and guest setup run each phase in its own
``bash`` process. The runtime stage is rendered by ``SharedShell`` into one
guest script that runs all runtime phases and then ``exec``s the user's
command, so sourced phases can leave exports behind for later phases.
"""

from __future__ import annotations

import enum
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from claude_vm import __version__
from claude_vm.capabilities import Capability, Phase
from claude_vm.errors import GuardSkip, ScriptExecutionError
from claude_vm.lima import LimaClient


class PhaseStatus(enum.Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PhaseRecord:
    phase: Phase
    status: PhaseStatus = PhaseStatus.PENDING
    exit_code: int | None = None
    detail: str = ""


@dataclass(frozen=True)
class ExecutionContext:
    template_name: str
    instance_name: str
    stage: str
    project_root: str = ""
    project_name: str = ""
    worktree_root: str = ""
    worktree_path: str = ""
    capability_id: str = ""
    version: str = __version__

    def for_stage(self, stage: str) -> "ExecutionContext":
        return replace(self, stage=stage)

    def for_capability(self, capability_id: str) -> "ExecutionContext":
        return replace(self, capability_id=capability_id)

    def to_env(self) -> dict[str, str]:
        return {
            "CAPABILITY_ID": self.capability_id,
            "TEMPLATE_NAME": self.template_name,
            "LIMA_INSTANCE": self.instance_name,
            "CLAUDE_VM_PHASE": self.stage,
            "CLAUDE_VM_VERSION": self.version,
            "PROJECT_ROOT": self.project_root,
            "PROJECT_NAME": self.project_name,
            "PROJECT_WORKTREE_ROOT": self.worktree_root,
            "PROJECT_WORKTREE": self.worktree_path,
        }


def phase_env(phase: Phase, context: ExecutionContext) -> dict[str, str]:
    """Ambient context for the phase's capability, overridden by the phase's own env."""
    env = context.for_stage(phase.stage).for_capability(phase.capability_id).to_env()
    env.update(phase.env)
    return env


def shell_exports(env: Mapping[str, str]) -> str:
    return "\n".join(f"export {key}={shlex.quote(value)}" for key, value in env.items())


class ScriptTarget(Protocol):
    def run(self, script: str, env: Mapping[str, str]) -> int: ...

    def check(self, condition: str, env: Mapping[str, str]) -> bool: ...


class HostTarget:
    """Runs scripts with the operator's bash, inheriting the caller's environment."""

    def __init__(self, cwd: Path | None = None) -> None:
        self.cwd = cwd

    def _env(self, env: Mapping[str, str]) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(env)
        return merged

    def run(self, script: str, env: Mapping[str, str]) -> int:
        proc = subprocess.run(["bash", "-c", script], env=self._env(env), cwd=self.cwd, check=False)
        return proc.returncode

    def check(self, condition: str, env: Mapping[str, str]) -> bool:
        proc = subprocess.run(
            ["bash", "-c", condition],
            env=self._env(env),
            cwd=self.cwd,
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return proc.returncode == 0


class GuestTarget:
    """Runs scripts inside a Lima instance, one ``limactl shell`` per script."""

    def __init__(self, lima: LimaClient, instance: str, workdir: Path | None = None) -> None:
        self.lima = lima
        self.instance = instance
        self.workdir = workdir

    def run(self, script: str, env: Mapping[str, str]) -> int:
        body = f"{shell_exports(env)}\n{script}" if env else script
        proc = self.lima.shell(self.instance, ["bash", "-c", body], workdir=self.workdir)
        return proc.returncode

    def check(self, condition: str, env: Mapping[str, str]) -> bool:
        body = f"{shell_exports(env)}\n{condition}" if env else condition
        proc = self.lima.shell(
            self.instance, ["bash", "-c", body], workdir=self.workdir, capture_output=True
        )
        return proc.returncode == 0


def schedule(
    capabilities: Sequence[Capability],
    stage: str,
    user_phases: Sequence[Phase] = (),
) -> list[Phase]:
    """Flatten the phases of one stage: capabilities in resolved order, then user phases."""
    phases = [phase for capability in capabilities for phase in capability.phases_for(stage)]
    phases.extend(phase for phase in user_phases if phase.stage == stage)
    return phases


def evaluate_guard(phase: Phase, target: ScriptTarget, env: Mapping[str, str]) -> None:
    if phase.when and not target.check(phase.when, env):
        raise GuardSkip(phase.when)


def run_phase(phase: Phase, target: ScriptTarget, context: ExecutionContext) -> PhaseRecord:
    record = PhaseRecord(phase=phase)
    env = phase_env(phase, context)
    try:
        evaluate_guard(phase, target, env)
    except GuardSkip:
        record.status = PhaseStatus.SKIPPED
        record.detail = f"condition not met: {phase.when}"
        print(f"  {phase.label}: skipped ({record.detail})")
        return record

    record.status = PhaseStatus.RUNNING
    print(f"  {phase.label}")
    record.exit_code = target.run(phase.script, env)
    record.status = PhaseStatus.COMPLETED if record.exit_code == 0 else PhaseStatus.FAILED
    return record


def run_stage(
    phases: Sequence[Phase],
    target: ScriptTarget,
    context: ExecutionContext,
) -> list[PhaseRecord]:
    """Run phases in order; the first non-tolerated failure aborts the stage."""
    records: list[PhaseRecord] = []
    for phase in phases:
        record = run_phase(phase, target, context)
        records.append(record)
        if record.status is not PhaseStatus.FAILED:
            continue
        if phase.continue_on_error:
            record.detail = "failure tolerated (continue_on_error)"
            print(
                f"Warning: {phase.stage} phase '{phase.label}' failed with exit code "
                f"{record.exit_code}; continuing",
                file=sys.stderr,
            )
            continue
        raise ScriptExecutionError(
            f"Error: {phase.stage} phase '{phase.label}' failed with exit code {record.exit_code}",
            phase_name=phase.label,
            stage=phase.stage,
            exit_code=record.exit_code,
            notes=[f"{r.phase.label}: {r.detail}" for r in records if r.detail],
        )
    return records


_STATUS_VAR = "__claude_vm_status"
_RC_VAR = "__claude_vm_rc"
_OPTS_VAR = "__claude_vm_opts"


def _saved_var(key: str) -> str:
    return f"__claude_vm_prev_{key}"


def _had_var(key: str) -> str:
    return f"__claude_vm_had_{key}"


@dataclass
class SharedShell:
    """One guest shell invocation holding every runtime phase plus the final command.

    Subprocess phases run in a subshell so their exports stay local; sourced
    phases are read into the shared shell itself. A sourced phase keeps what
    its script exports, while its ``CAPABILITY_ID`` and ``env`` overrides are
    put back afterwards unless the script changed them, and shell options it
    sets (``set -e`` and friends) are restored. Every phase runs as an ``if``
    condition so errexit never skips the exit-code bookkeeping.

    A failing phase without ``continue_on_error`` records
    ``<label>\\t<exit>`` in the status file and exits before the command
    starts. ``prelude`` lines run once before the first phase. The command
    arrives as ``"$@"`` with the base context exported.
    """

    context: ExecutionContext
    status_path: str
    phases: list[Phase] = field(default_factory=list)
    prelude: list[str] = field(default_factory=list)

    def _overrides(self, phase: Phase, env: Mapping[str, str]) -> dict[str, str]:
        base = self.context.to_env()
        return {key: value for key, value in env.items() if key in phase.env or base.get(key) != value}

    def _sourced_body(self, index: int, phase: Phase, env: Mapping[str, str]) -> list[str]:
        overrides = self._overrides(phase, env)
        delimiter = f"CLAUDE_VM_PHASE_EOF_{index}"
        body = [f'{_had_var(key)}="${{{key}+1}}" {_saved_var(key)}="${{{key}-}}"' for key in overrides]
        body += [
            shell_exports(env),
            f'{_OPTS_VAR}="$(set +o)"',
            f"if source /dev/stdin <<'{delimiter}'",
            phase.script.rstrip("\n"),
            delimiter,
            f"then {_RC_VAR}=0; else {_RC_VAR}=$?; fi",
            f'eval "${_OPTS_VAR}"',
        ]
        for key, value in overrides.items():
            had, saved = _had_var(key), _saved_var(key)
            body.append(
                f'if [ "${{{key}-}}" = {shlex.quote(value)} ]; then '
                f'if [ -n "${had}" ]; then export {key}="${saved}"; else unset {key}; fi; fi'
            )
            body.append(f"unset {had} {saved}")
        return body

    def _render_phase(self, index: int, phase: Phase) -> list[str]:
        env = phase_env(phase, self.context)
        exports = shell_exports(env)
        label = shlex.quote(phase.label)
        if phase.sourced:
            body = self._sourced_body(index, phase, env)
        else:
            body = [
                "if (",
                exports,
                f"exec bash -c {shlex.quote(phase.script)}",
                f"); then {_RC_VAR}=0; else {_RC_VAR}=$?; fi",
            ]
        if phase.continue_on_error:
            body.append(
                f'[ "${_RC_VAR}" -eq 0 ] || printf \'Warning: runtime phase %s failed with exit code %s; '
                f'continuing\\n\' {label} "${_RC_VAR}" >&2'
            )
        else:
            body.append(
                f'[ "${_RC_VAR}" -eq 0 ] || {{ printf \'%s\\t%s\\n\' {label} "${_RC_VAR}" '
                f'> "${_STATUS_VAR}"; exit "${_RC_VAR}"; }}'
            )

        if not phase.when:
            return body
        guard = ["if (", exports, f"exec bash -c {shlex.quote(phase.when)}", ") >/dev/null 2>&1; then"]
        return guard + body + ["fi"]

    def render(self) -> str:
        base = shell_exports(self.context.to_env())
        lines = [
            "#!/bin/bash",
            f"{_STATUS_VAR}={shlex.quote(self.status_path)}",
            f'rm -f "${_STATUS_VAR}"',
            base,
            *self.prelude,
        ]
        for index, phase in enumerate(self.phases):
            lines.extend(self._render_phase(index, phase))
        lines.append(f"unset {_STATUS_VAR} {_RC_VAR} {_OPTS_VAR}")
        lines.append(base)
        lines.append('[ "$#" -eq 0 ] && exit 0')
        lines.append('exec "$@"')
        return "\n".join(lines) + "\n"


def parse_status(text: str) -> tuple[str, int] | None:
    """Parse the status file written by a failing runtime phase."""
    line = text.strip().splitlines()[0] if text.strip() else ""
    label, sep, code = line.rpartition("\t")
    if not sep or not label:
        return None
    try:
        return label, int(code)
    except ValueError:
        return None
