"""Session Manager and Cleanup Guard.

A session clones the project template into a uniquely named instance,
runs the runtime side of the lifecycle plus the user's command, and always
removes the clone. Teardown is owned by ``CleanupGuard``: it is armed
before the clone exists, fires on normal exit, on errors and on SIGINT,
SIGTERM or SIGHUP, and does its work at most once.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Sequence

from claude_vm.capabilities import (
    STAGE_HOST_AFTER_RUNTIME,
    STAGE_HOST_BEFORE_RUNTIME,
    STAGE_HOST_TEARDOWN,
    STAGE_RUNTIME,
    Capability,
    CapabilityRegistry,
    ContentKind,
    Phase,
)
from claude_vm.config import Config
from claude_vm.errors import CleanupError, ScriptExecutionError, TemplateNotFoundError, UserFacingError
from claude_vm.events import EventKind, EventLog, LifecycleEvent
from claude_vm.lima import LimaClient, VmManagerError
from claude_vm.mounts import Mount, session_mounts
from claude_vm.paths import RUNTIME_SCRIPT_FILENAME, default_state_dir
from claude_vm.phases import ExecutionContext, HostTarget, SharedShell, parse_status, run_stage, schedule
from claude_vm.project import TEMPLATE_PREFIX, Project
from claude_vm.state import TemplateMarker, marker_path
from claude_vm.template import resolve_capabilities
from claude_vm.vm_context import install_lines, render_vm_context

SESSION_PREFIX = "claude-run_"
GUEST_TMP_DIR = "/tmp"
GUARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def session_instance_name(template_name: str, pid: int | None = None) -> str:
    suffix = template_name[len(TEMPLATE_PREFIX):] if template_name.startswith(TEMPLATE_PREFIX) else template_name
    return f"{SESSION_PREFIX}{suffix}-{pid if pid is not None else os.getpid()}"


class CleanupGuard:
    """Tears one session instance down exactly once.

    ``release()`` runs the teardown callback (host teardown phases), stops
    the instance and deletes it if it exists. Failures are collected as
    warnings and never raised, so they cannot mask the session's primary
    error. Later calls are no-ops.

    A guarded signal does not tear down from inside the handler: it raises
    ``SystemExit(128 + signum)`` so the interrupted ``limactl`` child is
    reaped while the stack unwinds, and ``__exit__`` releases afterwards.
    Further guarded signals are ignored from that point on.
    """

    def __init__(
        self,
        instance: str,
        lima: LimaClient,
        *,
        teardown: Callable[[], None] | None = None,
        state_dir: Path | None = None,
        signals: Sequence[signal.Signals] = GUARDED_SIGNALS,
    ) -> None:
        self.instance = instance
        self.lima = lima
        self.teardown = teardown
        self.events = EventLog(state_dir or default_state_dir())
        self.signals = tuple(signals)
        self.released = False
        self.interrupted: int | None = None
        self.warnings: list[str] = []
        self._previous: dict[int, object] = {}

    def arm(self) -> "CleanupGuard":
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle_signal)
        return self

    def _ignore_signals(self) -> None:
        for sig in self.signals:
            signal.signal(sig, signal.SIG_IGN)

    def _restore_handlers(self, handlers: dict[int, object]) -> None:
        for sig, handler in handlers.items():
            if handler is not None:
                signal.signal(sig, handler)
        self._previous = {}

    def _handle_signal(self, signum: int, _frame: object) -> None:
        self._ignore_signals()
        self.interrupted = signum
        print(f"\nInterrupted ({signal.Signals(signum).name}); cleaning up {self.instance}...", file=sys.stderr)
        raise SystemExit(128 + signum)

    def _step(self, label: str, action: Callable[[], None]) -> None:
        try:
            action()
        except (UserFacingError, VmManagerError, OSError, subprocess.SubprocessError) as exc:
            warning = CleanupError(f"{label} failed for {self.instance}: {exc}")
            self.warnings.append(str(warning))
            print(f"Warning: {warning}", file=sys.stderr)
            self.events.append(LifecycleEvent(EventKind.CLEANUP_WARNING, self.instance, stage=label, detail=str(exc)))

    def _delete_instance(self) -> None:
        if self.lima.instance_exists(self.instance):
            self.lima.delete(self.instance)

    def release(self) -> list[str]:
        if self.released:
            return []
        restore = self._previous or {sig: signal.getsignal(sig) for sig in self.signals}
        self._ignore_signals()
        self.released = True
        try:
            reason = f"interrupted by {signal.Signals(self.interrupted).name}" if self.interrupted else ""
            self.events.append(LifecycleEvent(EventKind.TEARDOWN_STARTED, self.instance, detail=reason))
            if self.teardown is not None:
                self._step("host teardown", self.teardown)
            self._step("stop", lambda: self.lima.stop(self.instance))
            self._step("delete", self._delete_instance)
            self.events.append(
                LifecycleEvent(
                    EventKind.TEARDOWN_FINISHED,
                    self.instance,
                    detail=f"{len(self.warnings)} warning(s)" if self.warnings else "",
                )
            )
        finally:
            self._restore_handlers(restore)
        return list(self.warnings)

    def __enter__(self) -> "CleanupGuard":
        return self.arm()

    def __exit__(self, *_exc: object) -> bool:
        self.release()
        return False


def project_runtime_phase(project: Project) -> Phase | None:
    """The project's own ``.claude-vm.runtime.sh``, run before any capability phase."""
    path = project.root / RUNTIME_SCRIPT_FILENAME
    if not path.is_file():
        return None
    try:
        script = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise UserFacingError(f"Error: Could not read {path}: {exc}") from exc
    return Phase(
        name=RUNTIME_SCRIPT_FILENAME,
        stage=STAGE_RUNTIME,
        kind=ContentKind.FILE_SUBPROCESS,
        script=script,
        script_files=(path,),
    )


@dataclass(frozen=True)
class SessionPlan:
    project: Project
    capabilities: tuple[Capability, ...]
    command: tuple[str, ...]
    mounts: tuple[Mount, ...] = ()
    user_phases: tuple[Phase, ...] = ()
    runtime_script: Phase | None = None
    workdir: Path | None = None
    state_dir: Path = field(default_factory=default_state_dir)

    def phases(self, stage: str) -> list[Phase]:
        phases = schedule(self.capabilities, stage, self.user_phases)
        if stage == STAGE_RUNTIME and self.runtime_script is not None:
            phases.insert(0, self.runtime_script)
        return phases

    def context(self, instance: str, stage: str) -> ExecutionContext:
        project = self.project
        return ExecutionContext(
            template_name=project.template_name,
            instance_name=instance,
            stage=stage,
            project_root=str(project.root),
            project_name=project.name,
            worktree_root=project.worktree_root,
            worktree_path=project.worktree_path,
        )


def build_session_plan(
    project: Project,
    config: Config,
    registry: CapabilityRegistry,
    command: Sequence[str],
    *,
    capability_ids: Sequence[str] | None = None,
    workdir: Path | None = None,
    conversations: bool = True,
    state_dir: Path | None = None,
) -> SessionPlan:
    """Validate and resolve everything a session needs before any VM is touched.

    ``capability_ids`` is the set baked into the template when known; it
    takes the place of the configured selection. ``conversations`` mounts
    the agent's conversation folder for the project.
    """
    if capability_ids is not None:
        config = replace(config, capabilities={cap_id: True for cap_id in capability_ids if cap_id in registry})
    capabilities = resolve_capabilities(config, registry)
    return SessionPlan(
        project=project,
        capabilities=tuple(capabilities),
        command=tuple(command),
        mounts=tuple(session_mounts(project, config.runtime_mounts(), conversations=conversations)),
        user_phases=tuple(config.phases),
        runtime_script=project_runtime_phase(project),
        workdir=workdir or project.root,
        state_dir=state_dir or default_state_dir(),
    )


def _require_marker(plan: SessionPlan, lima: LimaClient) -> TemplateMarker:
    template = plan.project.template_name
    if not lima.instance_exists(template):
        raise TemplateNotFoundError(
            f"Error: No template found for {plan.project.main_repo_root} ({template}).\n"
            "Run 'claude-vm setup' first."
        )
    marker = TemplateMarker.from_file(marker_path(plan.state_dir, template))
    if marker is None:
        raise UserFacingError(
            f"Error: Template '{template}' is incomplete; its setup did not finish.\n"
            "Run 'claude-vm setup' to recreate it."
        )
    return marker


def _run_runtime(plan: SessionPlan, lima: LimaClient, instance: str, marker: TemplateMarker) -> int:
    status_path = f"{GUEST_TMP_DIR}/claude-vm-{instance}.status"
    script_path = f"{GUEST_TMP_DIR}/claude-vm-{instance}-entrypoint.sh"
    document = render_vm_context(
        disk=marker.disk,
        memory=marker.memory,
        cpus=marker.cpus,
        capabilities=plan.capabilities,
        mounts=plan.mounts,
    )
    shell = SharedShell(
        context=plan.context(instance, STAGE_RUNTIME),
        status_path=status_path,
        phases=plan.phases(STAGE_RUNTIME),
        prelude=install_lines(document),
    )

    with tempfile.NamedTemporaryFile("w", suffix=".sh", prefix="claude-vm-", delete=False) as handle:
        handle.write(shell.render())
        local_script = Path(handle.name)
    try:
        lima.copy(local_script, instance, script_path)
    finally:
        local_script.unlink(missing_ok=True)

    proc = lima.shell(instance, ["bash", script_path, *plan.command], workdir=plan.workdir)
    if proc.returncode == 0:
        return 0

    status = lima.shell(instance, ["cat", status_path], capture_output=True)
    failed = parse_status(status.stdout or "") if status.returncode == 0 else None
    if failed is None:
        return proc.returncode

    label, code = failed
    EventLog(plan.state_dir).append(
        LifecycleEvent(
            EventKind.RUNTIME_FAILED,
            instance,
            template=plan.project.template_name,
            stage=STAGE_RUNTIME,
            phase=label,
            exit_code=code,
        )
    )
    raise ScriptExecutionError(
        f"Error: runtime phase '{label}' failed with exit code {code}; the command was not started",
        phase_name=label,
        stage=STAGE_RUNTIME,
        exit_code=code,
    )


def run_session(plan: SessionPlan, lima: LimaClient) -> int:
    """Run one ephemeral session and return the command's exit status."""
    marker = _require_marker(plan, lima)
    template = plan.project.template_name
    instance = session_instance_name(template)
    host = HostTarget(cwd=plan.project.root)

    def teardown() -> None:
        phases = plan.phases(STAGE_HOST_TEARDOWN)
        if phases:
            run_stage(phases, host, plan.context(instance, STAGE_HOST_TEARDOWN))

    with CleanupGuard(instance, lima, teardown=teardown, state_dir=plan.state_dir):
        EventLog(plan.state_dir).append(
            LifecycleEvent(
                EventKind.SESSION_STARTED,
                instance,
                template=template,
                capabilities=tuple(capability.id for capability in plan.capabilities),
            )
        )
        print(f"Starting session {instance}...")
        for mount in plan.mounts:
            print(f"  mount: {mount.describe()}")
        lima.clone(template, instance, plan.mounts)
        lima.start(instance)

        before = plan.phases(STAGE_HOST_BEFORE_RUNTIME)
        if before:
            run_stage(before, host, plan.context(instance, STAGE_HOST_BEFORE_RUNTIME))

        rc = _run_runtime(plan, lima, instance, marker)

        after = plan.phases(STAGE_HOST_AFTER_RUNTIME)
        if after:
            run_stage(after, host, plan.context(instance, STAGE_HOST_AFTER_RUNTIME))
    return rc


def list_sessions(lima: LimaClient) -> list[str]:
    return sorted(instance.name for instance in lima.list_instances() if instance.name.startswith(SESSION_PREFIX))
