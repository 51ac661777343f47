"""Template Manager: build, rebuild and remove the per-project template VM.

Everything that can be rejected (capability selection, dependencies,
conflicts, package specs, mounts) is resolved into a ``SetupPlan`` before
the first host phase or limactl call, so a configuration mistake never
leaves a partial template behind.
"""

from __future__ import annotations

import json
import shlex
import subprocess
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

from claude_vm.capabilities import (
    STAGE_HOST_AFTER_SETUP,
    STAGE_HOST_BEFORE_SETUP,
    STAGE_SETUP,
    Capability,
    CapabilityRegistry,
    Forward,
    McpServer,
    Phase,
    collect_forwards,
    enabled_mcp_servers,
)
from claude_vm.config import Config, VmSettings
from claude_vm.errors import ScriptExecutionError, UserFacingError
from claude_vm.events import EventKind, EventLog, LifecycleEvent
from claude_vm.lima import LimaClient, VmManagerError
from claude_vm.locks import template_lock
from claude_vm.mounts import Mount
from claude_vm.packages import PackageBatch, aggregate_packages
from claude_vm.paths import default_state_dir
from claude_vm.phases import ExecutionContext, GuestTarget, HostTarget, run_stage, schedule
from claude_vm.project import TEMPLATE_PREFIX, Project
from claude_vm.resolver import check_conflicts, resolve_order
from claude_vm.state import TemplateMarker, current_utc_timestamp, marker_path

BASE_PACKAGES = ("ca-certificates", "curl", "git", "jq", "unzip", "wget")
CLAUDE_AGENT_COMMAND = "claude"
AGENT_INSTALL_SCRIPT = """\
if command -v claude >/dev/null 2>&1 || [ -x "$HOME/.local/bin/claude" ]; then
  echo "  claude already installed"
  exit 0
fi
curl -fsSL https://claude.ai/install.sh | bash
echo 'export PATH="$HOME/.local/bin:$PATH"' >> "$HOME/.bashrc"
"""


@dataclass(frozen=True)
class SetupPlan:
    project: Project
    vm: VmSettings
    capabilities: tuple[Capability, ...]
    packages: PackageBatch
    user_phases: tuple[Phase, ...] = ()
    setup_mounts: tuple[Mount, ...] = ()
    mcp_servers: tuple[McpServer, ...] = ()
    forwards: tuple[Forward, ...] = ()
    install_agent: bool = True
    state_dir: Path = field(default_factory=default_state_dir)

    @property
    def template_name(self) -> str:
        return self.project.template_name

    @property
    def capability_ids(self) -> list[str]:
        return [capability.id for capability in self.capabilities]

    def phases(self, stage: str) -> list[Phase]:
        return schedule(self.capabilities, stage, self.user_phases)

    def context(self, stage: str) -> ExecutionContext:
        project = self.project
        return ExecutionContext(
            template_name=self.template_name,
            instance_name=self.template_name,
            stage=stage,
            project_root=str(project.root),
            project_name=project.name,
            worktree_root=project.worktree_root,
            worktree_path=project.worktree_path,
        )


def resolve_capabilities(config: Config, registry: CapabilityRegistry) -> list[Capability]:
    enabled = registry.select(config.enabled_capabilities())
    check_conflicts(enabled)
    return resolve_order(enabled)


def build_setup_plan(
    project: Project,
    config: Config,
    registry: CapabilityRegistry,
    *,
    state_dir: Path | None = None,
) -> SetupPlan:
    capabilities = resolve_capabilities(config, registry)
    return SetupPlan(
        project=project,
        vm=config.vm,
        capabilities=tuple(capabilities),
        packages=aggregate_packages(capabilities, config.packages, base=BASE_PACKAGES),
        user_phases=tuple(config.phases),
        setup_mounts=tuple(config.setup_only_mounts()),
        mcp_servers=tuple(enabled_mcp_servers(capabilities)),
        forwards=tuple(collect_forwards(capabilities)),
        install_agent=config.agent_command == CLAUDE_AGENT_COMMAND,
        state_dir=state_dir or default_state_dir(),
    )


def detect_forwards(forwards: Sequence[Forward]) -> list[tuple[str, str]]:
    """Resolve host endpoints; a forward whose detection fails is skipped with a warning."""
    resolved: list[tuple[str, str]] = []
    for forward in forwards:
        host = forward.host
        if forward.detect:
            proc = subprocess.run(
                ["bash", "-c", forward.detect], check=False, text=True, capture_output=True
            )
            lines = (proc.stdout or "").strip().splitlines()
            host = lines[0].strip() if lines else ""
            if proc.returncode != 0 or not host:
                print(
                    f"Warning: Could not detect host socket for {forward.guest} "
                    f"(`{forward.detect}` exited {proc.returncode}); forward skipped",
                    file=sys.stderr,
                )
                continue
        resolved.append((host, forward.guest))
    return resolved


def mcp_config_script(servers: Sequence[McpServer]) -> str:
    """Guest script merging servers into ``~/.claude.json``; a no-op without the agent."""
    entries = {server.id: {"command": server.command, "args": list(server.args)} for server in servers}
    payload = shlex.quote(json.dumps(entries, sort_keys=True))
    return f"""\
export PATH="$HOME/.local/bin:$PATH"
if ! command -v claude >/dev/null 2>&1; then
  echo "  claude not installed; skipping MCP registration"
  exit 0
fi
servers={payload}
config="$HOME/.claude.json"
if [ -f "$config" ]; then
  jq --argjson s "$servers" '.mcpServers = ((.mcpServers // {{}}) + $s)' "$config" > "$config.tmp"
  mv "$config.tmp" "$config"
else
  jq -n --argjson s "$servers" '{{mcpServers: $s}}' > "$config"
fi
"""


def _run_guest_step(target: GuestTarget, plan: SetupPlan, *, name: str, script: str) -> None:
    print(f"  {name}")
    rc = target.run(script, plan.context(STAGE_SETUP).to_env())
    if rc != 0:
        raise ScriptExecutionError(
            f"Error: setup step '{name}' failed with exit code {rc}",
            phase_name=name,
            stage=STAGE_SETUP,
            exit_code=rc,
        )


def _build(plan: SetupPlan, lima: LimaClient) -> None:
    name = plan.template_name
    host = HostTarget(cwd=plan.project.root)

    before = plan.phases(STAGE_HOST_BEFORE_SETUP)
    if before:
        print("Running host setup phases...")
        run_stage(before, host, plan.context(STAGE_HOST_BEFORE_SETUP))

    forwards = detect_forwards(plan.forwards)
    print("Creating template VM...")
    print(f"  disk: {plan.vm.disk}GB  memory: {plan.vm.memory}GB  cpus: {plan.vm.cpus}")
    for mount in plan.setup_mounts:
        print(f"  setup mount: {mount.describe()}")
    lima.create(
        name,
        disk=plan.vm.disk,
        memory=plan.vm.memory,
        cpus=plan.vm.cpus,
        mounts=plan.setup_mounts,
        forwards=forwards,
    )
    print("Starting template VM...")
    lima.start(name)

    guest = GuestTarget(lima, name)
    print("Installing packages...")
    if plan.packages.packages:
        print(f"  {' '.join(plan.packages.names)}")
    _run_guest_step(guest, plan, name="packages", script=plan.packages.install_script())

    setup = plan.phases(STAGE_SETUP)
    if setup:
        print("Running setup phases...")
        run_stage(setup, guest, plan.context(STAGE_SETUP))

    if plan.install_agent:
        print("Installing agent...")
        _run_guest_step(guest, plan, name="agent", script=AGENT_INSTALL_SCRIPT)

    if plan.mcp_servers:
        print("Registering MCP servers...")
        _run_guest_step(guest, plan, name="mcp", script=mcp_config_script(plan.mcp_servers))

    after = plan.phases(STAGE_HOST_AFTER_SETUP)
    if after:
        print("Running host post-setup phases...")
        run_stage(after, host, plan.context(STAGE_HOST_AFTER_SETUP))

    print("Stopping template VM...")
    lima.stop(name)
    if plan.setup_mounts:
        print("Removing setup mounts...")
        lima.set_mounts(name, [])


def create_template(plan: SetupPlan, lima: LimaClient) -> None:
    """Build the template. The caller holds the template lock."""
    name = plan.template_name
    if lima.instance_exists(name):
        raise UserFacingError(
            f"Error: Template '{name}' already exists.\n"
            "Run 'claude-vm setup' to recreate it or 'claude-vm clean' to remove it."
        )

    events = EventLog(plan.state_dir)
    events.append(
        LifecycleEvent(EventKind.TEMPLATE_CREATE_STARTED, name, template=name, capabilities=tuple(plan.capability_ids))
    )
    try:
        _build(plan, lima)
    except (UserFacingError, VmManagerError) as exc:
        failed = LifecycleEvent(EventKind.TEMPLATE_CREATE_FAILED, name, template=name, detail=str(exc))
        if isinstance(exc, ScriptExecutionError):
            failed = replace(failed, stage=exc.stage, phase=exc.phase_name, exit_code=exc.exit_code)
        events.append(failed)
        if lima.instance_exists(name):
            lima.stop(name)
            print(
                f"Template '{name}' is incomplete. Run 'claude-vm setup' again to recreate it.",
                file=sys.stderr,
            )
        raise

    TemplateMarker(
        template_name=name,
        project_root=str(plan.project.main_repo_root),
        capabilities=tuple(plan.capability_ids),
        disk=plan.vm.disk,
        memory=plan.vm.memory,
        cpus=plan.vm.cpus,
        created_at=current_utc_timestamp(),
    ).write(marker_path(plan.state_dir, name))
    events.append(LifecycleEvent(EventKind.TEMPLATE_CREATE_FINISHED, name, template=name))
    print(f"Template ready: {name}")


def _delete_unlocked(name: str, lima: LimaClient, state_dir: Path) -> bool:
    marker_path(state_dir, name).unlink(missing_ok=True)
    if not lima.instance_exists(name):
        return False
    lima.stop(name)
    lima.delete(name)
    return True


def recreate_template(plan: SetupPlan, lima: LimaClient) -> None:
    with template_lock(plan.state_dir, plan.template_name):
        if _delete_unlocked(plan.template_name, lima, plan.state_dir):
            print(f"Removed existing template: {plan.template_name}")
        create_template(plan, lima)


def delete_template(name: str, lima: LimaClient, *, state_dir: Path | None = None) -> bool:
    """Delete a template; returns False when it did not exist."""
    state = state_dir or default_state_dir()
    with template_lock(state, name):
        return _delete_unlocked(name, lima, state)


@dataclass(frozen=True)
class TemplateInfo:
    name: str
    status: str
    marker: TemplateMarker | None = None


def list_templates(lima: LimaClient, *, state_dir: Path | None = None) -> list[TemplateInfo]:
    state = state_dir or default_state_dir()
    templates = []
    for instance in lima.list_instances():
        if not instance.name.startswith(TEMPLATE_PREFIX):
            continue
        marker = TemplateMarker.from_file(marker_path(state, instance.name))
        templates.append(TemplateInfo(name=instance.name, status=instance.status, marker=marker))
    return sorted(templates, key=lambda info: info.name)
