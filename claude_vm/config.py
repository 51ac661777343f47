from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from claude_vm.capabilities import Phase, parse_phase_tables
from claude_vm.errors import ValidationError
from claude_vm.io_utils import load_toml
from claude_vm.mounts import (
    MOUNT_SOURCES,
    SCOPE_RUNTIME,
    SCOPE_SETUP,
    SOURCE_CLI,
    SOURCE_GLOBAL,
    SOURCE_PROJECT,
    Mount,
    MountEntry,
    merge_mounts,
    parse_mount_spec,
)
from claude_vm.paths import CONFIG_FILENAME, global_config_file

DEFAULT_DISK_GB = 20
DEFAULT_MEMORY_GB = 8
DEFAULT_CPUS = 4
DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_AGENT_ARGS = ("--dangerously-skip-permissions",)

ENV_DISK = "CLAUDE_VM_DISK"
ENV_MEMORY = "CLAUDE_VM_MEMORY"
ENV_CPUS = "CLAUDE_VM_CPUS"

_TOP_LEVEL_KEYS = frozenset({"vm", "capabilities", "packages", "mounts", "setup", "defaults", "phase"})


@dataclass
class VmSettings:
    disk: int = DEFAULT_DISK_GB
    memory: int = DEFAULT_MEMORY_GB
    cpus: int = DEFAULT_CPUS


@dataclass
class Config:
    vm: VmSettings = field(default_factory=VmSettings)
    capabilities: dict[str, bool] = field(default_factory=dict)
    packages: list[str] = field(default_factory=list)
    mounts: dict[str, list[MountEntry]] = field(
        default_factory=lambda: {source: [] for source in MOUNT_SOURCES}
    )
    setup_mounts: dict[str, list[MountEntry]] = field(
        default_factory=lambda: {source: [] for source in MOUNT_SOURCES}
    )
    phases: list[Phase] = field(default_factory=list)
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_args: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_ARGS))
    sources: list[Path] = field(default_factory=list)

    def enabled_capabilities(self) -> list[str]:
        return [cap_id for cap_id, enabled in self.capabilities.items() if enabled]

    def enable(self, cap_id: str) -> None:
        self.capabilities.pop(cap_id, None)
        self.capabilities[cap_id] = True

    def runtime_mounts(self) -> list[Mount]:
        return merge_mounts(self.mounts, scope=SCOPE_RUNTIME)

    def setup_only_mounts(self) -> list[Mount]:
        return merge_mounts(self.setup_mounts, scope=SCOPE_SETUP)


def _positive_int(value: Any, *, what: str, origin: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Error: {origin}: {what} must be a positive integer")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError as exc:
            raise ValidationError(f"Error: {origin}: {what} must be a positive integer, got '{value}'") from exc
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Error: {origin}: {what} must be a positive integer")
    return value


def _table(data: Mapping[str, Any], key: str, *, origin: str) -> dict[str, Any]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ValidationError(f"Error: {origin}: [{key}] must be a table")
    return value


def _mount_list(raw: Any, *, what: str, origin: str) -> list[MountEntry]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"Error: {origin}: {what} must be an array of tables")
    entries = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError(f"Error: {origin}: {what} entries must be tables")
        entries.append(MountEntry.from_table(item, origin=origin))
    return entries


def apply_file(config: Config, data: Mapping[str, Any], *, source: str, path: Path) -> None:
    """Merge one parsed ``.claude-vm.toml`` into config."""
    origin = str(path)
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ValidationError(f"Error: {origin}: unknown section(s): {', '.join(unknown)}")

    vm = _table(data, "vm", origin=origin)
    for key in ("disk", "memory", "cpus"):
        if key in vm:
            setattr(config.vm, key, _positive_int(vm[key], what=f"vm.{key}", origin=origin))

    for cap_id, enabled in _table(data, "capabilities", origin=origin).items():
        if not isinstance(enabled, bool):
            raise ValidationError(f"Error: {origin}: capabilities.{cap_id} must be true or false")
        config.capabilities.pop(cap_id, None)
        config.capabilities[cap_id] = enabled

    packages = _table(data, "packages", origin=origin).get("system", [])
    if not isinstance(packages, list) or not all(isinstance(item, str) for item in packages):
        raise ValidationError(f"Error: {origin}: packages.system must be a list of strings")
    config.packages.extend(packages)

    config.mounts[source].extend(_mount_list(data.get("mounts"), what="mounts", origin=origin))
    setup = _table(data, "setup", origin=origin)
    config.setup_mounts[source].extend(
        _mount_list(setup.get("mounts"), what="setup.mounts", origin=origin)
    )

    defaults = _table(data, "defaults", origin=origin)
    if "agent_command" in defaults:
        command = defaults["agent_command"]
        if not isinstance(command, str) or not command.strip():
            raise ValidationError(f"Error: {origin}: defaults.agent_command must be a non-empty string")
        config.agent_command = command
    if "agent_args" in defaults:
        args = defaults["agent_args"]
        if not isinstance(args, list) or not all(isinstance(item, str) for item in args):
            raise ValidationError(f"Error: {origin}: defaults.agent_args must be a list of strings")
        config.agent_args = list(args)

    for phases in parse_phase_tables(data.get("phase"), base_dir=path.parent, origin=origin).values():
        config.phases.extend(phases)
    config.sources.append(path)


def _apply_environment(config: Config, environ: Mapping[str, str]) -> None:
    for env_name, key in ((ENV_DISK, "disk"), (ENV_MEMORY, "memory"), (ENV_CPUS, "cpus")):
        value = environ.get(env_name, "")
        if value:
            setattr(config.vm, key, _positive_int(value, what=env_name, origin="environment"))


def load_config(
    project_root: Path,
    *,
    global_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Defaults, then the global file, then the project file, then environment."""
    config = Config()
    global_file = global_path or global_config_file()
    project_file = project_root / CONFIG_FILENAME

    if global_file.is_file():
        apply_file(config, load_toml(global_file), source=SOURCE_GLOBAL, path=global_file)
    if project_file.is_file() and project_file.resolve() != global_file.resolve():
        apply_file(config, load_toml(project_file), source=SOURCE_PROJECT, path=project_file)

    _apply_environment(config, os.environ if environ is None else environ)
    return config


def apply_cli_overrides(
    config: Config,
    *,
    disk: int | None = None,
    memory: int | None = None,
    cpus: int | None = None,
    capabilities: Iterable[str] = (),
    mounts: Iterable[str] = (),
    setup_mounts: Iterable[str] = (),
) -> Config:
    if disk is not None:
        config.vm.disk = _positive_int(disk, what="--disk", origin="command line")
    if memory is not None:
        config.vm.memory = _positive_int(memory, what="--memory", origin="command line")
    if cpus is not None:
        config.vm.cpus = _positive_int(cpus, what="--cpus", origin="command line")
    for cap_id in capabilities:
        config.enable(cap_id)
    config.mounts[SOURCE_CLI].extend(parse_mount_spec(spec) for spec in mounts)
    config.setup_mounts[SOURCE_CLI].extend(parse_mount_spec(spec) for spec in setup_mounts)
    return config
