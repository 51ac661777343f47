"""Capability definitions: parsing, validation and the registry value.

A capability is a directory holding ``capability.toml`` plus any script
files it references. Everything is read and checked at load time, so a
malformed definition fails before any host or guest side effect.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

from claude_vm.errors import ValidationError
from claude_vm.io_utils import load_toml
from claude_vm.packages import parse_package_spec

CAPABILITY_FILENAME = "capability.toml"

STAGE_HOST_BEFORE_SETUP = "host.before_setup"
STAGE_HOST_AFTER_SETUP = "host.after_setup"
STAGE_HOST_BEFORE_RUNTIME = "host.before_runtime"
STAGE_HOST_AFTER_RUNTIME = "host.after_runtime"
STAGE_HOST_TEARDOWN = "host.teardown"
STAGE_SETUP = "setup"
STAGE_RUNTIME = "runtime"

STAGES = (
    STAGE_HOST_BEFORE_SETUP,
    STAGE_SETUP,
    STAGE_HOST_AFTER_SETUP,
    STAGE_HOST_BEFORE_RUNTIME,
    STAGE_RUNTIME,
    STAGE_HOST_AFTER_RUNTIME,
    STAGE_HOST_TEARDOWN,
)
HOST_STAGES = frozenset(stage for stage in STAGES if stage.startswith("host."))

FORWARD_UNIX_SOCKET = "unix_socket"

_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PHASE_KEYS = frozenset(
    {"name", "script", "script_files", "env", "when", "if", "continue_on_error", "source"}
)


class ContentKind(enum.Enum):
    INLINE_SUBPROCESS = "inline-subprocess"
    FILE_SUBPROCESS = "file-subprocess"
    INLINE_SOURCED = "inline-sourced"
    FILE_SOURCED = "file-sourced"

    @classmethod
    def select(cls, *, from_files: bool, sourced: bool) -> "ContentKind":
        if from_files:
            return cls.FILE_SOURCED if sourced else cls.FILE_SUBPROCESS
        return cls.INLINE_SOURCED if sourced else cls.INLINE_SUBPROCESS

    @property
    def sourced(self) -> bool:
        return self in (ContentKind.INLINE_SOURCED, ContentKind.FILE_SOURCED)

    @property
    def from_files(self) -> bool:
        return self in (ContentKind.FILE_SUBPROCESS, ContentKind.FILE_SOURCED)


@dataclass(frozen=True)
class Phase:
    name: str
    stage: str
    kind: ContentKind
    script: str
    script_files: tuple[Path, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    when: str = ""
    continue_on_error: bool = False
    capability_id: str = ""

    @property
    def sourced(self) -> bool:
        return self.kind.sourced

    @property
    def label(self) -> str:
        if self.capability_id:
            return f"{self.capability_id}/{self.name}"
        return self.name


@dataclass(frozen=True)
class McpServer:
    id: str
    command: str
    args: tuple[str, ...] = ()
    enabled_when: str = ""


@dataclass(frozen=True)
class Forward:
    type: str
    guest: str
    host: str = ""
    detect: str = ""


@dataclass(frozen=True)
class Capability:
    id: str
    name: str
    description: str
    requires: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    packages: tuple[str, ...] = ()
    setup_script: str = ""
    phases: Mapping[str, tuple[Phase, ...]] = field(default_factory=dict)
    mcp: tuple[McpServer, ...] = ()
    forwards: tuple[Forward, ...] = ()
    source_dir: Path | None = None

    def phases_for(self, stage: str) -> tuple[Phase, ...]:
        return self.phases.get(stage, ())


def _string(value: Any, *, what: str, origin: str, required: bool = True) -> str:
    if value is None and not required:
        return ""
    if not isinstance(value, str) or (required and not value.strip()):
        raise ValidationError(f"Error: {origin}: {what} must be a non-empty string")
    return value


def _string_list(value: Any, *, what: str, origin: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Error: {origin}: {what} must be a list of strings")
    return tuple(value)


def _bool(value: Any, *, what: str, origin: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"Error: {origin}: {what} must be true or false")
    return value


def validate_env_key(key: str) -> None:
    if not _ENV_KEY_RE.match(key):
        raise ValidationError(f"Error: Invalid environment variable name '{key}'")


def parse_phase(
    raw: Any,
    *,
    stage: str,
    base_dir: Path,
    origin: str,
    capability_id: str = "",
) -> Phase:
    if not isinstance(raw, dict):
        raise ValidationError(f"Error: {origin}: phase.{stage} entries must be tables")
    name = _string(raw.get("name"), what=f"phase.{stage} name", origin=origin)
    where = f"{origin}: {stage} phase '{name}'"

    unknown = sorted(set(raw) - _PHASE_KEYS)
    if unknown:
        raise ValidationError(f"Error: {where} has unknown field(s): {', '.join(unknown)}")

    inline = raw.get("script")
    files = _string_list(raw.get("script_files"), what="script_files", origin=where)
    if inline is not None and not isinstance(inline, str):
        raise ValidationError(f"Error: {where}: script must be a string")
    if inline is not None and files:
        raise ValidationError(f"Error: {where} declares both 'script' and 'script_files'")
    if inline is None and not files:
        raise ValidationError(
            f"Error: {where} has no script content. Specify either 'script' or 'script_files'"
        )

    resolved_files: list[Path] = []
    if files:
        chunks: list[str] = []
        for entry in files:
            path = Path(entry) if Path(entry).is_absolute() else base_dir / entry
            if not path.is_file():
                raise ValidationError(f"Error: {where} references missing script file: {path}")
            try:
                chunks.append(path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise ValidationError(f"Error: {where} could not read {path}: {exc}") from exc
            resolved_files.append(path)
        content = "\n".join(chunks)
    else:
        content = inline or ""

    env_raw = raw.get("env") or {}
    if not isinstance(env_raw, dict):
        raise ValidationError(f"Error: {where}: env must be a table")
    env: dict[str, str] = {}
    for key, value in env_raw.items():
        try:
            validate_env_key(key)
        except ValidationError as exc:
            raise ValidationError(f"{exc} in {where}") from exc
        if not isinstance(value, (str, int, float, bool)):
            raise ValidationError(f"Error: {where}: env value for '{key}' must be a scalar")
        env[key] = str(value).lower() if isinstance(value, bool) else str(value)

    if "when" in raw and "if" in raw:
        raise ValidationError(f"Error: {where} declares both 'when' and 'if'")
    when = _string(raw.get("when", raw.get("if")), what="when", origin=where, required=False)
    sourced = _bool(raw.get("source"), what="source", origin=where)

    return Phase(
        name=name,
        stage=stage,
        kind=ContentKind.select(from_files=bool(files), sourced=sourced),
        script=content,
        script_files=tuple(resolved_files),
        env=env,
        when=when.strip(),
        continue_on_error=_bool(raw.get("continue_on_error"), what="continue_on_error", origin=where),
        capability_id=capability_id,
    )


def parse_phase_tables(
    raw: Any, *, base_dir: Path, origin: str, capability_id: str = ""
) -> dict[str, tuple[Phase, ...]]:
    """Parse a ``[phase]`` table: ``setup``, ``runtime`` and ``host.<stage>`` lists."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(f"Error: {origin}: [phase] must be a table")

    flattened: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "host":
            if not isinstance(value, dict):
                raise ValidationError(f"Error: {origin}: [phase.host] must be a table")
            for host_key, host_value in value.items():
                flattened[f"host.{host_key}"] = host_value
        else:
            flattened[key] = value

    phases: dict[str, tuple[Phase, ...]] = {}
    for stage, entries in flattened.items():
        if stage not in STAGES:
            raise ValidationError(
                f"Error: {origin}: unknown phase stage '{stage}'. Valid stages: {', '.join(STAGES)}"
            )
        if not isinstance(entries, list):
            raise ValidationError(f"Error: {origin}: phase.{stage} must be an array of tables")
        parsed = [
            parse_phase(
                entry,
                stage=stage,
                base_dir=base_dir,
                origin=origin,
                capability_id=capability_id,
            )
            for entry in entries
        ]
        names = [phase.name for phase in parsed]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(
                f"Error: {origin}: duplicate {stage} phase name(s): {', '.join(duplicates)}"
            )
        phases[stage] = tuple(parsed)
    return phases


def _parse_mcp(raw: Any, *, origin: str) -> tuple[McpServer, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError(f"Error: {origin}: mcp must be an array of tables")
    servers = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError(f"Error: {origin}: mcp entries must be tables")
        server_id = _string(entry.get("id"), what="mcp id", origin=origin)
        servers.append(
            McpServer(
                id=server_id,
                command=_string(entry.get("command"), what=f"mcp '{server_id}' command", origin=origin),
                args=_string_list(entry.get("args"), what=f"mcp '{server_id}' args", origin=origin),
                enabled_when=_string(
                    entry.get("enabled_when"), what="enabled_when", origin=origin, required=False
                ),
            )
        )
    return tuple(servers)


def _parse_forwards(raw: Any, *, origin: str) -> tuple[Forward, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError(f"Error: {origin}: forwards must be an array of tables")
    forwards = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError(f"Error: {origin}: forwards entries must be tables")
        forward_type = _string(entry.get("type"), what="forward type", origin=origin)
        if forward_type != FORWARD_UNIX_SOCKET:
            raise ValidationError(
                f"Error: {origin}: unsupported forward type '{forward_type}' "
                f"(supported: {FORWARD_UNIX_SOCKET})"
            )
        guest = _string(entry.get("guest"), what="forward guest path", origin=origin)
        host = entry.get("host")
        if isinstance(host, str) and host:
            forwards.append(Forward(type=forward_type, guest=guest, host=host))
        elif isinstance(host, dict):
            detect = _string(host.get("detect"), what="forward host.detect", origin=origin)
            forwards.append(Forward(type=forward_type, guest=guest, detect=detect))
        else:
            raise ValidationError(
                f"Error: {origin}: forward host must be a path or {{ detect = \"...\" }}"
            )
    return tuple(forwards)


def parse_capability(data: Mapping[str, Any], *, base_dir: Path, origin: str) -> Capability:
    meta = data.get("capability")
    if not isinstance(meta, dict):
        raise ValidationError(f"Error: {origin}: missing [capability] table")

    cap_id = _string(meta.get("id"), what="capability id", origin=origin)
    if not _ID_RE.match(cap_id):
        raise ValidationError(
            f"Error: {origin}: invalid capability id '{cap_id}' "
            "(lowercase letters, digits and '-', starting with a letter or digit)"
        )
    where = f"{origin} ({cap_id})"

    packages_raw = data.get("packages") or {}
    if not isinstance(packages_raw, dict):
        raise ValidationError(f"Error: {where}: [packages] must be a table")
    packages = _string_list(packages_raw.get("system"), what="packages.system", origin=where)
    for package in packages:
        try:
            parse_package_spec(package)
        except ValidationError as exc:
            raise ValidationError(f"{exc} (declared by capability '{cap_id}')") from exc

    requires = _string_list(meta.get("requires"), what="requires", origin=where)
    if cap_id in requires:
        raise ValidationError(f"Error: {where}: a capability cannot require itself")

    return Capability(
        id=cap_id,
        name=_string(meta.get("name", cap_id), what="name", origin=where),
        description=_string(meta.get("description", ""), what="description", origin=where, required=False),
        requires=requires,
        conflicts=_string_list(meta.get("conflicts"), what="conflicts", origin=where),
        packages=packages,
        setup_script=_string(
            packages_raw.get("setup_script"), what="packages.setup_script", origin=where, required=False
        ),
        phases=parse_phase_tables(data.get("phase"), base_dir=base_dir, origin=where, capability_id=cap_id),
        mcp=_parse_mcp(data.get("mcp"), origin=where),
        forwards=_parse_forwards(data.get("forwards"), origin=where),
        source_dir=base_dir,
    )


def load_capability(path: Path) -> Capability:
    return parse_capability(load_toml(path), base_dir=path.parent, origin=str(path))


class CapabilityRegistry:
    """The catalog of known capabilities, built once and passed to consumers."""

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities:
            self.add(capability)

    @classmethod
    def load(cls, search_dirs: Sequence[Path]) -> "CapabilityRegistry":
        registry = cls()
        for directory in search_dirs:
            if not directory.is_dir():
                continue
            for definition in sorted(directory.glob(f"*/{CAPABILITY_FILENAME}")):
                registry.add(load_capability(definition))
        registry.validate()
        return registry

    def add(self, capability: Capability) -> None:
        existing = self._capabilities.get(capability.id)
        if existing is not None:
            raise ValidationError(
                f"Error: Duplicate capability id '{capability.id}' "
                f"({existing.source_dir} and {capability.source_dir})"
            )
        self._capabilities[capability.id] = capability

    def get(self, capability_id: str) -> Capability | None:
        return self._capabilities.get(capability_id)

    def ids(self) -> list[str]:
        return list(self._capabilities)

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities.values())

    def __len__(self) -> int:
        return len(self._capabilities)

    def validate(self) -> None:
        """Check that every cross reference names a known capability."""
        for capability in self:
            refs = [("requires", ref) for ref in capability.requires]
            refs += [("conflicts", ref) for ref in capability.conflicts]
            refs += [("mcp enabled_when", server.enabled_when) for server in capability.mcp if server.enabled_when]
            for field_name, ref in refs:
                if ref not in self._capabilities:
                    raise ValidationError(
                        f"Error: Capability '{capability.id}' {field_name} unknown capability '{ref}'"
                    )

    def select(self, enabled_ids: Iterable[str]) -> list[Capability]:
        """Return the enabled capabilities in registry order."""
        wanted = list(dict.fromkeys(enabled_ids))
        unknown = [cap_id for cap_id in wanted if cap_id not in self._capabilities]
        if unknown:
            raise ValidationError(
                f"Error: Unknown capability: {', '.join(unknown)}. "
                f"Available: {', '.join(self.ids()) or 'none'}"
            )
        return [capability for capability in self if capability.id in wanted]


def enabled_mcp_servers(capabilities: Sequence[Capability]) -> list[McpServer]:
    enabled = {capability.id for capability in capabilities}
    servers = []
    for capability in capabilities:
        for server in capability.mcp:
            if server.enabled_when and server.enabled_when not in enabled:
                continue
            servers.append(server)
    return servers


def collect_forwards(capabilities: Sequence[Capability]) -> list[Forward]:
    return [forward for capability in capabilities for forward in capability.forwards]
