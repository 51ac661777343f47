from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from claude_vm.errors import ValidationError
from claude_vm.paths import expand_tilde, guest_home_dir, home_dir, require_absolute
from claude_vm.project import Project

SCOPE_RUNTIME = "runtime"
SCOPE_SETUP = "setup"

# Declaration sources from lowest to highest precedence.
SOURCE_GLOBAL = "global"
SOURCE_PROJECT = "project"
SOURCE_CLI = "cli"
MOUNT_SOURCES = (SOURCE_GLOBAL, SOURCE_PROJECT, SOURCE_CLI)


@dataclass(frozen=True)
class MountEntry:
    """A mount as declared in configuration or on the command line, unresolved."""

    location: str
    mount_point: str = ""
    writable: bool = True

    @classmethod
    def from_table(cls, table: Mapping[str, Any], *, origin: str) -> "MountEntry":
        location = table.get("location")
        if not isinstance(location, str) or not location:
            raise ValidationError(f"Error: Mount in {origin} is missing 'location'")
        mount_point = table.get("mount_point", "")
        if not isinstance(mount_point, str):
            raise ValidationError(f"Error: Mount '{location}' in {origin}: 'mount_point' must be a string")
        writable = table.get("writable", True)
        if not isinstance(writable, bool):
            raise ValidationError(f"Error: Mount '{location}' in {origin}: 'writable' must be true or false")
        return cls(location=location, mount_point=mount_point, writable=writable)


@dataclass(frozen=True)
class Mount:
    host_path: str
    guest_path: str
    writable: bool = True
    scope: str = SCOPE_RUNTIME

    def to_lima(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"location": self.host_path, "writable": self.writable}
        if self.guest_path != self.host_path:
            entry["mountPoint"] = self.guest_path
        return entry

    def describe(self) -> str:
        mode = "rw" if self.writable else "ro"
        if self.guest_path == self.host_path:
            return f"{self.host_path} ({mode})"
        return f"{self.host_path} -> {self.guest_path} ({mode})"


def parse_mount_spec(spec: str) -> MountEntry:
    """Parse ``host[:guest][:ro|:rw]`` as given on the command line."""
    parts = spec.split(":")
    writable = True
    if len(parts) > 1 and parts[-1] in {"ro", "rw"}:
        writable = parts[-1] == "rw"
        parts = parts[:-1]
    if not parts[0] or len(parts) > 2:
        raise ValidationError(
            f"Error: Invalid mount spec '{spec}'. Expected host[:guest][:ro|:rw]"
        )
    mount_point = parts[1] if len(parts) == 2 else ""
    return MountEntry(location=parts[0], mount_point=mount_point, writable=writable)


def resolve_mount(entry: MountEntry, *, scope: str = SCOPE_RUNTIME) -> Mount:
    host = require_absolute(expand_tilde(entry.location), label="Mount location")
    guest = host
    if entry.mount_point:
        guest = require_absolute(expand_tilde(entry.mount_point), label="Mount point")
    return Mount(host_path=host, guest_path=guest, writable=entry.writable, scope=scope)


def merge_mounts(
    entries_by_source: Mapping[str, Sequence[MountEntry]],
    *,
    scope: str = SCOPE_RUNTIME,
) -> list[Mount]:
    """Resolve declarations and keep one mount per guest path.

    Sources are applied global, then project, then CLI; a later declaration
    for the same guest path replaces the earlier one in place.
    """
    unknown = set(entries_by_source) - set(MOUNT_SOURCES)
    if unknown:
        raise ValueError(f"unknown mount source(s): {', '.join(sorted(unknown))}")

    merged: dict[str, Mount] = {}
    for source in MOUNT_SOURCES:
        for entry in entries_by_source.get(source, ()):
            mount = resolve_mount(entry, scope=scope)
            merged[mount.guest_path] = mount
    return list(merged.values())


def project_mounts(project: Project) -> list[Mount]:
    """Mounts every session needs: the project and, for worktrees, the main repository."""
    mounts = [Mount(host_path=str(project.root), guest_path=str(project.root), writable=True)]
    if project.is_worktree:
        main_root = str(project.main_repo_root)
        if main_root != str(project.root):
            # git inside the guest writes to the main repository's metadata.
            mounts.append(Mount(host_path=main_root, guest_path=main_root, writable=True))
    return mounts


def encode_project_path(path: str) -> str:
    """Folder name the agent uses for a project's history: ``/a/b`` -> ``-a-b``."""
    return path.replace("/", "-")


def conversation_mount(project: Project) -> Mount | None:
    """Writable mount of ``~/.claude/projects/<encoded root>``, created if missing.

    Returns None when the folder cannot be created; the session still runs
    but its conversation history stays inside the disposable clone.
    """
    name = encode_project_path(str(project.root))
    folder = home_dir() / ".claude" / "projects" / name
    try:
        folder.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Warning: Could not create conversation folder {folder}: {exc}", file=sys.stderr)
        return None
    return Mount(
        host_path=str(folder),
        guest_path=f"{guest_home_dir()}/.claude/projects/{name}",
        writable=True,
    )


def session_mounts(
    project: Project,
    user_mounts: Iterable[Mount],
    *,
    conversations: bool = True,
) -> list[Mount]:
    """Combine always-present project mounts with user mounts.

    The project mounts take precedence over a user mount for the same guest
    path so the repository stays writable. With ``conversations`` the
    project's conversation folder is mounted as well, unless a required
    mount already covers the same host folder.
    """
    required = project_mounts(project)
    if conversations:
        history = conversation_mount(project)
        if history is not None and all(m.host_path != history.host_path for m in required):
            required.append(history)
    merged: dict[str, Mount] = {mount.guest_path: mount for mount in required}
    for mount in user_mounts:
        if mount.guest_path in merged:
            continue
        merged[mount.guest_path] = mount
    return list(merged.values())
