from __future__ import annotations

import os
import pwd
from pathlib import Path

from claude_vm.errors import ValidationError

PACKAGE_ROOT = Path(__file__).resolve().parent
BUNDLED_CAPABILITIES_DIR = PACKAGE_ROOT / "bundled"
STATE_DIR_ENV = "CLAUDE_VM_STATE_DIR"
CAPABILITIES_PATH_ENV = "CLAUDE_VM_CAPABILITIES_PATH"
CONFIG_FILENAME = ".claude-vm.toml"
RUNTIME_SCRIPT_FILENAME = ".claude-vm.runtime.sh"


def home_dir() -> Path:
    home = os.getenv("HOME")
    if home:
        return Path(home)
    return Path(pwd.getpwuid(os.getuid()).pw_dir)


def guest_home_dir() -> str:
    """Home directory Lima gives the host user inside a guest."""
    return f"/home/{pwd.getpwuid(os.getuid()).pw_name}.linux"


def expand_tilde(path: str) -> str:
    """Expand a leading ``~`` or ``~user`` to an absolute home directory.

    ``~user`` is looked up in the account database, so the result does not
    depend on who runs the command. Paths without a leading tilde are
    returned unchanged.
    """
    if not path.startswith("~"):
        return path

    head, sep, rest = path[1:].partition("/")
    if head:
        try:
            base = pwd.getpwnam(head).pw_dir
        except KeyError as exc:
            raise ValidationError(f"Error: Unknown user '{head}' in path: {path}") from exc
    else:
        base = str(home_dir())

    if not sep or not rest:
        return base
    return os.path.join(base, rest)


def require_absolute(path: str, *, label: str) -> str:
    if not os.path.isabs(path):
        raise ValidationError(f"Error: {label} must be an absolute path: {path}")
    return os.path.normpath(path)


def default_state_dir() -> Path:
    override = os.getenv(STATE_DIR_ENV)
    if override:
        return Path(expand_tilde(override))
    return home_dir() / ".claude-vm"


def global_config_file() -> Path:
    return home_dir() / CONFIG_FILENAME


def capability_search_dirs() -> list[Path]:
    """Directories holding ``<id>/capability.toml`` definitions, bundled first."""
    dirs = [BUNDLED_CAPABILITIES_DIR, default_state_dir() / "capabilities"]
    extra = os.getenv(CAPABILITIES_PATH_ENV, "")
    for entry in extra.split(os.pathsep):
        if entry:
            dirs.append(Path(expand_tilde(entry)))
    return dirs
