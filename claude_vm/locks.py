from __future__ import annotations

import hashlib
import os
import shutil
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from claude_vm.errors import UserFacingError
from claude_vm.io_utils import atomic_write_text

LOCK_KIND = "template"


class LockError(UserFacingError):
    """Raised when the template lock cannot be acquired."""


@dataclass(frozen=True)
class LockOwner:
    pid: int
    host: str
    template: str


def _host_name() -> str:
    name = socket.gethostname()
    return name.split(".")[0] if name else "unknown-host"


def _lock_root(state_dir: Path) -> Path:
    return state_dir / "locks" / LOCK_KIND


def lock_dir_for(state_dir: Path, template_name: str) -> Path:
    key = hashlib.sha256(template_name.encode("utf-8")).hexdigest()
    return _lock_root(state_dir) / key


def _write_metadata(lock_dir: Path, template_name: str) -> None:
    atomic_write_text(lock_dir / "template", f"{template_name}\n")
    atomic_write_text(lock_dir / "owner_host", f"{_host_name()}\n")
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    atomic_write_text(lock_dir / "updated_at", f"{now}\n")
    # Written last: a lock dir without owner_pid is still being set up.
    atomic_write_text(lock_dir / "owner_pid", f"{os.getpid()}\n")


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return ""


def read_owner(lock_dir: Path) -> LockOwner | None:
    raw_pid = _read_text(lock_dir / "owner_pid")
    try:
        pid = int(raw_pid)
    except ValueError:
        return None
    return LockOwner(
        pid=pid,
        host=_read_text(lock_dir / "owner_host"),
        template=_read_text(lock_dir / "template"),
    )


def _owner_alive(owner: LockOwner) -> bool:
    if owner.host and owner.host != _host_name():
        # Processes on another host cannot be checked; assume the lock is held.
        return True
    try:
        os.kill(owner.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def acquire_template_lock(state_dir: Path, template_name: str, *, max_attempts: int = 12) -> Path:
    lock_root = _lock_root(state_dir)
    lock_root.mkdir(parents=True, exist_ok=True)
    lock_dir = lock_dir_for(state_dir, template_name)

    for attempt in range(1, max_attempts + 1):
        try:
            lock_dir.mkdir()
            _write_metadata(lock_dir, template_name)
            return lock_dir
        except FileExistsError:
            pass
        except OSError:
            if attempt == max_attempts:
                break
            time.sleep(0.1)
            continue

        owner = read_owner(lock_dir)
        if owner is None:
            # Another process may still be writing metadata; wait briefly before reclaim.
            if attempt <= 3:
                time.sleep(0.1)
                continue
            shutil.rmtree(lock_dir, ignore_errors=True)
            continue

        if owner.pid == os.getpid() and owner.host == _host_name():
            _write_metadata(lock_dir, template_name)
            return lock_dir

        if _owner_alive(owner):
            raise LockError(
                f"Error: Template '{template_name}' is locked by another claude-vm process.\n"
                f"  owner pid: {owner.pid}\n"
                f"  owner host: {owner.host or 'unknown'}\n"
                "Wait for the running setup or clean to finish, then retry."
            )

        shutil.rmtree(lock_dir, ignore_errors=True)
        time.sleep(0.05)

    raise LockError(
        f"Error: Could not acquire lock for template '{template_name}'.\n"
        "The lock directory was contended by concurrent operations. Retry the command."
    )


def release_template_lock(state_dir: Path, template_name: str) -> None:
    lock_dir = lock_dir_for(state_dir, template_name)
    owner = read_owner(lock_dir)
    if owner is not None and owner.pid != os.getpid():
        return
    shutil.rmtree(lock_dir, ignore_errors=True)


@contextmanager
def template_lock(state_dir: Path, template_name: str) -> Iterator[Path]:
    """Serialize create/recreate/delete of one template across processes."""
    lock_dir = acquire_template_lock(state_dir, template_name)
    try:
        yield lock_dir
    finally:
        release_template_lock(state_dir, template_name)
