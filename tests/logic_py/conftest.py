from __future__ import annotations

import shutil
import subprocess
import textwrap
from pathlib import Path

import pytest

from claude_vm.lima import InstanceInfo, VmManagerError
from claude_vm.project import Project, template_name_for


class FakeLima:
    """Records limactl operations; guest shells run locally when ``execute`` is set."""

    def __init__(self, *, execute: bool = False):
        self.execute = execute
        self.instances: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.shell_calls: list[tuple[str, list[str]]] = []
        self.fail_ops: dict[str, str] = {}
        self.script_exit_codes: dict[str, int] = {}

    def _record(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        if op in self.fail_ops:
            raise VmManagerError(self.fail_ops[op])

    def ops(self) -> list[str]:
        return [call[0] for call in self.calls]

    def list_instances(self) -> list[InstanceInfo]:
        return [InstanceInfo(name=name, status=status) for name, status in self.instances.items()]

    def instance_exists(self, name: str) -> bool:
        return name in self.instances

    def create(self, name, *, disk, memory, cpus, mounts=(), forwards=(), template="template:debian-12"):
        self._record("create", name, {"disk": disk, "memory": memory, "cpus": cpus, "mounts": list(mounts), "forwards": list(forwards)})
        self.instances[name] = "Stopped"

    def clone(self, source, dest, mounts=()):
        self._record("clone", source, dest, list(mounts))
        self.instances[dest] = "Stopped"

    def edit(self, name, settings):
        self._record("edit", name, list(settings))

    def set_mounts(self, name, mounts):
        self._record("set_mounts", name, list(mounts))

    def start(self, name):
        self._record("start", name)
        self.instances[name] = "Running"

    def stop(self, name):
        self._record("stop", name)
        if name in self.instances:
            self.instances[name] = "Stopped"

    def delete(self, name):
        self._record("delete", name)
        self.instances.pop(name, None)

    def copy(self, local_path, name, remote_path):
        self._record("copy", name, remote_path)
        shutil.copyfile(local_path, remote_path)

    def shell(self, name, args, *, workdir=None, capture_output=False, check=False):
        self.shell_calls.append((name, list(args)))
        if self.execute:
            return subprocess.run(
                list(args),
                cwd=workdir,
                check=False,
                text=True,
                capture_output=capture_output,
            )
        body = " ".join(args)
        rc = 0
        for needle, code in self.script_exit_codes.items():
            if needle in body:
                rc = code
        return subprocess.CompletedProcess(list(args), rc, stdout="", stderr="")


@pytest.fixture
def fake_lima() -> FakeLima:
    return FakeLima()


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state = tmp_path / "state"
    monkeypatch.setenv("CLAUDE_VM_STATE_DIR", str(state))
    return state


@pytest.fixture
def project(tmp_path: Path) -> Project:
    root = tmp_path / "repo"
    root.mkdir()
    return Project(root=root, main_repo_root=root, template_name=template_name_for(root))


@pytest.fixture
def write_capability(tmp_path: Path):
    """Write ``<root>/<id>/capability.toml`` (plus extra files) and return the search dir."""
    root = tmp_path / "caps"

    def write(cap_id: str, body: str = "", *, files: dict[str, str] | None = None) -> Path:
        cap_dir = root / cap_id
        cap_dir.mkdir(parents=True, exist_ok=True)
        header = f'[capability]\nid = "{cap_id}"\nname = "{cap_id.title()}"\n'
        (cap_dir / "capability.toml").write_text(header + textwrap.dedent(body), encoding="utf-8")
        for name, content in (files or {}).items():
            (cap_dir / name).write_text(content, encoding="utf-8")
        return root

    return write
