from __future__ import annotations

import json
import platform
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

LIMACTL = "limactl"
BASE_TEMPLATE = "template:debian-12"


class VmManagerError(RuntimeError):
    """Raised when a limactl command fails in an orchestration-sensitive way."""


@dataclass(frozen=True)
class InstanceInfo:
    name: str
    status: str
    disk: int = 0
    memory: int = 0
    cpus: int = 0


def _vm_type_flags() -> list[str]:
    if platform.system() == "Darwin":
        flags = ["--vm-type=vz", "--mount-type=virtiofs"]
        if platform.machine() == "arm64":
            flags.append("--rosetta")
        return flags
    return ["--vm-type=qemu", "--mount-type=reverse-sshfs"]


def _mounts_setting(mounts: Sequence[Any]) -> str:
    return ".mounts=" + json.dumps([mount.to_lima() for mount in mounts], separators=(",", ":"))


def _forwards_setting(forwards: Sequence[tuple[str, str]]) -> str:
    entries = [
        {"guestSocket": guest, "hostSocket": host, "reverse": True} for host, guest in forwards
    ]
    return ".portForwards=" + json.dumps(entries, separators=(",", ":"))


def _gib(value: Any) -> int:
    if isinstance(value, int):
        return value // (1024**3)
    return 0


class LimaClient:
    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def _run(
        self,
        args: list[str],
        *,
        check: bool = True,
        capture_output: bool = True,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                args,
                check=False,
                text=True,
                capture_output=capture_output,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            cmd = args[0] if args else "command"
            raise VmManagerError(f"Error: Command not found: {cmd}") from exc
        except OSError as exc:
            cmd = " ".join(args)
            raise VmManagerError(f"Error: Could not run command '{cmd}': {exc}") from exc

        if check and proc.returncode != 0:
            cmd = " ".join(args[:3])
            stderr = (proc.stderr or "").strip()
            stdout = (proc.stdout or "").strip()
            details = stderr or stdout
            if details:
                raise VmManagerError(
                    f"Error: Command failed (exit {proc.returncode}): {cmd}\n{details}"
                )
            raise VmManagerError(f"Error: Command failed (exit {proc.returncode}): {cmd}")
        return proc

    def _run_managed(self, args: list[str]) -> None:
        """Run a lifecycle command, streaming limactl output only in verbose mode."""
        self._run(args, check=True, capture_output=not self.verbose)

    def list_instances(self) -> list[InstanceInfo]:
        proc = self._run([LIMACTL, "list", "--format", "json"])
        instances: list[InstanceInfo] = []
        # limactl emits one JSON document per instance.
        for line in (proc.stdout or "").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                raise VmManagerError(f"Could not parse limactl list output: {exc}") from exc
            if not isinstance(data, dict):
                raise VmManagerError("Unexpected limactl list payload: expected JSON objects")
            instances.append(
                InstanceInfo(
                    name=str(data.get("name", "")),
                    status=str(data.get("status", "")),
                    disk=_gib(data.get("disk")),
                    memory=_gib(data.get("memory")),
                    cpus=int(data.get("cpus") or 0),
                )
            )
        return instances

    def instance_exists(self, name: str) -> bool:
        return any(instance.name == name for instance in self.list_instances())

    def create(
        self,
        name: str,
        *,
        disk: int,
        memory: int,
        cpus: int,
        mounts: Sequence[Any] = (),
        forwards: Sequence[tuple[str, str]] = (),
        template: str = BASE_TEMPLATE,
    ) -> None:
        args = [
            LIMACTL,
            "create",
            f"--name={name}",
            template,
            *_vm_type_flags(),
            "--tty=false",
            f"--disk={disk}",
            f"--memory={memory}",
            f"--cpus={cpus}",
            "--set",
            _mounts_setting(mounts),
        ]
        if forwards:
            args.extend(["--set", _forwards_setting(forwards)])
        self._run_managed(args)

    def clone(self, source: str, dest: str, mounts: Sequence[Any] = ()) -> None:
        # Older Lima releases call this "clone", newer ones "copy".
        setting = _mounts_setting(mounts)
        try:
            self._run_managed([LIMACTL, "clone", source, dest, "--tty=false", "--set", setting])
        except VmManagerError:
            self._run_managed([LIMACTL, "copy", source, dest, "--tty=false", "--set", setting])

    def edit(self, name: str, settings: Sequence[str]) -> None:
        args = [LIMACTL, "edit", name, "--tty=false"]
        for setting in settings:
            args.extend(["--set", setting])
        self._run_managed(args)

    def set_mounts(self, name: str, mounts: Sequence[Any]) -> None:
        self.edit(name, [_mounts_setting(mounts)])

    def start(self, name: str) -> None:
        self._run_managed([LIMACTL, "start", "--tty=false", name])

    def stop(self, name: str) -> None:
        self._run([LIMACTL, "stop", name], check=False)

    def delete(self, name: str) -> None:
        self._run([LIMACTL, "delete", "--force", name], check=True)

    def copy(self, local_path: Path, name: str, remote_path: str) -> None:
        self._run([LIMACTL, "copy", str(local_path), f"{name}:{remote_path}"])

    def shell(
        self,
        name: str,
        args: Sequence[str],
        *,
        workdir: Path | None = None,
        capture_output: bool = False,
        check: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [LIMACTL, "shell"]
        if workdir is not None:
            cmd.extend(["--workdir", str(workdir)])
        cmd.append(name)
        cmd.extend(args)
        return self._run(cmd, check=check, capture_output=capture_output)
