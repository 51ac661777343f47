from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path


@dataclass
class TemplateMarker:
    """What a template was built with, recorded once setup completes."""

    template_name: str
    project_root: str
    capabilities: tuple[str, ...]
    disk: int
    memory: int
    cpus: int
    created_at: str

    @classmethod
    def from_file(cls, marker_file: Path) -> "TemplateMarker | None":
        if not marker_file.exists():
            return None
        data: dict[str, str] = {}
        for line in marker_file.read_text(encoding="utf-8").splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            data[key.strip()] = value.strip()
        if not data:
            return None

        def n(name: str) -> int:
            try:
                return int(data.get(name, "0"))
            except ValueError:
                return 0

        capabilities = data.get("capabilities", "")
        return cls(
            template_name=data.get("template_name", ""),
            project_root=data.get("project_root", ""),
            capabilities=tuple(item for item in capabilities.split(",") if item),
            disk=n("disk"),
            memory=n("memory"),
            cpus=n("cpus"),
            created_at=data.get("created_at", ""),
        )

    def write(self, marker_file: Path) -> None:
        marker_file.parent.mkdir(parents=True, exist_ok=True)
        marker_file.write_text(
            "\n".join(
                [
                    f"template_name: {self.template_name}",
                    f"project_root: {self.project_root}",
                    f"capabilities: {','.join(self.capabilities)}",
                    f"disk: {self.disk}",
                    f"memory: {self.memory}",
                    f"cpus: {self.cpus}",
                    f"created_at: {self.created_at}",
                ]
            )
            + "\n",
            encoding="utf-8",
        )


def marker_path(state_dir: Path, template_name: str) -> Path:
    return state_dir / "templates" / f"{template_name}.created"


def current_utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
