from __future__ import annotations

import hashlib
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

TEMPLATE_PREFIX = "claude-tpl_"
_SANITIZE_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class Project:
    root: Path
    main_repo_root: Path
    template_name: str
    is_worktree: bool = False

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def worktree_root(self) -> str:
        return str(self.main_repo_root) if self.is_worktree else ""

    @property
    def worktree_path(self) -> str:
        return str(self.root) if self.is_worktree else ""


def sanitize_name(name: str) -> str:
    sanitized = _SANITIZE_RE.sub("-", name.lower()).strip("-")
    return sanitized or "project"


def template_name_for(main_repo_root: Path) -> str:
    """Template name for a project; every worktree of one repository maps to the same name."""
    digest = hashlib.sha256(str(main_repo_root).encode("utf-8")).hexdigest()
    return f"{TEMPLATE_PREFIX}{sanitize_name(main_repo_root.name)}_{digest[:8]}"


def _git_rev_parse(cwd: Path) -> tuple[Path, Path, Path] | None:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--show-toplevel", "--git-dir", "--git-common-dir"],
            cwd=cwd,
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
    if len(lines) != 3:
        return None
    toplevel, git_dir, common_dir = (Path(os.path.join(cwd, line)).resolve() for line in lines)
    return toplevel, git_dir, common_dir


def detect_project(cwd: Path | None = None) -> Project:
    """Identify the project for cwd.

    Inside a git repository the project root is the working tree top level.
    A linked worktree has a git dir different from the common dir, and its
    main repository is the common dir's parent. Outside git the canonical
    cwd is used.
    """
    base = (cwd or Path.cwd()).resolve()
    git_paths = _git_rev_parse(base)
    if git_paths is None:
        return Project(root=base, main_repo_root=base, template_name=template_name_for(base))

    toplevel, git_dir, common_dir = git_paths
    if git_dir != common_dir:
        main_root = common_dir.parent
        return Project(
            root=toplevel,
            main_repo_root=main_root,
            template_name=template_name_for(main_root),
            is_worktree=True,
        )
    return Project(root=toplevel, main_repo_root=toplevel, template_name=template_name_for(toplevel))
