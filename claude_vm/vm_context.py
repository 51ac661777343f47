"""The VM context document handed to the agent at the start of a session.

The document lives in the guest's ``~/.claude/CLAUDE.md`` between two
marker comments. Content outside the markers belongs to the user and is
kept; the block itself is replaced on every session.
"""

from __future__ import annotations

from typing import Sequence

from claude_vm.capabilities import Capability
from claude_vm.mounts import Mount

CONTEXT_START = "<!-- claude-vm-context-start -->"
CONTEXT_END = "<!-- claude-vm-context-end -->"
GUEST_CONTEXT_FILE = "$HOME/.claude/CLAUDE.md"
_DELIMITER = "CLAUDE_VM_CONTEXT_EOF"


def render_vm_context(
    *,
    disk: int,
    memory: int,
    cpus: int,
    capabilities: Sequence[Capability],
    mounts: Sequence[Mount],
) -> str:
    lines = [
        CONTEXT_START,
        "# Claude VM Context",
        "",
        "You are running in an isolated Lima VM with the following configuration.",
        "",
        "## VM Configuration",
        f"- **Disk**: {disk} GB",
        f"- **Memory**: {memory} GB",
        f"- **CPUs**: {cpus}",
        "",
        "## Enabled Capabilities",
    ]
    if capabilities:
        for capability in capabilities:
            description = f": {capability.description}" if capability.description else ""
            lines.append(f"- {capability.id}{description}")
    else:
        lines.append("None")
    lines += ["", "## Mounted Directories"]
    if mounts:
        for mount in mounts:
            mode = "writable" if mount.writable else "read-only"
            lines.append(f"- {mount.guest_path} ({mode})")
    else:
        lines.append("None")
    lines += ["", CONTEXT_END]
    return "\n".join(lines) + "\n"


def install_lines(document: str) -> list[str]:
    """Guest shell lines that swap the marked block in ``~/.claude/CLAUDE.md``.

    A failure only warns; the agent can run without the document.
    """
    target = GUEST_CONTEXT_FILE
    return [
        "if ! (",
        f'mkdir -p "$(dirname "{target}")" && touch "{target}" &&',
        f"awk '/{CONTEXT_START}/ {{ skip = 1; next }} /{CONTEXT_END}/ {{ skip = 0; next }} !skip' "
        f'"{target}" > "{target}.new" &&',
        f"cat >> \"{target}.new\" <<'{_DELIMITER}' &&",
        document.rstrip("\n"),
        _DELIMITER,
        f'mv "{target}.new" "{target}"',
        ") >/dev/null 2>&1; then",
        "  echo 'Warning: Could not write the VM context to ~/.claude/CLAUDE.md' >&2",
        "fi",
    ]
