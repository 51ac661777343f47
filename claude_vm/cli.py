from __future__ import annotations

import argparse
from typing import Sequence

from claude_vm.capabilities import CapabilityRegistry

COMMANDS = ("setup", "run", "shell", "list", "clean", "clean-all", "capabilities")
DEFAULT_COMMAND = "run"
PASSTHROUGH_COMMANDS = frozenset({"run", "shell"})
PASSTHROUGH_FLAGS = frozenset({"-v", "--verbose", "-h", "--help", "--no-conversations"})
PASSTHROUGH_VALUE_OPTIONS = ("--mount",)


def positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("value must be >= 1")
    return parsed


def common_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("-v", "--verbose", action="store_true", help="Show limactl output")
    return parent


def add_vm_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--disk", type=positive_int, help="Disk size in GB")
    parser.add_argument("--memory", type=positive_int, help="Memory in GB")
    parser.add_argument("--cpus", type=positive_int, help="Number of CPUs")


def add_mount_args(parser: argparse.ArgumentParser, *, flag: str = "--mount") -> None:
    parser.add_argument(
        flag,
        action="append",
        default=[],
        metavar="HOST[:GUEST][:ro|:rw]",
        help="Additional mount (repeatable)",
    )


def add_session_args(parser: argparse.ArgumentParser) -> None:
    add_mount_args(parser)
    parser.add_argument(
        "--no-conversations",
        action="store_true",
        help="Do not mount the agent's conversation history folder for this project",
    )


def capability_dest(cap_id: str) -> str:
    return "cap_" + cap_id.replace("-", "_")


def add_capability_flags(parser: argparse.ArgumentParser, registry: CapabilityRegistry) -> None:
    group = parser.add_argument_group("capabilities")
    for capability in registry:
        group.add_argument(
            f"--{capability.id}",
            dest=capability_dest(capability.id),
            action="store_true",
            help=capability.description or capability.name,
        )
    group.add_argument(
        "--capability",
        dest="capability_ids",
        action="append",
        default=[],
        metavar="ID",
        help="Enable a capability by id (repeatable)",
    )
    group.add_argument("--all", dest="all_capabilities", action="store_true", help="Enable every capability")


def selected_capabilities(args: argparse.Namespace, registry: CapabilityRegistry) -> list[str]:
    if getattr(args, "all_capabilities", False):
        return registry.ids()
    selected = [cap_id for cap_id in registry.ids() if getattr(args, capability_dest(cap_id), False)]
    selected.extend(getattr(args, "capability_ids", []))
    return list(dict.fromkeys(selected))


def strip_separator(values: Sequence[str]) -> list[str]:
    items = list(values)
    if items and items[0] == "--":
        items = items[1:]
    return items


def _protect_passthrough(command: str, rest: list[str]) -> list[str]:
    # argparse treats a leading "-p" as an unknown option of the subcommand,
    # so everything after our own options is pushed behind "--".
    index = 0
    while index < len(rest):
        item = rest[index]
        if item in PASSTHROUGH_FLAGS:
            index += 1
        elif item in PASSTHROUGH_VALUE_OPTIONS:
            index += 2
        elif any(item.startswith(f"{option}=") for option in PASSTHROUGH_VALUE_OPTIONS):
            index += 1
        else:
            break
    head, tail = rest[:index], rest[index:]
    if tail and tail[0] != "--":
        tail = ["--", *tail]
    return [command, *head, *tail]


def insert_default_command(argv: Sequence[str]) -> list[str]:
    """``claude-vm [options] [prompt...]`` means ``claude-vm run ...``."""
    items = list(argv)
    if items and items[0] in {"-h", "--help", "--version"}:
        return items
    if items and items[0] in COMMANDS:
        command, rest = items[0], items[1:]
    else:
        command, rest = DEFAULT_COMMAND, items
    if command in PASSTHROUGH_COMMANDS:
        return _protect_passthrough(command, rest)
    return [command, *rest]
