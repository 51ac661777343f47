from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from claude_vm import __version__
from claude_vm.capabilities import CapabilityRegistry
from claude_vm.cli import (
    add_capability_flags,
    add_mount_args,
    add_session_args,
    add_vm_args,
    common_parent,
    insert_default_command,
    selected_capabilities,
    strip_separator,
)
from claude_vm.config import Config, apply_cli_overrides, load_config
from claude_vm.errors import CommandExitError, UserFacingError, main_guard
from claude_vm.lima import LimaClient
from claude_vm.paths import capability_search_dirs, default_state_dir
from claude_vm.project import Project, detect_project
from claude_vm.session import build_session_plan, list_sessions, run_session
from claude_vm.state import TemplateMarker, marker_path
from claude_vm.template import build_setup_plan, delete_template, list_templates, recreate_template

SHELL_COMMAND = ("bash", "-l")


def load_registry() -> CapabilityRegistry:
    try:
        return CapabilityRegistry.load(capability_search_dirs())
    except UserFacingError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc


def _project_and_config(args: argparse.Namespace) -> tuple[Project, Config]:
    project = detect_project()
    config = load_config(project.root)
    apply_cli_overrides(
        config,
        disk=getattr(args, "disk", None),
        memory=getattr(args, "memory", None),
        cpus=getattr(args, "cpus", None),
        capabilities=selected_capabilities(args, args.registry) if args.command == "setup" else (),
        mounts=getattr(args, "mount", []),
        setup_mounts=getattr(args, "setup_mount", []),
    )
    return project, config


def _handle_setup(args: argparse.Namespace, lima: LimaClient) -> None:
    project, config = _project_and_config(args)
    plan = build_setup_plan(project, config, args.registry)
    print(f"Setting up template for project: {project.main_repo_root}")
    print(f"  template: {plan.template_name}")
    print(f"  capabilities: {', '.join(plan.capability_ids) or 'none'}")
    for source in config.sources:
        print(f"  config: {source}")
    recreate_template(plan, lima)
    print("Run 'claude-vm' in this project directory to start a session.")


def _start_session(
    args: argparse.Namespace,
    lima: LimaClient,
    project: Project,
    config: Config,
    command: Sequence[str],
) -> None:
    marker = TemplateMarker.from_file(marker_path(default_state_dir(), project.template_name))
    plan = build_session_plan(
        project,
        config,
        args.registry,
        command,
        capability_ids=marker.capabilities if marker is not None else None,
        workdir=Path.cwd().resolve(),
        conversations=not args.no_conversations,
    )
    rc = run_session(plan, lima)
    if rc != 0:
        raise CommandExitError(rc)


def _handle_run(args: argparse.Namespace, lima: LimaClient) -> None:
    project, config = _project_and_config(args)
    command = [config.agent_command, *config.agent_args, *strip_separator(args.agent_args)]
    _start_session(args, lima, project, config, command)


def _handle_shell(args: argparse.Namespace, lima: LimaClient) -> None:
    project, config = _project_and_config(args)
    command = strip_separator(args.shell_command) or list(SHELL_COMMAND)
    _start_session(args, lima, project, config, command)


def _handle_list(_: argparse.Namespace, lima: LimaClient) -> None:
    templates = list_templates(lima)
    if not templates:
        print("No claude-vm templates found.")
        return
    for info in templates:
        print(f"{info.name}  ({info.status})")
        if info.marker is not None:
            print(f"  project: {info.marker.project_root}")
            print(f"  capabilities: {', '.join(info.marker.capabilities) or 'none'}")
            print(f"  disk: {info.marker.disk}GB  memory: {info.marker.memory}GB  cpus: {info.marker.cpus}")
            print(f"  created: {info.marker.created_at}")


def _handle_clean(_: argparse.Namespace, lima: LimaClient) -> None:
    project = detect_project()
    if delete_template(project.template_name, lima):
        print(f"Deleted template: {project.template_name}")
    else:
        print(f"No template for this project ({project.template_name}).")


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _handle_clean_all(args: argparse.Namespace, lima: LimaClient) -> None:
    templates = [info.name for info in list_templates(lima)]
    sessions = list_sessions(lima)
    if not templates and not sessions:
        print("No claude-vm instances found.")
        return

    print("The following instances will be deleted:")
    for name in templates + sessions:
        print(f"  {name}")
    if not args.yes and not _confirm(f"Delete {len(templates) + len(sessions)} instance(s)? [y/N] "):
        print("Aborted.")
        return

    for name in templates:
        delete_template(name, lima)
        print(f"Deleted template: {name}")
    for name in sessions:
        lima.stop(name)
        lima.delete(name)
        print(f"Deleted session: {name}")


def _handle_capabilities(args: argparse.Namespace, _: LimaClient) -> None:
    for capability in args.registry:
        requires = f" (requires: {', '.join(capability.requires)})" if capability.requires else ""
        print(f"{capability.id:<12} {capability.description or capability.name}{requires}")


def build_parser(registry: CapabilityRegistry) -> argparse.ArgumentParser:
    common = common_parent()
    parser = argparse.ArgumentParser(
        prog="claude-vm",
        description="Run Claude Code inside disposable Lima VMs",
    )
    parser.add_argument("--version", action="version", version=f"claude-vm {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    setup_parser = subparsers.add_parser(
        "setup",
        parents=[common],
        help="Create (or recreate) the template VM for this project",
    )
    add_vm_args(setup_parser)
    add_mount_args(setup_parser, flag="--setup-mount")
    add_capability_flags(setup_parser, registry)
    setup_parser.set_defaults(handler=_handle_setup)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run the agent in an ephemeral clone (default command)",
    )
    add_session_args(run_parser)
    run_parser.add_argument("agent_args", nargs=argparse.REMAINDER, help="Arguments passed to the agent")
    run_parser.set_defaults(handler=_handle_run)

    shell_parser = subparsers.add_parser(
        "shell",
        parents=[common],
        help="Open a shell (or run a command) in an ephemeral clone",
    )
    add_session_args(shell_parser)
    shell_parser.add_argument("shell_command", nargs=argparse.REMAINDER, help="Command to run instead of a login shell")
    shell_parser.set_defaults(handler=_handle_shell)

    list_parser = subparsers.add_parser("list", parents=[common], help="List templates")
    list_parser.set_defaults(handler=_handle_list)

    clean_parser = subparsers.add_parser(
        "clean",
        parents=[common],
        help="Delete this project's template",
    )
    clean_parser.set_defaults(handler=_handle_clean)

    clean_all_parser = subparsers.add_parser(
        "clean-all",
        parents=[common],
        help="Delete every claude-vm template and leftover session",
    )
    clean_all_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    clean_all_parser.set_defaults(handler=_handle_clean_all)

    capabilities_parser = subparsers.add_parser(
        "capabilities",
        parents=[common],
        help="List available capabilities",
    )
    capabilities_parser.set_defaults(handler=_handle_capabilities)

    return parser


def parse_args(
    argv: Sequence[str] | None = None,
    registry: CapabilityRegistry | None = None,
) -> argparse.Namespace:
    registry = registry if registry is not None else load_registry()
    parser = build_parser(registry)
    args = parser.parse_args(insert_default_command(sys.argv[1:] if argv is None else argv))
    args.registry = registry
    return args


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)

    def run(lima):
        handler = getattr(args, "handler", None)
        if handler is None:
            raise RuntimeError(f"Unhandled command: {getattr(args, 'command', '<missing>')}")
        handler(args, lima)

    main_guard(run, verbose=getattr(args, "verbose", False))


if __name__ == "__main__":
    main()
