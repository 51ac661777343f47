from __future__ import annotations

from pathlib import Path

import pytest

from claude_vm import errors, session
from claude_vm import main as main_cli
from claude_vm.capabilities import CapabilityRegistry
from claude_vm.cli import insert_default_command, selected_capabilities, strip_separator
from claude_vm.paths import BUNDLED_CAPABILITIES_DIR
from claude_vm.project import template_name_for
from claude_vm.state import TemplateMarker, marker_path


@pytest.fixture(scope="module")
def registry() -> CapabilityRegistry:
    return CapabilityRegistry.load([BUNDLED_CAPABILITIES_DIR])


def test_parse_setup_capability_flags(registry):
    args = main_cli.parse_args(["setup", "--git", "--capability", "node", "--gh", "--disk", "30"], registry)
    assert args.command == "setup"
    assert args.disk == 30
    assert selected_capabilities(args, registry) == ["gh", "git", "node"]


def test_parse_setup_all(registry):
    args = main_cli.parse_args(["setup", "--all"], registry)
    assert selected_capabilities(args, registry) == registry.ids()


def test_parse_setup_rejects_non_positive_sizes(registry):
    with pytest.raises(SystemExit):
        main_cli.parse_args(["setup", "--memory", "0"], registry)


def test_parse_setup_rejects_unknown_capability_flag(registry):
    with pytest.raises(SystemExit):
        main_cli.parse_args(["setup", "--cobol"], registry)


def test_bare_invocation_runs_agent(registry):
    args = main_cli.parse_args([], registry)
    assert args.command == "run"
    assert strip_separator(args.agent_args) == []


def test_agent_arguments_pass_through(registry):
    args = main_cli.parse_args(["-v", "--mount", "/data:ro", "-p", "fix the tests"], registry)
    assert args.command == "run"
    assert args.verbose is True
    assert args.mount == ["/data:ro"]
    assert strip_separator(args.agent_args) == ["-p", "fix the tests"]


def test_no_conversations_flag_is_kept_before_agent_arguments(registry):
    args = main_cli.parse_args(["--no-conversations", "-p", "hi"], registry)
    assert args.command == "run"
    assert args.no_conversations is True
    assert strip_separator(args.agent_args) == ["-p", "hi"]
    assert main_cli.parse_args(["shell"], registry).no_conversations is False


def test_shell_command_pass_through(registry):
    args = main_cli.parse_args(["shell", "ls", "-la"], registry)
    assert args.command == "shell"
    assert strip_separator(args.shell_command) == ["ls", "-la"]


@pytest.mark.parametrize(
    ("argv", "expected"),
    [
        ([], ["run"]),
        (["list"], ["list"]),
        (["--version"], ["--version"]),
        (["hello"], ["run", "--", "hello"]),
        (["run", "--", "-p"], ["run", "--", "-p"]),
        (["shell", "--mount=/x", "-c"], ["shell", "--mount=/x", "--", "-c"]),
        (["setup", "--git"], ["setup", "--git"]),
    ],
)
def test_insert_default_command(argv, expected):
    assert insert_default_command(argv) == expected


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, project, registry, fake_lima):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("CLAUDE_VM_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    monkeypatch.chdir(project.root)
    monkeypatch.setattr(main_cli, "load_registry", lambda: registry)
    monkeypatch.setattr(errors, "LimaClient", lambda verbose=False: fake_lima)
    guest = tmp_path / "guest-tmp"
    guest.mkdir()
    monkeypatch.setattr(session, "GUEST_TMP_DIR", str(guest))
    return project


def test_main_list_without_templates(workspace, capsys):
    main_cli.main(["list"])
    assert "No claude-vm templates found." in capsys.readouterr().out


def test_main_run_without_template_exits_non_zero(workspace, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main_cli.main([])
    assert exc_info.value.code == 1
    assert "Run 'claude-vm setup' first" in capsys.readouterr().err


def test_main_run_propagates_agent_exit_status(workspace, fake_lima, tmp_path):
    (workspace.root / ".claude-vm.toml").write_text(
        '[defaults]\nagent_command = "sh"\nagent_args = ["-c"]\n',
        encoding="utf-8",
    )
    fake_lima.execute = True
    name = template_name_for(workspace.root.resolve())
    fake_lima.instances[name] = "Stopped"
    TemplateMarker(name, str(workspace.root), (), 20, 8, 4, "now").write(marker_path(tmp_path / "state", name))
    with pytest.raises(SystemExit) as exc_info:
        main_cli.main(["exit 5"])
    assert exc_info.value.code == 5
    assert fake_lima.ops()[-2:] == ["stop", "delete"]


def test_main_clean_all_deletes_templates_and_sessions(workspace, fake_lima, capsys):
    fake_lima.instances.update({"claude-tpl_x_1": "Stopped", "claude-run_x_1-7": "Running", "unrelated": "Running"})
    main_cli.main(["clean-all", "--yes"])
    out = capsys.readouterr().out
    assert "Deleted template: claude-tpl_x_1" in out
    assert "Deleted session: claude-run_x_1-7" in out
    assert set(fake_lima.instances) == {"unrelated"}


def test_main_clean_all_aborts_without_confirmation(workspace, fake_lima, monkeypatch, capsys):
    fake_lima.instances["claude-tpl_x_1"] = "Stopped"
    monkeypatch.setattr("builtins.input", lambda _prompt: "n")
    main_cli.main(["clean-all"])
    assert "Aborted." in capsys.readouterr().out
    assert "claude-tpl_x_1" in fake_lima.instances


def test_main_capabilities_lists_registry(workspace, capsys):
    main_cli.main(["capabilities"])
    out = capsys.readouterr().out
    assert "gh" in out
    assert "(requires: git)" in out


def test_main_setup_lists_config_files(workspace, fake_lima, capsys):
    config_file = workspace.root / ".claude-vm.toml"
    config_file.write_text('[defaults]\nagent_command = "codex"\n', encoding="utf-8")
    main_cli.main(["setup"])
    out = capsys.readouterr().out
    assert f"  config: {config_file.resolve()}" in out
    assert fake_lima.ops() == ["create", "start", "stop"]
