"""
Tests for the Orchestrator CLI.
"""

from unittest.mock import AsyncMock, patch

import pytest

from cloud.models import DeploymentEvents
from orchestrator.cli import build_config, create_parser, main, validate_args
from tests.helper import helper_command


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """No .env loading, no global logging changes, no inherited STACKRUN_* settings."""
    for name in (
        "STACKRUN_CLOUD_URL",
        "STACKRUN_CLOUD_ORG",
        "STACKRUN_CONTINUE_ON_ERROR",
        "STACKRUN_LOG_LEVEL",
        "STACKRUN_LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)

    with patch("orchestrator.cli.load_dotenv"), patch("orchestrator.cli.setup_logging"), \
            patch("orchestrator.core.setup_logging"):
        yield


def _parse(argv):
    args = create_parser().parse_args(argv)
    command = getattr(args, "command", None)
    if command and command[0] == "--":
        args.command = command[1:]
    return args


# ============================================================
# PARSER
# ============================================================

class TestParser:
    """Tests for create_parser and validate_args."""

    def test_run_arguments(self):
        """Flags before -- configure the run; the rest is the command."""
        args = _parse([
            "run",
            "--cloud-sync-deployment",
            "--stack", "infra/a:a-01",
            "--stack", "infra/b",
            "--", "terraform", "plan", "--out", "x",
        ])

        assert args.subcommand == "run"
        assert args.cloud_sync_deployment
        assert args.stacks == ["infra/a:a-01", "infra/b"]
        assert args.command == ["terraform", "plan", "--out", "x"]
        assert validate_args(args) == []

    def test_missing_stack_and_command(self):
        """A run needs at least one stack and a command."""
        errors = validate_args(_parse(["run"]))
        assert "at least one --stack is required" in errors
        assert any("missing command" in e for e in errors)

    def test_events_arguments(self):
        """events takes a run id and an optional org."""
        args = _parse(["events", "123", "--org", "org-1"])
        assert args.run_id == "123"
        assert args.org == "org-1"

    def test_subcommand_required(self):
        """Calling without a subcommand is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            create_parser().parse_args([])
        assert exc_info.value.code == 2


class TestBuildConfig:
    """Tests for build_config."""

    def test_flags_override_environment(self, monkeypatch):
        """Flags win over STACKRUN_* variables."""
        monkeypatch.setenv("STACKRUN_CLOUD_ORG", "org-env")
        monkeypatch.setenv("STACKRUN_LOG_LEVEL", "WARNING")

        config = build_config(_parse([
            "run",
            "--cloud-sync-deployment",
            "--continue-on-error",
            "--kill-after-interrupts", "5",
            "--log-level", "DEBUG",
            "--stack", "x",
            "--", "true",
        ]))

        assert config.cloud_sync
        assert config.continue_on_error
        assert config.kill_after_interrupts == 5
        assert config.cloud_org_id == "org-env"
        assert config.log_level == "DEBUG"

    def test_environment_used_without_flags(self, monkeypatch):
        """Unset flags leave environment values alone."""
        monkeypatch.setenv("STACKRUN_CONTINUE_ON_ERROR", "true")

        config = build_config(_parse(["run", "--stack", "x", "--", "true"]))

        assert config.continue_on_error
        assert not config.cloud_sync


# ============================================================
# MAIN
# ============================================================

class TestMain:
    """Tests for main."""

    def test_usage_error(self, capsys):
        """Invalid arguments exit 2 with an error line."""
        assert main(["run", "--stack", "x"]) == 2
        assert "Error: missing command" in capsys.readouterr().err

    def test_run_mirrors_output(self, stack_root, capsys):
        """The stack's output is written to stdout."""
        exit_code = main([
            "run",
            "--stack", str(stack_root / "stack-a"),
            "--", *helper_command("stack-abs-path", str(stack_root)),
        ])

        assert exit_code == 0
        assert capsys.readouterr().out == "/stack-a\n"

    def test_run_failure(self, stack_root):
        """A failing stack exits 1."""
        exit_code = main([
            "run",
            "--stack", str(stack_root / "stack-a"),
            "--", *helper_command("exit", "4"),
        ])
        assert exit_code == 1

    def test_missing_ids_with_sync(self, stack_root, monkeypatch, capsys):
        """Sync without stack ids exits 1 with the id requirement message."""
        monkeypatch.setenv("STACKRUN_CLOUD_ORG", "org-1")

        exit_code = main([
            "run",
            "--cloud-sync-deployment",
            "--stack", str(stack_root / "stack-a"),
            "--", *helper_command("echo"),
        ])

        captured = capsys.readouterr()
        assert exit_code == 1
        assert (
            "Error: --cloud-sync-deployment flag requires that selected stacks contain an ID field"
            in captured.err
        )
        assert captured.out == ""

    def test_missing_ids_reported_before_org(self, stack_root, capsys):
        """Without ids and without an org, the id requirement is what gets reported."""
        exit_code = main([
            "run",
            "--cloud-sync-deployment",
            "--stack", str(stack_root / "stack-a"),
            "--", *helper_command("echo"),
        ])

        captured = capsys.readouterr()
        assert exit_code == 1
        assert "flag requires that selected stacks contain an ID field" in captured.err
        assert captured.out == ""

    def test_interrupt_before_execution(self, stack_root, capsys):
        """An interrupt arriving before signal handling is set up exits 1 without a traceback."""
        with patch("orchestrator.cli.run_command", AsyncMock(side_effect=KeyboardInterrupt)):
            exit_code = main([
                "run",
                "--stack", str(stack_root / "stack-a"),
                "--", *helper_command("echo"),
            ])

        assert exit_code == 1
        assert "Error: interrupted" in capsys.readouterr().err

    def test_sync_without_org(self, stack_root, capsys):
        """Sync without an organization id is a configuration error."""
        exit_code = main([
            "run",
            "--cloud-sync-deployment",
            "--stack", f"{stack_root / 'stack-a'}:a",
            "--", "true",
        ])

        assert exit_code == 1
        assert "STACKRUN_CLOUD_ORG" in capsys.readouterr().err

    def test_events(self, capsys):
        """events prints the recorded log as JSON."""
        events = DeploymentEvents.model_validate({"stack-a": ["pending", "running", "ok"]})

        with patch(
            "orchestrator.cli.fetch_deployment_events",
            AsyncMock(return_value=events),
        ) as fetch:
            exit_code = main(["events", "77", "--org", "org-1"])

        assert exit_code == 0
        assert fetch.await_args.args[1:] == ("org-1", "77")
        assert '"stack-a": [' in capsys.readouterr().out

    def test_events_requires_org(self, capsys):
        """events without an organization id exits 1."""
        assert main(["events", "77"]) == 1
        assert "organization id required" in capsys.readouterr().err
