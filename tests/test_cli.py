"""Tests for the CLI.

The workflow engine is replaced with a mock; these tests cover argument
handling, output and exit codes.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from conftest import KERNEL_RELEASE, SPEC_TEXT
from fedora_kernel_builder import __version__
from fedora_kernel_builder.cli import app
from fedora_kernel_builder.errors import BuildFailed, OperatorCancelled, ToolMissing
from fedora_kernel_builder.history import BuildHistory
from fedora_kernel_builder.state import StateStore, WorkflowState
from fedora_kernel_builder.types import BuildArtifact, OutcomeStatus, Phase, RunStatus, WorkflowOutcome

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every path the CLI touches into tmp_path."""
    monkeypatch.setenv("FKB_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("FKB_STATE_FILE", str(tmp_path / "state.json"))
    monkeypatch.setenv("FKB_DB_URL", f"sqlite:///{tmp_path / 'history.db'}")
    monkeypatch.setenv("FKB_MOK_KEY_DIR", str(tmp_path / "mok"))
    return tmp_path


@pytest.fixture
def engine_cls():
    with patch("fedora_kernel_builder.workflow.WorkflowEngine") as cls:
        yield cls


def _completed(**kwargs) -> WorkflowOutcome:
    return WorkflowOutcome(status=OutcomeStatus.COMPLETED, message="done", **kwargs)


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Fedora kernel builder" in result.stdout

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    @pytest.mark.parametrize(
        "command",
        ["run", "setup-signing", "sign", "status", "install-firmware", "archive",
         "abort", "restore-spec", "history", "config"],
    )
    def test_command_help(self, command: str) -> None:
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


class TestCLIConfig:
    """Test the config command."""

    def test_config_command(self, isolated_env: Path) -> None:
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Signing:" in result.stdout
        assert "(prompt)" in result.stdout

    def test_config_json(self, isolated_env: Path) -> None:
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["work_dir"] == str(isolated_env / "work")

    def test_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("kernel_version: 6.18.7\nbuild_id: .audio\n")

        result = runner.invoke(app, ["--config", str(path), "config", "--json"])

        data = json.loads(result.stdout)
        assert data["kernel_version"] == "6.18.7"
        assert data["build_id"] == ".audio"

    def test_invalid_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("mok_key_size: 512\n")

        result = runner.invoke(app, ["-c", str(path), "config"])

        assert result.exit_code == 1
        assert "Error:" in result.stdout


class TestCLIRun:
    """Test the run command with a mocked engine."""

    def test_completed(self, engine_cls: MagicMock, tmp_path: Path) -> None:
        artifact = BuildArtifact(rpm_dir=tmp_path / "x86_64", kernel_release=KERNEL_RELEASE)
        engine_cls.return_value.run.return_value = _completed(artifact=artifact, signed=True)

        result = runner.invoke(app, ["run", "--version", "6.18.7", "--non-interactive"])

        assert result.exit_code == 0
        assert "BUILD AND INSTALLATION COMPLETE" in result.stdout
        assert KERNEL_RELEASE in result.stdout
        config = engine_cls.call_args.args[0]
        assert config.kernel_version == "6.18.7"
        assert type(engine_cls.call_args.args[2]).__name__ == "NonInteractiveDecider"

    def test_flags_become_overrides(self, engine_cls: MagicMock) -> None:
        engine_cls.return_value.run.return_value = _completed()

        runner.invoke(app, ["run", "--skip-setup", "--skip-cleanup", "--no-sign"])

        config = engine_cls.call_args.args[0]
        assert config.skip_setup and config.skip_cleanup
        assert config.enable_signing is False

    def test_log_file_created(self, engine_cls: MagicMock, isolated_env: Path) -> None:
        engine_cls.return_value.run.return_value = _completed()

        result = runner.invoke(app, ["run"])

        assert "Log file:" in result.stdout
        assert len(list((isolated_env / "work" / "logs").glob("build-*.log"))) == 1

    def test_suspended_exits_zero(self, engine_cls: MagicMock) -> None:
        engine_cls.return_value.run.return_value = WorkflowOutcome(
            status=OutcomeStatus.SUSPENDED, message="Key queued for enrollment, reboot required"
        )

        result = runner.invoke(app, ["run"])

        assert result.exit_code == 0
        assert "REBOOT REQUIRED" in result.stdout

    def test_build_failure_exits_one(self, engine_cls: MagicMock) -> None:
        engine_cls.return_value.run.side_effect = BuildFailed(
            "Kernel build failed (exit 2)", diagnostic="error: Bad exit status", hint="See log"
        )

        result = runner.invoke(app, ["run"])

        assert result.exit_code == 1
        assert "Kernel build failed" in result.stdout
        assert "error: Bad exit status" in result.stdout
        assert "Hint: See log" in result.stdout

    def test_tool_missing_exits_one(self, engine_cls: MagicMock) -> None:
        engine_cls.return_value.run.side_effect = ToolMissing("fedpkg")

        result = runner.invoke(app, ["run"])
        assert result.exit_code == 1
        assert "fedpkg" in result.stdout

    def test_cancel_exits_130(self, engine_cls: MagicMock) -> None:
        engine_cls.return_value.run.side_effect = OperatorCancelled()

        result = runner.invoke(app, ["run"])
        assert result.exit_code == 130

    def test_interrupt_exits_130(self, engine_cls: MagicMock) -> None:
        engine_cls.return_value.run.side_effect = KeyboardInterrupt

        result = runner.invoke(app, ["run"])
        assert result.exit_code == 130
        assert "Interrupted" in result.stdout


class TestCLIStateCommands:
    """Test abort, restore-spec and history."""

    def test_abort(self, isolated_env: Path) -> None:
        StateStore(isolated_env / "state.json").save(WorkflowState(phase=Phase.BUILD))

        result = runner.invoke(app, ["abort"])
        assert result.exit_code == 0
        assert "discarded" in result.stdout
        assert not (isolated_env / "state.json").exists()

        result = runner.invoke(app, ["abort"])
        assert "No unfinished build" in result.stdout

    def test_restore_spec(self, isolated_env: Path) -> None:
        kernel_dir = isolated_env / "work" / "kernel"
        kernel_dir.mkdir(parents=True)
        (kernel_dir / "kernel.spec").write_text("edited\n")
        (kernel_dir / "kernel.spec.orig").write_text(SPEC_TEXT)

        result = runner.invoke(app, ["restore-spec"])

        assert result.exit_code == 0
        assert (kernel_dir / "kernel.spec").read_text() == SPEC_TEXT

    def test_restore_spec_without_backup(self) -> None:
        result = runner.invoke(app, ["restore-spec"])
        assert result.exit_code == 1

    def test_history(self, isolated_env: Path) -> None:
        history = BuildHistory.open(f"sqlite:///{isolated_env / 'history.db'}")
        history.record(RunStatus.FAILED, kernel_version="6.18.3", error_message="prep failed")
        history.record(RunStatus.SUCCEEDED, kernel_version="6.18.7", kernel_release=KERNEL_RELEASE)

        result = runner.invoke(app, ["history", "--json"])
        data = json.loads(result.stdout)
        assert [r["kernel_version"] for r in data] == ["6.18.7", "6.18.3"]

        result = runner.invoke(app, ["history", "--status", "failed"])
        assert result.exit_code == 0
        assert "prep failed" in result.stdout
        assert "6.18.7" not in result.stdout

    def test_history_empty(self) -> None:
        result = runner.invoke(app, ["history"])
        assert result.exit_code == 0
        assert "No runs recorded" in result.stdout

    def test_history_invalid_status(self) -> None:
        result = runner.invoke(app, ["history", "--status", "bogus"])
        assert result.exit_code == 1
