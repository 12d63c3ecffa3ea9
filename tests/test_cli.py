"""Tests for CLI commands.

Tests all steward CLI commands using Click's CliRunner:
- init: Initialize project
- ask: Invoke the code-generation CLI
- exec: Run a generated script in the sandbox
- payment start/pending/status/approve/reject/review: Approval workflow
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from steward.cli import main
from steward.core.config import SANDBOX_DIR_ENV
from steward.core.models import RunStatus
from steward.core.state import Database


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def isolated_fs(cli_runner, tmp_path, monkeypatch):
    """Isolated working directory with the sandbox dir pointed at tmp_path."""
    sandbox = tmp_path / "sandbox"
    monkeypatch.setenv(SANDBOX_DIR_ENV, str(sandbox))
    monkeypatch.delenv("STEWARD_BUSINESS_TOKEN", raising=False)
    monkeypatch.delenv("STEWARD_AUTH_TOKEN", raising=False)
    with cli_runner.isolated_filesystem(temp_dir=tmp_path):
        yield Path.cwd()


def _db() -> Database:
    return Database(Path.cwd() / ".steward" / "state.db")


class TestInitCommand:
    """Tests for 'steward init' command."""

    def test_init_creates_config_and_database(self, cli_runner, isolated_fs, tmp_path):
        result = cli_runner.invoke(main, ["init"])

        assert result.exit_code == 0
        assert "Project initialized!" in result.output
        config = yaml.safe_load(Path(".steward/config.yaml").read_text())
        assert config["invoker"]["model"] == "haiku"
        assert Path(".steward/state.db").exists()
        assert (tmp_path / "sandbox").is_dir()

    def test_init_already_initialized(self, cli_runner, isolated_fs):
        cli_runner.invoke(main, ["init"])

        result = cli_runner.invoke(main, ["init"])

        assert result.exit_code == 0
        assert "already initialized" in result.output

    def test_invalid_config_reported(self, cli_runner, isolated_fs):
        Path(".steward").mkdir()
        Path(".steward/config.yaml").write_text("invoker:\n  modle: haiku\n")

        result = cli_runner.invoke(main, ["ask", "hello"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestAskCommand:
    """Tests for 'steward ask'."""

    def test_ask_success(self, cli_runner, isolated_fs, mock_cli_success):
        result = cli_runner.invoke(main, ["ask", "List clients by city"])

        assert result.exit_code == 0
        assert "Created clients_by_city.py" in result.output
        assert "Session ID" in result.output
        cmd = mock_cli_success.call_args.args[0]
        assert cmd[:3] == ["claude", "-p", "List clients by city"]

    def test_ask_passes_session(self, cli_runner, isolated_fs, mock_cli_success):
        cli_runner.invoke(main, ["ask", "continue", "--session-id", "sess-9"])

        cmd = mock_cli_success.call_args.args[0]
        assert cmd[cmd.index("--resume") + 1] == "sess-9"

    def test_ask_json_output(self, cli_runner, isolated_fs, mock_cli_success, cli_payload):
        result = cli_runner.invoke(main, ["ask", "x", "--json"])

        data = json.loads(result.output)
        assert data["success"] is True
        assert data["session_id"] == cli_payload["session_id"]
        assert "modelUsage" in data

    def test_ask_transport_failure(self, cli_runner, isolated_fs, mocker, completed):
        mocker.patch("subprocess.run", return_value=completed(1, "", "auth required"))

        result = cli_runner.invoke(main, ["ask", "x"])

        assert result.exit_code == 1
        assert "auth required" in result.output


class TestExecCommand:
    """Tests for 'steward exec'."""

    def test_exec_without_tokens(self, cli_runner, isolated_fs, mocker):
        mock_run = mocker.patch("subprocess.run")

        result = cli_runner.invoke(main, ["exec", "report.py"])

        assert result.exit_code == 1
        assert "Missing required tokens" in result.output
        mock_run.assert_not_called()

    def test_exec_runs_script(self, cli_runner, isolated_fs, tmp_path, monkeypatch):
        sandbox = tmp_path / "sandbox"
        sandbox.mkdir()
        (sandbox / "hello.py").write_text(
            "import os, sys\nprint('hi', os.environ['authToken'], *sys.argv[1:])\n"
        )
        Path(".steward").mkdir()
        Path(".steward/config.yaml").write_text(
            yaml.safe_dump({"sandbox": {"interpreter": [sys.executable]}})
        )
        monkeypatch.setenv("STEWARD_BUSINESS_TOKEN", "b")
        monkeypatch.setenv("STEWARD_AUTH_TOKEN", "a")

        result = cli_runner.invoke(main, ["exec", "hello.py", "--city", "Berlin"])

        assert result.exit_code == 0
        assert "hi a --city Berlin" in result.output


class TestPaymentCommands:
    """Tests for 'steward payment ...'."""

    def _start(self, cli_runner, amount: str) -> str:
        result = cli_runner.invoke(
            main,
            ["payment", "start", "--amount", amount, "--recipient", "Acme", "--description", "Q3"],
        )
        assert result.exit_code == 0
        return _db().list_runs()[0].run_id

    def test_small_payment_processed(self, cli_runner, isolated_fs):
        run_id = self._start(cli_runner, "100")

        run = _db().get_run(run_id)
        assert run.status == RunStatus.SUCCESS
        assert run.result["status"] == "processed"

    def test_large_payment_pending(self, cli_runner, isolated_fs):
        run_id = self._start(cli_runner, "5000")

        result = cli_runner.invoke(main, ["payment", "pending"])

        assert result.exit_code == 0
        assert _db().get_run(run_id).status == RunStatus.SUSPENDED
        assert "Acme" in result.output

    def test_approve(self, cli_runner, isolated_fs):
        run_id = self._start(cli_runner, "5000")

        result = cli_runner.invoke(
            main, ["payment", "approve", run_id, "--approver", "Jane"]
        )

        assert result.exit_code == 0
        run = _db().get_run(run_id)
        assert run.status == RunStatus.SUCCESS
        assert run.result["status"] == "processed"

    def test_reject(self, cli_runner, isolated_fs):
        run_id = self._start(cli_runner, "5000")

        result = cli_runner.invoke(
            main, ["payment", "reject", run_id, "--approver", "Jane", "--notes", "No"]
        )

        assert result.exit_code == 0
        assert _db().get_run(run_id).result["message"] == "Payment rejected by Jane. No"

    def test_approve_twice_fails(self, cli_runner, isolated_fs):
        run_id = self._start(cli_runner, "5000")
        cli_runner.invoke(main, ["payment", "approve", run_id, "--approver", "Jane"])

        result = cli_runner.invoke(main, ["payment", "approve", run_id, "--approver", "Jane"])

        assert result.exit_code == 1
        assert "not suspended" in result.output

    def test_status_unknown_run(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(main, ["payment", "status", "run-missing"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_status(self, cli_runner, isolated_fs):
        run_id = self._start(cli_runner, "100")

        result = cli_runner.invoke(main, ["payment", "status", run_id])

        assert result.exit_code == 0
        assert "success" in result.output

    def test_invalid_amount_fails(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(
            main,
            ["payment", "start", "--amount", "-5", "--recipient", "A", "--description", "d"],
        )

        assert result.exit_code == 1

    def test_review_interactive(self, cli_runner, isolated_fs, mocker):
        run_id = self._start(cli_runner, "5000")
        mocker.patch("rich.prompt.Confirm.ask", return_value=True)
        mocker.patch("rich.prompt.Prompt.ask", side_effect=["Jane", ""])

        result = cli_runner.invoke(main, ["payment", "review", run_id])

        assert result.exit_code == 0
        assert _db().get_run(run_id).status == RunStatus.SUCCESS

    def test_infinite_amount_rejected(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(
            main,
            ["payment", "start", "--amount", "inf", "--recipient", "A", "--description", "d"],
        )

        assert result.exit_code == 1
        run = _db().list_runs()[0]
        assert run.status == RunStatus.FAILED
        assert "Invalid workflow input" in run.error
