"""Tests for the command invoker - headless code-generation CLI calls.

Tests cover:
- Command construction (flags, session resume, stdin binding)
- Successful payload validation
- Soft payload failures (non-JSON, schema mismatch)
- Transport failures (non-zero exit, spawn errors)
"""

from __future__ import annotations

import json
import subprocess

import pytest

from steward.core.invoker import CommandInvoker, InvokerConfig
from steward.core.models import ErrorCategory, InvocationRequest, InvocationResult


# =============================================================================
# Command Construction Tests
# =============================================================================


class TestBuildCommand:
    """Tests for argv construction."""

    def test_minimal_command(self):
        """Prompt, output format, model, tool allowlist and permission mode."""
        invoker = CommandInvoker(InvokerConfig(model="haiku"))

        cmd = invoker.build_command(InvocationRequest(prompt="List clients"))

        assert cmd == [
            "claude", "-p", "List clients",
            "--output-format", "json",
            "--model", "haiku",
            "--allowedTools", "Bash,Read,Write,Edit,Glob,Grep",
            "--permission-mode", "acceptEdits",
        ]

    def test_resume_and_system_prompt(self):
        """Session ID and supplemental instructions add their flags."""
        invoker = CommandInvoker()

        cmd = invoker.build_command(
            InvocationRequest(prompt="continue", session_id="sess-1", system_prompt="Be brief")
        )

        assert cmd[cmd.index("--resume") + 1] == "sess-1"
        assert cmd[cmd.index("--append-system-prompt") + 1] == "Be brief"

    def test_no_resume_flag_without_session(self):
        """The invoker never fabricates a session ID."""
        cmd = CommandInvoker().build_command(InvocationRequest(prompt="hello"))

        assert "--resume" not in cmd

    def test_prompt_with_quotes_passed_verbatim(self):
        """argv form keeps shell metacharacters literal."""
        prompt = 'say "hi" && rm -rf $HOME `whoami`'
        cmd = CommandInvoker().build_command(InvocationRequest(prompt=prompt))

        assert cmd[2] == prompt

    def test_custom_allowed_tools(self):
        invoker = CommandInvoker(InvokerConfig(allowed_tools=["Read", "Grep"]))

        cmd = invoker.build_command(InvocationRequest(prompt="x"))

        assert cmd[cmd.index("--allowedTools") + 1] == "Read,Grep"

    def test_stdin_is_devnull_and_cwd_is_sandbox(self, mock_cli_success, invoker_config):
        """The CLI runs non-interactively inside the sandbox directory."""
        CommandInvoker(invoker_config).execute(InvocationRequest(prompt="x"))

        kwargs = mock_cli_success.call_args.kwargs
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["cwd"] == invoker_config.sandbox_dir
        assert "timeout" not in kwargs
        assert "shell" not in kwargs

    def test_exactly_one_invocation(self, mocker, completed):
        """No retries, even on failure."""
        mock_run = mocker.patch("subprocess.run", return_value=completed(1, "", "boom"))

        CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert mock_run.call_count == 1


# =============================================================================
# Success Tests
# =============================================================================


class TestSuccessfulInvocation:
    """Tests for schema-conformant CLI output."""

    def test_result_equals_payload_plus_success(self, mock_cli_success, cli_payload):
        """A valid payload comes back field for field, plus success=True."""
        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        dumped = result.model_dump(mode="json", by_alias=True, exclude_none=True)
        assert dumped.pop("success") is True
        assert dumped.pop("payload_valid") is True
        assert dumped == cli_payload

    def test_session_id_returned(self, mock_cli_success, cli_payload):
        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.session_id == cli_payload["session_id"]
        assert result.model_usage["claude-haiku"].cost_usd == pytest.approx(0.0123)
        assert result.usage.cache_creation.ephemeral_5m_input_tokens == 2048
        assert result.error is None
        assert result.error_category is None

    def test_unknown_fields_dropped(self, mocker, completed):
        payload = {"result": "ok", "brand_new_field": 42}
        mocker.patch("subprocess.run", return_value=completed(stdout=json.dumps(payload)))

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.success is True
        assert result.result == "ok"
        assert not hasattr(result, "brand_new_field")

    def test_stderr_attached_as_warning(self, mocker, completed):
        mocker.patch(
            "subprocess.run",
            return_value=completed(stdout='{"result": "ok"}', stderr="deprecation notice\n"),
        )

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.success is True
        assert result.error == "stderr: deprecation notice"


# =============================================================================
# Payload Failure Tests
# =============================================================================


class TestPayloadFailure:
    """Exit 0 with unusable stdout is a soft failure."""

    def test_non_json_stdout(self, mocker, completed):
        mocker.patch("subprocess.run", return_value=completed(stdout="plain text answer"))

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.success is True
        assert result.result == "plain text answer"
        assert result.payload_valid is False
        assert "JSON parse/validation error" in result.error
        assert result.error_category == ErrorCategory.PAYLOAD

    def test_schema_mismatch(self, mocker, completed):
        mocker.patch(
            "subprocess.run",
            return_value=completed(stdout='{"num_turns": "many", "is_error": "nope"}'),
        )

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.success is True
        assert result.result == '{"num_turns": "many", "is_error": "nope"}'
        assert "JSON parse/validation error" in result.error

    def test_parse_error_combined_with_stderr(self, mocker, completed):
        mocker.patch("subprocess.run", return_value=completed(stdout="oops", stderr="warn"))

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.error.startswith("JSON parse/validation error")
        assert result.error.endswith("; stderr: warn")


# =============================================================================
# Transport Failure Tests
# =============================================================================


class TestTransportFailure:
    """Non-zero exit and spawn errors."""

    def test_nonzero_exit_keeps_partial_stdout(self, mocker, completed):
        mocker.patch(
            "subprocess.run",
            return_value=completed(2, stdout="partial", stderr="Error: invalid session"),
        )

        result = CommandInvoker().execute(InvocationRequest(prompt="x", session_id="bad"))

        assert result.success is False
        assert result.result == "partial"
        assert result.error == "Error: invalid session"
        assert result.error_category == ErrorCategory.TRANSPORT

    def test_nonzero_exit_without_stderr(self, mocker, completed):
        mocker.patch("subprocess.run", return_value=completed(1))

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert result.success is False
        assert "exit code 1" in result.error

    def test_spawn_failure(self, mocker):
        mocker.patch("subprocess.run", side_effect=FileNotFoundError("claude not found"))

        result = CommandInvoker().execute(InvocationRequest(prompt="x"))

        assert isinstance(result, InvocationResult)
        assert result.success is False
        assert result.result == ""
        assert "claude not found" in result.error


# =============================================================================
# Output Limit Tests
# =============================================================================


class TestOutputLimits:

    def test_oversized_stdout_is_soft_failure(self, mocker, completed):
        mocker.patch(
            "subprocess.run",
            return_value=completed(stdout=json.dumps({"result": "y" * 500})),
        )

        result = CommandInvoker(InvokerConfig(max_output_bytes=100)).execute(
            InvocationRequest(prompt="x")
        )

        assert result.success is True
        assert result.payload_valid is False
        assert "OUTPUT TRUNCATED" in result.result
