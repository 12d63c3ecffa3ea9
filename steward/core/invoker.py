"""Headless invocation of the code-generation CLI.

One call to CommandInvoker.execute() runs exactly one `claude -p` process:
- No shell: argv is passed as a list, so prompts need no quoting
- stdin is /dev/null so the CLI can never block waiting for input
- No retries and no timeout; the CLI's own behavior bounds the call
- Never raises: every exit path returns an InvocationResult

Session continuity is the caller's job. A session_id returned by one call
may be passed back on a later call; the invoker never invents one.
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from steward.core.models import ErrorCategory, InvocationRequest, InvocationResult
from steward.core.parser import InvalidOutputError, ParsingError, parse_cli_response
from steward.core.utils import coerce_text, truncate_output

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]


@dataclass
class InvokerConfig:
    """Configuration for the code-generation CLI."""

    cli_binary: str = "claude"
    model: str = "haiku"
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    permission_mode: str = "acceptEdits"

    # Working directory for the CLI; generated scripts land here
    sandbox_dir: str = "/tmp/claude-cli-sandbox"

    # Output limits (prevent OOM from unbounded output)
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB


class CommandInvoker:
    """Run the code-generation CLI in headless mode.

    Holds only immutable configuration, so one instance may serve many
    concurrent calls from different threads.
    """

    def __init__(self, config: InvokerConfig | None = None):
        self.config = config or InvokerConfig()

    def build_command(self, request: InvocationRequest) -> list[str]:
        """Build argv for one invocation."""
        cmd = [
            self.config.cli_binary,
            "-p", request.prompt,
            "--output-format", "json",
            "--model", self.config.model,
        ]
        if request.session_id:
            cmd.extend(["--resume", request.session_id])
        if request.system_prompt:
            cmd.extend(["--append-system-prompt", request.system_prompt])
        cmd.extend([
            "--allowedTools", ",".join(self.config.allowed_tools),
            "--permission-mode", self.config.permission_mode,
        ])
        return cmd

    def execute(self, request: InvocationRequest) -> InvocationResult:
        """Run one invocation and classify its outcome.

        Returns:
            InvocationResult. success=False only for transport failures
            (spawn error, non-zero exit). A payload that fails validation is a
            soft failure: success=True with the raw stdout kept in `result`.
        """
        cmd = self.build_command(request)
        max_bytes = self.config.max_output_bytes
        logger.info(
            f"Invoking {self.config.cli_binary} (model={self.config.model}, "
            f"resume={'yes' if request.session_id else 'no'}, "
            f"prompt={len(request.prompt)} chars)"
        )

        start = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                cwd=self.config.sandbox_dir,
            )
        except OSError as e:
            # Binary missing, cwd missing, permission denied
            logger.error(f"Failed to spawn {self.config.cli_binary}: {e}")
            return InvocationResult(
                success=False,
                result="",
                error=str(e),
                error_category=ErrorCategory.TRANSPORT,
            )

        elapsed = time.monotonic() - start
        stdout = truncate_output(coerce_text(proc.stdout), max_bytes)
        stderr = truncate_output(coerce_text(proc.stderr), max_bytes).strip()

        if proc.returncode != 0:
            logger.warning(
                f"{self.config.cli_binary} exited with code {proc.returncode} "
                f"after {elapsed:.1f}s"
            )
            return InvocationResult(
                success=False,
                result=stdout,
                error=stderr or f"Command failed with exit code {proc.returncode}",
                error_category=ErrorCategory.TRANSPORT,
            )

        logger.info(f"{self.config.cli_binary} completed in {elapsed:.1f}s")
        stderr_warning = f"stderr: {stderr}" if stderr else None

        try:
            response = parse_cli_response(stdout)
        except (ParsingError, InvalidOutputError) as e:
            logger.warning(f"CLI output failed validation, returning raw stdout: {e}")
            parse_error = f"JSON parse/validation error: {e}"
            return InvocationResult(
                success=True,
                result=stdout,
                payload_valid=False,
                error=f"{parse_error}; {stderr_warning}" if stderr_warning else parse_error,
                error_category=ErrorCategory.PAYLOAD,
            )

        return InvocationResult(
            **response.model_dump(),
            success=True,
            error=stderr_warning,
        )


def ensure_sandbox_dir(config: InvokerConfig) -> Path:
    """Create the CLI working directory if it does not exist."""
    path = Path(config.sandbox_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path
