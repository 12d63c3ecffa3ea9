"""Sandboxed execution for generated scripts.

Two strategies behind one interface:
1. DirectSandbox - Runs the interpreter as a child process rooted at the sandbox dir
2. IsolatedSandbox - Runs the script in a fresh Docker container (sandbox dir mounted read-only)

Both share the same pre-execution validation. Nothing is spawned unless both
credential tokens are present and the script path stays inside the sandbox.

SECURITY: Credential tokens travel ONLY through the child environment.
They never appear in argv (visible in `ps`), in files, or in log lines.
"""

import atexit
import logging
import os
import re
import shutil
import signal
import subprocess
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any

from pydantic import BaseModel, Field

from steward.core.models import ErrorCategory
from steward.core.utils import coerce_text, truncate_output

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """Error in sandbox execution."""

    pass


class DockerNotAvailableError(SandboxError):
    """Docker is required but not available."""

    pass


class ScriptExecutionRequest(BaseModel):
    """A generated script to run. Credentials are supplied separately."""

    script_path: str = Field(..., min_length=1)
    args: list[str] = Field(default_factory=list)


class ScriptExecutionResult(BaseModel):
    """Result of a sandboxed script execution."""

    success: bool
    stdout: str = ""
    stderr: str | None = None
    exit_code: int | None = None
    container_id: str | None = None  # Isolated strategy only; kept for inspection
    error: str | None = None
    error_category: ErrorCategory | None = None
    timed_out: bool = False


@dataclass(frozen=True)
class SandboxCredentials:
    """The two opaque tokens a script needs for scoped data access.

    Supplied out of band (runtime context), never inside the request body.
    repr is masked so tokens never leak through logging or tracebacks.
    """

    business_token: Any = None
    auth_token: Any = None

    @classmethod
    def from_mapping(cls, context: Mapping[str, Any] | None) -> "SandboxCredentials":
        """Read tokens from a runtime context mapping (either naming style)."""
        context = context or {}
        return cls(
            business_token=context.get("business_token", context.get("businessToken")),
            auth_token=context.get("auth_token", context.get("authToken")),
        )

    def is_valid(self) -> bool:
        return all(
            isinstance(token, str) and token
            for token in (self.business_token, self.auth_token)
        )

    def __repr__(self) -> str:
        return "SandboxCredentials(business_token=***, auth_token=***)"


@dataclass
class SandboxConfig:
    """Configuration for script execution."""

    # Root directory holding generated scripts
    sandbox_dir: str = "/tmp/claude-cli-sandbox"

    # Direct strategy: interpreter argv prefix
    interpreter: list[str] = field(default_factory=lambda: ["python3"])

    # Isolated strategy: pre-built image containing the interpreter
    image: str = "steward-sandbox:latest"
    container_workdir: str = "/sandbox"
    container_prefix: str = "steward-sandbox"
    network: str | None = None  # None = Docker default bridge (scripts call data APIs)

    # Resource limits (isolated strategy)
    memory_limit: str = "1g"
    cpu_limit: str = "1"
    pids_limit: int = 128

    # Timeouts and output limits (both strategies)
    timeout_seconds: float = 60.0
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB

    # Environment variable names the generated scripts read
    business_token_env: str = "businessToken"
    auth_token_env: str = "authToken"

    # Optional writable subdirectory for script output files.
    # Isolated strategy mounts it rw at /output; both strategies export
    # STEWARD_OUTPUT_DIR. When unset, stdout is the only output channel.
    output_subdir: str | None = None

    # Security settings
    require_docker: bool = True  # Fail if Docker unavailable (isolated strategy)


class ContainerRegistry:
    """Track running containers so they are killed on interpreter exit.

    Containers are killed, never removed: stopped containers stay around for
    log inspection and are reclaimed by external tooling.

    Uses RLock (reentrant lock) to prevent deadlock when signal handlers
    call kill_all() while the lock is already held by the same thread.
    """

    def __init__(self) -> None:
        self._containers: set[str] = set()
        self._lock = threading.RLock()

        atexit.register(self.kill_all)
        # signal.signal only works from the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

    def add(self, container_name: str) -> None:
        with self._lock:
            self._containers.add(container_name)

    def remove(self, container_name: str) -> None:
        with self._lock:
            self._containers.discard(container_name)

    def kill_all(self) -> None:
        """Kill all tracked containers."""
        with self._lock:
            for container_name in list(self._containers):
                _kill_container(container_name)
            self._containers.clear()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.kill_all()
        raise SystemExit(128 + signum)


_registry: ContainerRegistry | None = None
_registry_lock = threading.Lock()


def _get_registry() -> ContainerRegistry:
    """Create the container registry on first isolated execution."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ContainerRegistry()
        return _registry


def _kill_container(container_name: str) -> None:
    try:
        subprocess.run(
            ["docker", "kill", container_name],
            capture_output=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Failed to kill container '{container_name}': {e}")


def _validate_docker() -> None:
    """Validate Docker is available. Raises if not."""
    if not shutil.which("docker"):
        raise DockerNotAvailableError("Docker binary not found in PATH")

    result = subprocess.run(
        ["docker", "version"],
        capture_output=True,
        timeout=5,
    )
    if result.returncode != 0:
        raise DockerNotAvailableError(
            f"Docker is not running or not accessible: {result.stderr.decode()}"
        )


def _sanitize_container_name_component(name: str) -> str:
    """Sanitize a string for use in Docker container names.

    Docker container names must match: [a-zA-Z0-9][a-zA-Z0-9_.-]*
    """
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "-", name)
    sanitized = sanitized.lstrip("_.-")
    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized[:48]
    if not sanitized:
        sanitized = "sandbox"
    return sanitized.lower()


def generate_container_name(prefix: str) -> str:
    """Unique container name: millisecond timestamp plus random suffix.

    The suffix keeps names distinct when several executions start within
    the same millisecond.
    """
    safe_prefix = _sanitize_container_name_component(prefix)
    return f"{safe_prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _get_docker_user() -> str | None:
    """Get the current user's UID:GID for Docker --user flag.

    Can be overridden via STEWARD_DOCKER_USER env var.
    Returns None on Windows (Docker Desktop handles permissions).
    """
    env_override = os.environ.get("STEWARD_DOCKER_USER")
    if env_override:
        return env_override
    if os.name == "nt":
        return None
    return f"{os.getuid()}:{os.getgid()}"


def _has_traversal(script_path: str) -> bool:
    """True if any path segment is '..' (POSIX or Windows separators)."""
    parts = set(PurePosixPath(script_path).parts) | set(PureWindowsPath(script_path).parts)
    return ".." in parts


def _precondition_failure(message: str) -> ScriptExecutionResult:
    return ScriptExecutionResult(
        success=False,
        stdout="",
        exit_code=-1,
        error=message,
        error_category=ErrorCategory.PRECONDITION,
    )


class ScriptSandbox(ABC):
    """Base class for script execution strategies.

    Subclasses implement _run(). execute() owns validation and guarantees
    that no exception crosses the boundary.
    """

    strategy = "base"

    def __init__(self, config: SandboxConfig | None = None):
        self.config = config or SandboxConfig()

    def resolve_script(self, script_path: str) -> Path | None:
        """Resolve script_path (following symlinks) under the sandbox root.

        Returns None if the resolved path lies outside the sandbox directory.
        """
        root = Path(self.config.sandbox_dir).resolve()
        resolved = (root / script_path).resolve()
        if not resolved.is_relative_to(root):
            return None
        return resolved

    def validate(
        self,
        script_path: str,
        credentials: SandboxCredentials,
    ) -> ScriptExecutionResult | None:
        """Pre-execution checks. Returns a failure result, or None if OK.

        Spawns nothing and writes nothing. The only filesystem access is
        resolving the script path and checking that it is a regular file.
        """
        if not credentials.is_valid():
            return _precondition_failure(
                "Missing required tokens (businessToken or authToken) in runtime context"
            )
        if not script_path or _has_traversal(script_path):
            return _precondition_failure("Invalid script path: path traversal not allowed")
        if script_path.startswith("-"):
            return _precondition_failure("Invalid script path: must not start with '-'")
        if PurePosixPath(script_path).is_absolute() or PureWindowsPath(script_path).is_absolute():
            return _precondition_failure(
                "Invalid script path: must be relative to the sandbox directory"
            )

        resolved = self.resolve_script(script_path)
        if resolved is None:
            return _precondition_failure(
                "Invalid script path: resolves outside the sandbox directory"
            )
        if not resolved.is_file():
            return _precondition_failure(f"Script not found in sandbox: {script_path}")
        return None

    def execute(
        self,
        script_path: str,
        args: list[str] | None = None,
        credentials: SandboxCredentials | Mapping[str, Any] | None = None,
    ) -> ScriptExecutionResult:
        """Run a generated script in the sandbox.

        Args:
            script_path: Path relative to the sandbox directory
            args: Optional arguments passed to the script
            credentials: Tokens from the runtime context (never the request body)

        Returns:
            ScriptExecutionResult; never raises
        """
        if not isinstance(credentials, SandboxCredentials):
            credentials = SandboxCredentials.from_mapping(credentials)

        failure = self.validate(script_path, credentials)
        if failure is not None:
            logger.warning(f"[{self.strategy}] Rejected '{script_path}': {failure.error}")
            return failure

        logger.info(f"[{self.strategy}] Executing {script_path} in {self.config.sandbox_dir}")
        try:
            return self._run(script_path, list(args or []), credentials)
        except Exception as e:
            logger.error(f"[{self.strategy}] Execution of '{script_path}' failed: {e}")
            return ScriptExecutionResult(
                success=False,
                stdout="",
                exit_code=-1,
                error=str(e),
                error_category=ErrorCategory.PROCESS,
            )

    def run_request(
        self,
        request: ScriptExecutionRequest,
        credentials: SandboxCredentials | Mapping[str, Any] | None = None,
    ) -> ScriptExecutionResult:
        return self.execute(request.script_path, request.args, credentials)

    def _resolved(self, script_path: str) -> Path:
        resolved = self.resolve_script(script_path)
        if resolved is None:
            raise SandboxError(f"Script path escaped the sandbox: {script_path}")
        return resolved

    @abstractmethod
    def _run(
        self,
        script_path: str,
        args: list[str],
        credentials: SandboxCredentials,
    ) -> ScriptExecutionResult:
        """Run an already-validated script."""

    def _token_env(self, credentials: SandboxCredentials) -> dict[str, str]:
        return {
            self.config.business_token_env: credentials.business_token,
            self.config.auth_token_env: credentials.auth_token,
        }

    def _finish(
        self,
        proc: subprocess.CompletedProcess,
        container_id: str | None = None,
    ) -> ScriptExecutionResult:
        max_bytes = self.config.max_output_bytes
        stdout = truncate_output(coerce_text(proc.stdout), max_bytes).strip()
        stderr = truncate_output(coerce_text(proc.stderr), max_bytes).strip()

        if proc.returncode == 0:
            logger.info(f"[{self.strategy}] Execution completed successfully")
            return ScriptExecutionResult(
                success=True,
                stdout=stdout,
                stderr=stderr or None,
                exit_code=0,
                container_id=container_id,
            )

        logger.warning(f"[{self.strategy}] Script exited with code {proc.returncode}")
        return ScriptExecutionResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
            container_id=container_id,
            error=f"Script exited with code {proc.returncode}",
            error_category=ErrorCategory.PROCESS,
        )

    def _timeout(
        self,
        exc: subprocess.TimeoutExpired,
        container_id: str | None = None,
    ) -> ScriptExecutionResult:
        max_bytes = self.config.max_output_bytes
        logger.warning(
            f"[{self.strategy}] Execution timed out after {self.config.timeout_seconds}s"
        )
        return ScriptExecutionResult(
            success=False,
            stdout=truncate_output(coerce_text(exc.stdout), max_bytes).strip(),
            stderr=truncate_output(coerce_text(exc.stderr), max_bytes).strip(),
            exit_code=-1,
            container_id=container_id,
            error=f"Script execution timed out after {self.config.timeout_seconds}s",
            error_category=ErrorCategory.TIMEOUT,
            timed_out=True,
        )


class DirectSandbox(ScriptSandbox):
    """Run the interpreter as a child process rooted at the sandbox directory.

    The child inherits the host environment (PATH etc.) plus the two tokens.
    subprocess.run kills the child when the timeout expires.
    """

    strategy = "direct"

    def _run(
        self,
        script_path: str,
        args: list[str],
        credentials: SandboxCredentials,
    ) -> ScriptExecutionResult:
        # Absolute resolved path: never parsed as an interpreter option
        cmd = [*self.config.interpreter, str(self._resolved(script_path)), *args]
        env = {**os.environ, **self._token_env(credentials)}
        if self.config.output_subdir:
            output_dir = Path(self.config.sandbox_dir) / self.config.output_subdir
            env["STEWARD_OUTPUT_DIR"] = str(output_dir)

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=self.config.sandbox_dir,
                env=env,
                timeout=self.config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            return self._timeout(e)
        except OSError as e:
            logger.error(f"[direct] Failed to spawn interpreter: {e}")
            return ScriptExecutionResult(
                success=False,
                stdout="",
                exit_code=-1,
                error=str(e),
                error_category=ErrorCategory.PROCESS,
            )
        return self._finish(proc)


class IsolatedSandbox(ScriptSandbox):
    """Run the script in a fresh, uniquely named Docker container.

    - Sandbox dir mounted read-only; root filesystem read-only with tmpfs /tmp
    - Tokens passed as `--env=NAME` (no value): the docker client copies
      them from its own environment, so values never reach argv
    - No --rm: the container survives for `docker logs`/`docker inspect`
    - On timeout the container is killed
    """

    strategy = "isolated"

    def __init__(self, config: SandboxConfig | None = None):
        super().__init__(config)
        if self.config.require_docker:
            _validate_docker()

    def build_command(self, container_name: str, script_path: str, args: list[str]) -> list[str]:
        """Build the `docker run` argv. Contains token NAMES only."""
        sandbox_dir = Path(self.config.sandbox_dir).resolve()
        workdir = self.config.container_workdir
        cmd = [
            "docker", "run",
            f"--name={container_name}",
            f"--volume={sandbox_dir}:{workdir}:ro",
            f"--workdir={workdir}",
        ]
        if self.config.output_subdir:
            output_dir = sandbox_dir / self.config.output_subdir
            cmd.extend([
                f"--volume={output_dir}:/output:rw",
                "--env=STEWARD_OUTPUT_DIR=/output",
            ])
        if self.config.network:
            cmd.append(f"--network={self.config.network}")

        docker_user = _get_docker_user()
        if docker_user:
            cmd.append(f"--user={docker_user}")

        cmd.extend([
            "--read-only",
            "--tmpfs=/tmp:size=256m",
            f"--memory={self.config.memory_limit}",
            f"--cpus={self.config.cpu_limit}",
            f"--pids-limit={self.config.pids_limit}",
            "--security-opt=no-new-privileges:true",
            "--cap-drop=ALL",
            # Pass-through from the docker client's environment
            f"--env={self.config.business_token_env}",
            f"--env={self.config.auth_token_env}",
            self.config.image,
            *self.config.interpreter,
            script_path,
            *args,
        ])
        return cmd

    def _run(
        self,
        script_path: str,
        args: list[str],
        credentials: SandboxCredentials,
    ) -> ScriptExecutionResult:
        container_name = generate_container_name(self.config.container_prefix)
        root = Path(self.config.sandbox_dir).resolve()
        container_script = self._resolved(script_path).relative_to(root).as_posix()
        cmd = self.build_command(container_name, container_script, args)
        env = {**os.environ, **self._token_env(credentials)}

        registry = _get_registry()
        registry.add(container_name)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=env,
                timeout=self.config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            # Killing the docker client does not stop the container
            _kill_container(container_name)
            return self._timeout(e, container_id=container_name)
        except OSError as e:
            logger.error(f"[isolated] Failed to launch container: {e}")
            return ScriptExecutionResult(
                success=False,
                stdout="",
                exit_code=-1,
                container_id=container_name,
                error=str(e),
                error_category=ErrorCategory.PROCESS,
            )
        finally:
            registry.remove(container_name)

        logger.info(f"[isolated] Container '{container_name}' kept for inspection")
        return self._finish(proc, container_id=container_name)


SANDBOX_STRATEGIES: dict[str, type[ScriptSandbox]] = {
    "direct": DirectSandbox,
    "isolated": IsolatedSandbox,
}


def get_script_sandbox(strategy: str, config: SandboxConfig | None = None) -> ScriptSandbox:
    """Get a sandbox for the named strategy ("direct" or "isolated")."""
    try:
        sandbox_cls = SANDBOX_STRATEGIES[strategy]
    except KeyError:
        raise SandboxError(
            f"Unknown sandbox strategy '{strategy}'. "
            f"Available: {', '.join(sorted(SANDBOX_STRATEGIES))}"
        ) from None
    return sandbox_cls(config)
