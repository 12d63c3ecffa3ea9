"""Project configuration loading.

Configuration lives in `.steward/config.yaml` (written by `steward init`).
Each section maps onto a dataclass with defaults, so a missing file or a
missing key always yields a working configuration. Values are passed to
components at construction; nothing reads module-level settings.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from steward.core.approval import ApprovalPolicy
from steward.core.invoker import InvokerConfig
from steward.sandbox.executor import SandboxConfig

CONFIG_DIR = ".steward"
CONFIG_FILE = "config.yaml"
SANDBOX_DIR_ENV = "STEWARD_SANDBOX_DIR"

DEFAULT_CONFIG_YAML = """# Steward configuration for this project

# Code-generation CLI invocation
invoker:
  cli_binary: claude
  model: haiku
  allowed_tools: [Bash, Read, Write, Edit, Glob, Grep]
  permission_mode: acceptEdits

# Generated script execution
sandbox:
  sandbox_dir: /tmp/claude-cli-sandbox  # STEWARD_SANDBOX_DIR overrides
  strategy: direct  # direct | isolated
  interpreter: [python3]
  image: steward-sandbox:latest
  timeout_seconds: 60
  max_output_bytes: 10485760  # 10MB

# Payment approval policy
approval:
  threshold: 1000  # amounts strictly above require human approval
  system_approver: System

database:
  path: .steward/state.db
"""


class ConfigError(Exception):
    """Configuration file is invalid."""

    pass


@dataclass
class StewardConfig:
    """Top-level configuration for one project."""

    invoker: InvokerConfig = field(default_factory=InvokerConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    approval: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    strategy: str = "direct"
    db_path: Path = Path(CONFIG_DIR) / "state.db"


def _build_section(cls: type, section: str, values: dict[str, Any]) -> Any:
    """Build a config dataclass, rejecting unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in '{section}' section: {', '.join(sorted(unknown))}"
        )
    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid '{section}' section: {e}") from e


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(value).__name__}")
    return dict(value)


def load_config(repo_path: Path | None = None) -> StewardConfig:
    """Load `.steward/config.yaml` under repo_path, applying env overrides.

    Raises:
        ConfigError: If the YAML is malformed or contains unknown keys
    """
    repo_path = repo_path or Path.cwd()
    config_path = repo_path / CONFIG_DIR / CONFIG_FILE

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")

    sandbox_values = _section(data, "sandbox")
    strategy = sandbox_values.pop("strategy", "direct")
    env_sandbox_dir = os.environ.get(SANDBOX_DIR_ENV)
    if env_sandbox_dir:
        sandbox_values["sandbox_dir"] = env_sandbox_dir

    invoker = _build_section(InvokerConfig, "invoker", _section(data, "invoker"))
    sandbox = _build_section(SandboxConfig, "sandbox", sandbox_values)
    approval = _build_section(ApprovalPolicy, "approval", _section(data, "approval"))

    # Both sides of the delegation share one sandbox directory
    invoker.sandbox_dir = sandbox.sandbox_dir

    db_path = Path(_section(data, "database").get("path", Path(CONFIG_DIR) / "state.db"))
    if not db_path.is_absolute():
        db_path = repo_path / db_path

    return StewardConfig(
        invoker=invoker,
        sandbox=sandbox,
        approval=approval,
        strategy=strategy,
        db_path=db_path,
    )
