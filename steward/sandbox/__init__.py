"""Sandbox module for isolated execution of generated scripts."""

from steward.sandbox.executor import (
    DirectSandbox,
    IsolatedSandbox,
    SandboxConfig,
    SandboxCredentials,
    ScriptExecutionResult,
    ScriptSandbox,
    get_script_sandbox,
)

__all__ = [
    "DirectSandbox",
    "IsolatedSandbox",
    "SandboxConfig",
    "SandboxCredentials",
    "ScriptExecutionResult",
    "ScriptSandbox",
    "get_script_sandbox",
]
