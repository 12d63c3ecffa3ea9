# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Steward test suite.

This module provides foundational fixtures used across all test modules:
- A temporary sandbox directory with sample generated scripts
- Test databases and workflow engines
- Sandbox credentials and configurations
- Sample CLI JSON payloads

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from steward.core.approval import ApprovalPolicy
from steward.core.invoker import InvokerConfig
from steward.core.payment import build_payment_workflow
from steward.core.state import Database
from steward.core.workflow import WorkflowEngine
from steward.sandbox.executor import SandboxConfig, SandboxCredentials


# =============================================================================
# Sandbox Fixtures
# =============================================================================


@pytest.fixture
def sandbox_dir(tmp_path: Path) -> Path:
    """Create a sandbox directory holding a few generated scripts.

    Creates:
        - print_tokens.py: prints both token env vars and its argv
        - fail.py: writes to stderr and exits 3
        - slow.py: prints, flushes, then sleeps 30s
        - report.py: prints a fixed line
    """
    sandbox = tmp_path / "sandbox"
    sandbox.mkdir()
    (sandbox / "print_tokens.py").write_text(
        "import os, sys\n"
        "print('business=' + os.environ.get('businessToken', ''))\n"
        "print('auth=' + os.environ.get('authToken', ''))\n"
        "print('args=' + ','.join(sys.argv[1:]))\n"
    )
    (sandbox / "fail.py").write_text(
        "import sys\n"
        "print('partial output')\n"
        "print('something broke', file=sys.stderr)\n"
        "sys.exit(3)\n"
    )
    (sandbox / "slow.py").write_text(
        "import sys, time\n"
        "print('started', flush=True)\n"
        "time.sleep(30)\n"
    )
    (sandbox / "report.py").write_text("print('report')\n")
    return sandbox


@pytest.fixture
def credentials() -> SandboxCredentials:
    """Valid credential tokens."""
    return SandboxCredentials(business_token="biz-123", auth_token="auth-456")


@pytest.fixture
def direct_config(sandbox_dir: Path) -> SandboxConfig:
    """SandboxConfig running scripts with the current interpreter."""
    return SandboxConfig(
        sandbox_dir=str(sandbox_dir),
        interpreter=[sys.executable],
        timeout_seconds=10,
    )


@pytest.fixture
def invoker_config(sandbox_dir: Path) -> InvokerConfig:
    return InvokerConfig(sandbox_dir=str(sandbox_dir))


# =============================================================================
# Database and Workflow Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Returns:
        Initialized Database instance.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def payment_engine(test_db: Database) -> WorkflowEngine:
    """WorkflowEngine with the payment workflow registered."""
    return WorkflowEngine(test_db, [build_payment_workflow(ApprovalPolicy())])


# =============================================================================
# CLI Payload Fixtures
# =============================================================================


@pytest.fixture
def cli_payload() -> dict[str, Any]:
    """A representative `claude -p --output-format json` document."""
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "duration_ms": 5120,
        "duration_api_ms": 4870,
        "num_turns": 3,
        "result": "Created clients_by_city.py",
        "session_id": "0f6b2c1e-8d1a-4c1e-9a51-3b0d7a9e2f10",
        "total_cost_usd": 0.0123,
        "usage": {
            "input_tokens": 120,
            "cache_creation_input_tokens": 2048,
            "cache_read_input_tokens": 4096,
            "output_tokens": 310,
            "server_tool_use": {"web_search_requests": 0, "web_fetch_requests": 0},
            "service_tier": "standard",
            "cache_creation": {
                "ephemeral_1h_input_tokens": 0,
                "ephemeral_5m_input_tokens": 2048,
            },
        },
        "modelUsage": {
            "claude-haiku": {
                "inputTokens": 120,
                "outputTokens": 310,
                "cacheReadInputTokens": 4096,
                "cacheCreationInputTokens": 2048,
                "webSearchRequests": 0,
                "costUSD": 0.0123,
                "contextWindow": 200000,
            }
        },
        "permission_denials": [],
        "uuid": "5d2f8a90-1b2c-4d3e-8f90-a1b2c3d4e5f6",
    }


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def completed():
    """Factory for mock subprocess.CompletedProcess results (text mode)."""
    return _completed


@pytest.fixture
def mock_cli_success(mocker, cli_payload):
    """Patch subprocess.run to return the CLI payload with exit 0."""
    return mocker.patch(
        "subprocess.run", return_value=_completed(stdout=json.dumps(cli_payload))
    )


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "docker: marks tests requiring Docker")
    config.addinivalue_line("markers", "integration: marks integration tests")
