"""Data models for Steward.

Uses Pydantic for schema-enforced structured outputs. Field aliases keep the
wire names used by the code-generation CLI (camelCase for per-model usage).
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# --- Error Models ---


class ErrorCategory(str, Enum):
    """Categories of failure at the invoker and sandbox boundaries."""

    TRANSPORT = "transport"  # Spawn error or non-zero CLI exit
    PAYLOAD = "payload"  # CLI exited 0 but stdout failed schema validation
    PRECONDITION = "precondition"  # Rejected before any process was spawned
    TIMEOUT = "timeout"  # Wall-clock budget exceeded, process killed
    PROCESS = "process"  # Script ran and exited non-zero


# --- Command Invoker Models ---


class InvocationRequest(BaseModel):
    """One call to the code-generation CLI."""

    prompt: str = Field(..., min_length=1)
    session_id: str | None = None
    system_prompt: str | None = None


class ServerToolUse(BaseModel):
    web_search_requests: int | None = None
    web_fetch_requests: int | None = None


class CacheCreation(BaseModel):
    ephemeral_1h_input_tokens: int | None = None
    ephemeral_5m_input_tokens: int | None = None


class Usage(BaseModel):
    """Aggregate token usage reported by the CLI."""

    input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    output_tokens: int | None = None
    server_tool_use: ServerToolUse | None = None
    service_tier: str | None = None
    cache_creation: CacheCreation | None = None


class ModelUsage(BaseModel):
    """Per-model token and cost counters (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    input_tokens: int | None = Field(default=None, alias="inputTokens")
    output_tokens: int | None = Field(default=None, alias="outputTokens")
    cache_read_input_tokens: int | None = Field(default=None, alias="cacheReadInputTokens")
    cache_creation_input_tokens: int | None = Field(
        default=None, alias="cacheCreationInputTokens"
    )
    web_search_requests: int | None = Field(default=None, alias="webSearchRequests")
    cost_usd: float | None = Field(default=None, alias="costUSD")
    context_window: int | None = Field(default=None, alias="contextWindow")


class CliResponse(BaseModel):
    """JSON document printed by `claude -p --output-format json`.

    Every field is optional: the CLI omits fields freely between versions.
    Unknown fields are dropped.
    """

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    type: str | None = None
    subtype: str | None = None
    is_error: bool | None = None
    duration_ms: float | None = None
    duration_api_ms: float | None = None
    num_turns: int | None = None
    result: str | None = None
    session_id: str | None = None
    total_cost_usd: float | None = None
    usage: Usage | None = None
    model_usage: dict[str, ModelUsage] | None = Field(default=None, alias="modelUsage")
    permission_denials: list[Any] | None = None
    uuid: str | None = None


class InvocationResult(CliResponse):
    """Outcome of one invocation.

    `success` reports transport success only. `payload_valid` separately
    reports whether stdout matched CliResponse, so a soft payload failure
    is still visible to callers that care.
    """

    success: bool
    payload_valid: bool = True
    error: str | None = None
    error_category: ErrorCategory | None = None


# --- Workflow State Models ---


class RunStatus(str, Enum):
    """Status of a workflow run."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    SUCCESS = "success"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


class WorkflowRun(BaseModel):
    """Serializable continuation of a workflow execution.

    current_step is the state tag: the id of the step that runs next (or is
    suspended). step_outputs accumulates each completed step's output, so the
    run can be resumed by any process holding the same database.
    """

    run_id: str
    workflow_id: str
    status: RunStatus = RunStatus.RUNNING
    current_step: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    step_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    suspended_input: dict[str, Any] | None = None
    suspend_payload: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
