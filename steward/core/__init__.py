"""Core modules for Steward."""

from steward.core.invoker import CommandInvoker, InvokerConfig
from steward.core.models import (
    ErrorCategory,
    InvocationRequest,
    InvocationResult,
    RunStatus,
    WorkflowRun,
)
from steward.core.state import Database, Event, EventType
from steward.core.workflow import WorkflowEngine, WorkflowError

__all__ = [
    "CommandInvoker",
    "Database",
    "ErrorCategory",
    "Event",
    "EventType",
    "InvocationRequest",
    "InvocationResult",
    "InvokerConfig",
    "RunStatus",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowRun",
]
