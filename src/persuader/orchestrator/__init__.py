"""Retry orchestration: the schema-guided retry loop and its run records."""

from .engine import RetryOrchestrator
from .models import (
    Attempt,
    AttemptOutcome,
    ErrorKind,
    RunError,
    RunMetadata,
    RunResult,
    RunState,
    SessionInitResult,
)

__all__ = [
    "RetryOrchestrator",
    "Attempt",
    "AttemptOutcome",
    "ErrorKind",
    "RunError",
    "RunMetadata",
    "RunResult",
    "RunState",
    "SessionInitResult",
]
