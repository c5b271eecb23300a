"""Run records: attempts, errors and the discriminated run result."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from persuader.exceptions import SchemaValidationException
from persuader.feedback import FailureDetail, format_issue
from persuader.providers.base import ProviderFailure
from persuader.schema.validators import ParseFailure, ValidationFailure, ValidationIssue
from persuader.session import SessionHandle


class RunState(Enum):
    """States of the retry loop."""

    INIT = "init"
    ATTEMPTING = "attempting"
    VALIDATING = "validating"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"


class AttemptOutcome(Enum):
    """How a single attempt ended."""

    SUCCESS = "success"
    VALIDATION_FAILURE = "validation_failure"
    PARSE_FAILURE = "parse_failure"
    PROVIDER_ERROR = "provider_error"


class ErrorKind(Enum):
    """Why a run failed."""

    PARSE = "parse"
    VALIDATION = "validation"
    PROVIDER = "provider"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Attempt:
    """One request/response round-trip within a run.

    Attributes:
        number: 1-based ordinal within the run
        prompt: Text sent to the provider
        raw_response: Raw text received, None if the send failed
        outcome: How the attempt ended
        timestamp: When the attempt started
        duration_ms: Time from send to outcome
        failure: Failure detail when the attempt did not succeed
    """

    number: int
    prompt: str
    raw_response: str | None
    outcome: AttemptOutcome
    timestamp: datetime
    duration_ms: float
    failure: FailureDetail | None = None


@dataclass(frozen=True)
class RunMetadata:
    """Timing and provider details of a run.

    Enhancement rounds are counted apart from the attempts that produced the
    first valid result.
    """

    execution_time_ms: float
    started_at: datetime
    completed_at: datetime
    provider: str
    model: str | None = None
    enhancement_attempts: int = 0
    enhancements_accepted: int = 0


@dataclass(frozen=True)
class RunError:
    """Failure reported by an unsuccessful run.

    Attributes:
        kind: Error kind
        message: Human-readable description
        issues: Every validation issue of the last failure, if it had any
        last_failure: Detail of the last failed attempt, kept for diagnosis
    """

    kind: ErrorKind
    message: str
    issues: tuple[ValidationIssue, ...] = ()
    last_failure: FailureDetail | None = None

    @property
    def cause(self) -> ErrorKind:
        """Kind of the underlying failure; ``kind`` itself unless exhausted."""
        if isinstance(self.last_failure, ParseFailure):
            return ErrorKind.PARSE
        if isinstance(self.last_failure, ValidationFailure):
            return ErrorKind.VALIDATION
        if isinstance(self.last_failure, ProviderFailure):
            return ErrorKind.PROVIDER
        return self.kind


@dataclass(frozen=True)
class RunResult:
    """Discriminated result of a run: check ``ok`` before reading ``value``."""

    ok: bool
    attempts: int
    metadata: RunMetadata
    value: Any = None
    session_handle: SessionHandle | None = None
    error: RunError | None = None
    attempt_log: tuple[Attempt, ...] = field(default_factory=tuple)
    enhancement_log: tuple[Attempt, ...] = field(default_factory=tuple)

    @property
    def last_response(self) -> str | None:
        for attempt in reversed(self.attempt_log):
            if attempt.raw_response is not None:
                return attempt.raw_response
        return None

    def unwrap(self) -> Any:
        """Return the value of a successful run.

        Raises:
            SchemaValidationException: If the run failed
        """
        if self.ok:
            return self.value
        error = self.error
        raise SchemaValidationException(
            error.message if error else "Run failed",
            response_text=self.last_response,
            validation_errors=[format_issue(issue) for issue in error.issues] if error else [],
            kind=error.kind.value if error else None,
        )

    def summary(self) -> str:
        """One line on the outcome plus one line per failed attempt."""
        noun = "attempt" if self.attempts == 1 else "attempts"
        if self.ok:
            lines = [f"Succeeded after {self.attempts} {noun}"]
        else:
            lines = [
                f"Failed after {self.attempts} {noun} "
                f"({self.metadata.execution_time_ms:.0f} ms total)"
            ]
        for attempt in self.attempt_log:
            if attempt.outcome is AttemptOutcome.SUCCESS:
                continue
            lines.append(
                f"  Attempt {attempt.number}: {attempt.outcome.value}"
                f"{_failure_note(attempt.failure)}"
            )
        if self.enhancement_log:
            lines.append(
                f"  Enhancement: {len(self.enhancement_log)} round(s), "
                f"{self.metadata.enhancements_accepted} accepted"
            )
        return "\n".join(lines)

    def stats(self) -> dict[str, Any]:
        """Attempt counts and timings for reporting."""
        total_time = sum(attempt.duration_ms for attempt in self.attempt_log)
        failures = {
            outcome.value: 0
            for outcome in AttemptOutcome
            if outcome is not AttemptOutcome.SUCCESS
        }
        for attempt in self.attempt_log:
            if attempt.outcome is not AttemptOutcome.SUCCESS:
                failures[attempt.outcome.value] += 1
        return {
            "total_attempts": self.attempts,
            "total_time_ms": total_time,
            "average_time_ms": total_time / len(self.attempt_log) if self.attempt_log else 0.0,
            "failures": failures,
            "enhancement_attempts": len(self.enhancement_log),
            "enhancements_accepted": self.metadata.enhancements_accepted,
        }


@dataclass(frozen=True)
class SessionInitResult:
    """Outcome of establishing a session without a schema."""

    session_handle: SessionHandle | None
    response: str | None
    metadata: RunMetadata


def _failure_note(failure: FailureDetail | None) -> str:
    if isinstance(failure, ValidationFailure):
        count = len(failure.issues)
        return f" ({count} issue{'s' if count != 1 else ''})"
    if failure is None:
        return ""
    return f" ({failure.message})"
