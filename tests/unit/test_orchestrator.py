"""Unit tests for RetryOrchestrator - the schema-guided retry loop."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest
from pydantic import BaseModel, Field

from persuader.cancellation import CancellationToken
from persuader.enhancement import EnhancementConfig, EnhancementStrategy
from persuader.exceptions import (
    ProviderException,
    SchemaDefinitionException,
    SchemaValidationException,
)
from persuader.feedback import FINAL_ATTEMPT_WARNING
from persuader.orchestrator import (
    AttemptOutcome,
    ErrorKind,
    RetryOrchestrator,
    RunResult,
)
from persuader.prompt import FEEDBACK_HEADING
from persuader.providers.base import ProviderRequest
from persuader.providers.scripted import ScriptedProvider
from persuader.schema.validators import IssueCode, ValidationFailure
from persuader.session import ProviderSession


class Person(BaseModel):
    """Schema requiring a name."""

    name: str


class Roster(BaseModel):
    """Schema with a list that enhancement rounds can grow."""

    names: list[str]


class Scored(BaseModel):
    """Schema with a bounded integer score."""

    name: str
    score: int = Field(ge=1, le=10)


VALID_SCORE = '{"name": "Ann", "score": 7}'
SCORE_TOO_BIG = '{"name": "Ann", "score": 15}'


def make_orchestrator(provider: ScriptedProvider, **kwargs: Any) -> RetryOrchestrator:
    return RetryOrchestrator(ProviderSession(provider, poll_interval=0.01), **kwargs)


@pytest.mark.unit
class TestRunScenarios:
    """End-to-end scenarios of the retry loop against a scripted provider."""

    def test_parse_failure_then_success(self) -> None:
        """Test that a non-JSON reply is corrected on the second attempt."""
        provider = ScriptedProvider(["not json", '{"name": "Ann"}'])

        result = make_orchestrator(provider).run(Person, "Ann is here", max_attempts=2)

        assert result.ok is True
        assert isinstance(result.value, Person)
        assert result.value.name == "Ann"
        assert result.attempts == 2
        assert [attempt.outcome for attempt in result.attempt_log] == [
            AttemptOutcome.PARSE_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert result.error is None

    def test_always_out_of_range_exhausts(self) -> None:
        """Test that a persistently invalid score exhausts the budget."""
        provider = ScriptedProvider([SCORE_TOO_BIG])

        result = make_orchestrator(provider).run(Scored, "Ann scored 15", max_attempts=3)

        assert result.ok is False
        assert result.error is not None
        assert result.error.kind is ErrorKind.EXHAUSTED
        assert result.error.cause is ErrorKind.VALIDATION
        (issue,) = result.error.issues
        assert issue.path == ("score",)
        assert issue.code is IssueCode.TOO_BIG
        assert result.attempts == 3
        assert len(result.attempt_log) == 3
        for attempt in result.attempt_log:
            assert attempt.outcome is AttemptOutcome.VALIDATION_FAILURE
            assert isinstance(attempt.failure, ValidationFailure)
            assert [i.path for i in attempt.failure.issues] == [("score",)]

    def test_existing_session_reused_verbatim(self) -> None:
        """Test that a caller-supplied session id is used for the first send."""
        provider = ScriptedProvider(['{"name": "Ann"}'])

        result = make_orchestrator(provider).run(
            Person, "input", session_id="existing-42"
        )

        assert result.ok is True
        assert provider.requests[0].session_id == "existing-42"
        assert provider.created_sessions == []
        assert result.session_handle == "existing-42"

    def test_session_created_lazily_and_echoed(self) -> None:
        """Test that a session is created on first send and kept for retries."""
        provider = ScriptedProvider(["nope", '{"name": "Ann"}'])

        result = make_orchestrator(provider).run(Person, "input", context="ctx")

        assert provider.created_sessions == ["scripted-session-1"]
        assert provider.transcripts["scripted-session-1"][0] == "ctx"
        assert {request.session_id for request in provider.requests} == {
            "scripted-session-1"
        }
        assert result.session_handle == "scripted-session-1"

    def test_stateless_provider_has_no_handle(self) -> None:
        """Test runs against a provider that keeps no sessions."""
        provider = ScriptedProvider(['{"name": "Ann"}'], supports_sessions=False)

        result = make_orchestrator(provider).run(Person, "input")

        assert result.ok is True
        assert result.session_handle is None
        assert provider.requests[0].session_id is None

    def test_eager_session_creation(self) -> None:
        """Test that providers requiring a session get one before any send."""
        provider = ScriptedProvider(
            [ProviderException("denied", retryable=False)],
            requires_session_before_send=True,
        )

        result = make_orchestrator(provider).run(Person, "input")

        assert provider.created_sessions == ["scripted-session-1"]
        assert result.session_handle == "scripted-session-1"


@pytest.mark.unit
class TestAttemptBudget:
    """Properties of the attempt budget."""

    @pytest.mark.parametrize("max_attempts", [1, 2, 5])
    def test_nonconforming_provider_uses_exactly_m_attempts(
        self, max_attempts: int
    ) -> None:
        """Test that m attempts are made and the run ends exhausted."""
        provider = ScriptedProvider(['{"wrong": true}'])

        result = make_orchestrator(provider).run(
            Person, "input", max_attempts=max_attempts
        )

        assert result.attempts == max_attempts
        assert provider.send_count == max_attempts
        assert result.error is not None
        assert result.error.kind is ErrorKind.EXHAUSTED
        assert [attempt.number for attempt in result.attempt_log] == list(
            range(1, max_attempts + 1)
        )

    @pytest.mark.parametrize("k", [1, 2, 3, 4])
    def test_success_on_attempt_k_stops_sending(self, k: int) -> None:
        """Test that success on attempt k yields attempts == k and no more sends."""
        provider = ScriptedProvider(["{}"] * (k - 1) + ['{"name": "Ann"}', "never"])

        result = make_orchestrator(provider).run(Person, "input", max_attempts=4)

        assert result.ok is True
        assert result.attempts == k
        assert provider.send_count == k
        assert result.attempt_log[-1].outcome is AttemptOutcome.SUCCESS

    def test_defaults_come_from_orchestrator(self) -> None:
        """Test that omitted budgets fall back to the orchestrator defaults."""
        provider = ScriptedProvider(["{}"])

        result = make_orchestrator(provider, max_attempts=2).run(Person, "input")

        assert result.attempts == 2

    def test_invalid_preconditions_raise(self) -> None:
        """Test that programming errors raise instead of returning a result."""
        orchestrator = make_orchestrator(ScriptedProvider(["{}"]))

        with pytest.raises(ValueError):
            orchestrator.run(Person, "input", max_attempts=0)
        with pytest.raises(ValueError):
            orchestrator.run(Person, "input", retry_delay=-1)
        with pytest.raises(SchemaDefinitionException):
            orchestrator.run({"type": "nonsense"}, "input")

    def test_session_is_required(self) -> None:
        """Test that a None session is rejected."""
        with pytest.raises(ValueError):
            RetryOrchestrator(None)  # type: ignore[arg-type]


@pytest.mark.unit
class TestFeedbackLoop:
    """How feedback flows into later prompts."""

    def test_first_attempt_is_bare_and_retries_carry_feedback(self) -> None:
        """Test that only retries include the previous attempt's feedback."""
        provider = ScriptedProvider([SCORE_TOO_BIG, VALID_SCORE])

        make_orchestrator(provider).run(Scored, "input", max_attempts=3)

        first, second = (request.prompt for request in provider.requests)
        assert FEEDBACK_HEADING not in first
        assert FEEDBACK_HEADING in second
        assert second.startswith(first)
        assert (
            "score: expected integer (>= 1, <= 10), got integer 15 — "
            "Number must be less than or equal to 10"
        ) in second

    def test_final_attempt_warning(self) -> None:
        """Test that the prompt for the last attempt carries the final warning."""
        provider = ScriptedProvider([SCORE_TOO_BIG])

        make_orchestrator(provider).run(Scored, "input", max_attempts=3)

        prompts = [request.prompt for request in provider.requests]
        assert FINAL_ATTEMPT_WARNING not in prompts[1]
        assert FINAL_ATTEMPT_WARNING in prompts[2]

    def test_feedback_is_deterministic_across_runs(self) -> None:
        """Test that identical failures produce identical prompts."""
        first = ScriptedProvider(['{"score": "high", "extra": 1}'])
        second = ScriptedProvider(['{"score": "high", "extra": 1}'])

        make_orchestrator(first).run(Scored, "input", max_attempts=4)
        make_orchestrator(second).run(Scored, "input", max_attempts=4)

        assert [r.prompt for r in first.requests] == [r.prompt for r in second.requests]


@pytest.mark.unit
class TestProviderErrors:
    """Retryable and fatal provider failures."""

    def test_fatal_error_stops_immediately(self) -> None:
        """Test that a non-retryable error ends the run without more attempts."""
        provider = ScriptedProvider(
            [ProviderException("bad credentials", retryable=False), '{"name": "Ann"}']
        )

        result = make_orchestrator(provider).run(Person, "input", max_attempts=3)

        assert result.ok is False
        assert result.error is not None
        assert result.error.kind is ErrorKind.PROVIDER
        assert result.attempts == 1
        assert provider.send_count == 1

    def test_retryable_error_consumes_attempt_and_keeps_session(self) -> None:
        """Test that a transient error is retried on the same session."""
        provider = ScriptedProvider(
            [ProviderException("timeout", retryable=True), '{"name": "Ann"}']
        )

        result = make_orchestrator(provider).run(Person, "input", max_attempts=2)

        assert result.ok is True
        assert result.attempts == 2
        assert result.attempt_log[0].outcome is AttemptOutcome.PROVIDER_ERROR
        assert provider.requests[0].session_id == provider.requests[1].session_id
        assert provider.destroyed_sessions == []

    def test_unexpected_exception_is_retryable(self) -> None:
        """Test that exceptions outside the hierarchy are retried."""
        provider = ScriptedProvider([ConnectionResetError("reset"), '{"name": "Ann"}'])

        result = make_orchestrator(provider).run(Person, "input", max_attempts=2)

        assert result.ok is True
        assert result.attempts == 2

    def test_invalidated_session_is_replaced(self) -> None:
        """Test that a session the provider invalidates is dropped and re-created."""
        provider = ScriptedProvider(
            [
                ProviderException("context too long", invalidates_session=True),
                '{"name": "Ann"}',
            ]
        )

        result = make_orchestrator(provider).run(Person, "input", max_attempts=2)

        assert result.ok is True
        assert provider.destroyed_sessions == ["scripted-session-1"]
        assert provider.requests[1].session_id == "scripted-session-2"
        assert result.session_handle == "scripted-session-2"

    def test_exhausted_by_provider_errors(self) -> None:
        """Test that repeated transient errors exhaust with the provider detail."""
        provider = ScriptedProvider([ProviderException("timeout")])

        result = make_orchestrator(provider).run(Person, "input", max_attempts=2)

        assert result.error is not None
        assert result.error.kind is ErrorKind.EXHAUSTED
        assert result.error.cause is ErrorKind.PROVIDER
        assert result.error.issues == ()

    def test_terminal_health_is_fatal(self) -> None:
        """Test that a terminally unhealthy provider fails before any send."""
        provider = ScriptedProvider(['{"name": "Ann"}'], healthy=False)

        result = make_orchestrator(provider).run(Person, "input")

        assert result.ok is False
        assert result.error is not None
        assert result.error.kind is ErrorKind.PROVIDER
        assert result.attempts == 0
        assert provider.send_count == 0

    def test_health_check_can_be_disabled(self) -> None:
        """Test that the health check is skipped when disabled."""
        provider = ScriptedProvider(['{"name": "Ann"}'], healthy=False)

        result = make_orchestrator(provider, check_health=False).run(Person, "input")

        assert result.ok is True


@pytest.mark.unit
class TestCancellation:
    """Cancellation at the suspension points."""

    def test_cancel_during_send(self) -> None:
        """Test that cancelling an in-flight send ends the run at that attempt."""
        release = threading.Event()

        def slow(request: ProviderRequest) -> str:
            release.wait(5)
            return '{"name": "late"}'

        provider = ScriptedProvider([slow])
        token = CancellationToken()
        threading.Timer(0.05, token.cancel, args=("user stop",)).start()

        result = make_orchestrator(provider).run(
            Person, "input", max_attempts=3, cancel_token=token
        )
        release.set()

        assert result.ok is False
        assert result.error is not None
        assert result.error.kind is ErrorKind.CANCELLED
        assert result.error.message == "user stop"
        assert result.attempts == 1
        assert provider.send_count == 1

    def test_cancel_during_retry_delay(self) -> None:
        """Test that the inter-attempt delay is cancellable."""
        provider = ScriptedProvider(["{}"])
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()

        started = time.time()
        result = make_orchestrator(provider).run(
            Person, "input", max_attempts=3, retry_delay=10, cancel_token=token
        )

        assert time.time() - started < 5
        assert result.error is not None
        assert result.error.kind is ErrorKind.CANCELLED
        assert provider.send_count == 1

    def test_cancelled_before_start(self) -> None:
        """Test that an already cancelled token prevents every attempt."""
        provider = ScriptedProvider(['{"name": "Ann"}'])
        token = CancellationToken()
        token.cancel()

        result = make_orchestrator(provider).run(Person, "input", cancel_token=token)

        assert result.error is not None
        assert result.error.kind is ErrorKind.CANCELLED
        assert result.attempts == 0
        assert provider.send_count == 0


@pytest.mark.unit
class TestSuccessMessage:
    """Positive reinforcement sent after success."""

    def test_success_message_sent_to_session(self) -> None:
        """Test that the success message follows a successful attempt."""
        provider = ScriptedProvider(['{"name": "Ann"}', "thanks"])

        result = make_orchestrator(provider).run(
            Person, "input", success_message="Well done"
        )

        assert result.ok is True
        assert provider.requests[-1].prompt == "Well done"
        assert provider.requests[-1].session_id == result.session_handle

    def test_success_message_failure_is_logged(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a failed delivery never changes the result."""
        provider = ScriptedProvider(['{"name": "Ann"}', ProviderException("gone")])

        with caplog.at_level(logging.WARNING, logger="persuader.orchestrator.engine"):
            result = make_orchestrator(provider).run(
                Person, "input", success_message="Well done"
            )

        assert result.ok is True
        assert "Failed to send success message" in caplog.text

    def test_success_message_skipped_without_session(self) -> None:
        """Test that stateless providers receive no success message."""
        provider = ScriptedProvider(['{"name": "Ann"}'], supports_sessions=False)

        make_orchestrator(provider).run(Person, "input", success_message="Well done")

        assert provider.send_count == 1


@pytest.mark.unit
class TestRunResult:
    """Result helpers."""

    def _exhausted(self) -> RunResult:
        provider = ScriptedProvider(["oops", SCORE_TOO_BIG])
        return make_orchestrator(provider).run(Scored, "input", max_attempts=2)

    def test_unwrap_success(self) -> None:
        """Test unwrapping a successful run."""
        provider = ScriptedProvider(['{"name": "Ann"}'])

        result = make_orchestrator(provider, model="test-model").run(Person, "input")

        assert result.unwrap().name == "Ann"
        assert result.metadata.provider == "scripted"
        assert result.metadata.model == "test-model"
        assert result.metadata.execution_time_ms >= 0

    def test_unwrap_failure_raises(self) -> None:
        """Test that unwrapping a failed run raises with the issue lines."""
        result = self._exhausted()

        with pytest.raises(SchemaValidationException) as exc_info:
            result.unwrap()

        assert exc_info.value.kind == "exhausted"
        assert exc_info.value.response_text == SCORE_TOO_BIG
        assert exc_info.value.validation_errors[0].startswith("score: expected integer")

    def test_summary_and_stats(self) -> None:
        """Test the human-readable summary and attempt statistics."""
        result = self._exhausted()

        summary = result.summary().splitlines()
        stats = result.stats()

        assert summary[0].startswith("Failed after 2 attempts")
        assert summary[1].startswith("  Attempt 1: parse_failure")
        assert summary[2] == "  Attempt 2: validation_failure (1 issue)"
        assert stats["total_attempts"] == 2
        assert stats["failures"] == {
            "validation_failure": 1,
            "parse_failure": 1,
            "provider_error": 0,
        }

    def test_concurrent_runs_are_independent(self) -> None:
        """Test that one orchestrator serves parallel runs without shared state."""
        orchestrator = RetryOrchestrator(
            ProviderSession(
                ScriptedProvider(
                    [lambda request: '{"name": "Ann"}'], supports_sessions=False
                )
            )
        )

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(
                pool.map(lambda i: orchestrator.run(Person, f"input {i}"), range(8))
            )

        assert all(result.ok and result.attempts == 1 for result in results)


@pytest.mark.unit
class TestSessionHelpers:
    """init_session and preload."""

    def test_init_session_with_initial_prompt(self) -> None:
        """Test establishing a session and sending a first message."""
        provider = ScriptedProvider(["ready"])

        result = make_orchestrator(provider).init_session(
            "You analyse workouts", initial_prompt="Hello"
        )

        assert result.session_handle == "scripted-session-1"
        assert result.response == "ready"
        assert provider.transcripts["scripted-session-1"] == [
            "You analyse workouts",
            "Hello",
        ]

    def test_init_session_reuses_handle(self) -> None:
        """Test that init_session keeps a supplied handle."""
        provider = ScriptedProvider(["ready"])

        result = make_orchestrator(provider).init_session("ctx", session_id="s-1")

        assert result.session_handle == "s-1"
        assert result.response is None
        assert provider.created_sessions == []

    def test_init_session_raises_provider_errors(self) -> None:
        """Test that init_session surfaces provider failures as exceptions."""
        provider = ScriptedProvider([ProviderException("down", retryable=False)])

        with pytest.raises(ProviderException):
            make_orchestrator(provider).init_session("ctx", initial_prompt="Hi")

    def test_preload_returns_raw_reply(self) -> None:
        """Test a schema-free preload into an existing session."""
        provider = ScriptedProvider(["Loaded."])

        result = make_orchestrator(provider).preload(
            {"rows": [1, 2, 3]}, context="Sales", session_id="s-9"
        )

        assert result.ok is True
        assert result.value == "Loaded."
        assert result.attempts == 1
        assert result.session_handle == "s-9"
        assert '"rows"' in provider.requests[0].prompt

    def test_preload_failure_is_a_result(self) -> None:
        """Test that preload failures come back as failed results."""
        provider = ScriptedProvider([ProviderException("down")])

        result = make_orchestrator(provider).preload("data")

        assert result.ok is False
        assert result.error is not None
        assert result.error.kind is ErrorKind.PROVIDER

    def test_preload_cancelled(self) -> None:
        """Test that a cancelled token stops the preload."""
        provider = ScriptedProvider(["Loaded."])
        token = CancellationToken()
        token.cancel()

        result = make_orchestrator(provider).preload("data", cancel_token=token)

        assert result.error is not None
        assert result.error.kind is ErrorKind.CANCELLED
        assert provider.send_count == 0


@pytest.mark.unit
class TestEnhancementRounds:
    """Test cases for post-success enhancement rounds."""

    def test_improved_candidate_replaces_result(self) -> None:
        """Test that a valid, larger candidate is kept and a broken one ignored."""
        provider = ScriptedProvider(
            ['{"names": ["a"]}', '{"names": ["a", "b", "c"]}', "not json"]
        )

        result = make_orchestrator(provider).run(
            Roster, "list names", enhancement=2
        )

        assert result.ok is True
        assert result.value.names == ["a", "b", "c"]
        assert result.attempts == 1
        assert result.metadata.enhancement_attempts == 2
        assert result.metadata.enhancements_accepted == 1
        assert [attempt.outcome for attempt in result.enhancement_log] == [
            AttemptOutcome.SUCCESS,
            AttemptOutcome.PARSE_FAILURE,
        ]
        assert "CURRENT RESULT" in provider.requests[1].prompt
        assert '"a"' in provider.requests[1].prompt
        assert len({request.session_id for request in provider.requests}) == 1

    def test_candidate_below_threshold_is_rejected(self) -> None:
        """Test that a valid but smaller candidate does not replace the result."""
        provider = ScriptedProvider(['{"names": ["a", "b"]}', '{"names": ["a"]}'])

        result = make_orchestrator(provider).run(Roster, "list names", enhancement=1)

        assert result.ok is True
        assert result.value.names == ["a", "b"]
        assert result.metadata.enhancements_accepted == 0
        assert [attempt.outcome for attempt in result.enhancement_log] == [
            AttemptOutcome.SUCCESS
        ]

    def test_provider_error_keeps_result_and_stops(self) -> None:
        """Test that a fatal provider error ends enhancement without failing the run."""
        provider = ScriptedProvider(
            ['{"names": ["a"]}', ProviderException("denied", retryable=False)]
        )

        result = make_orchestrator(provider).run(Roster, "list names", enhancement=3)

        assert result.ok is True
        assert result.value.names == ["a"]
        assert result.metadata.enhancement_attempts == 1
        assert result.enhancement_log[0].outcome is AttemptOutcome.PROVIDER_ERROR
        assert provider.send_count == 2

    def test_custom_prompt_and_evaluator(self) -> None:
        """Test that a custom request and scorer drive the rounds."""
        provider = ScriptedProvider(['{"name": "Ann"}', '{"name": "Ann Lee"}'])
        config = EnhancementConfig(
            rounds=1,
            strategy=EnhancementStrategy.CUSTOM,
            custom_prompt=lambda current, round_number: f"Round {round_number}: full name",
            evaluate=lambda baseline, candidate: 1.0,
        )

        result = make_orchestrator(provider).run(Person, "Ann", enhancement=config)

        assert result.value.name == "Ann Lee"
        assert "Round 1: full name" in provider.requests[1].prompt

    def test_failed_run_skips_enhancement(self) -> None:
        """Test that enhancement only follows a successful run."""
        provider = ScriptedProvider(["not json"])

        result = make_orchestrator(provider).run(
            Roster, "list names", max_attempts=1, enhancement=2
        )

        assert result.ok is False
        assert provider.send_count == 1
        assert result.enhancement_log == ()

    def test_cancelled_token_stops_rounds(self) -> None:
        """Test that cancellation during enhancement keeps the first valid result."""
        token = CancellationToken()

        def cancel_while_building(current: Any, round_number: int) -> str:
            token.cancel("enough")
            return "add more names"

        provider = ScriptedProvider(['{"names": ["a"]}', '{"names": ["a", "b"]}'])
        config = EnhancementConfig(rounds=2, custom_prompt=cancel_while_building)

        result = make_orchestrator(provider).run(
            Roster, "list names", cancel_token=token, enhancement=config
        )

        assert result.ok is True
        assert result.value.names == ["a"]
        assert provider.send_count == 1
        assert result.metadata.enhancement_attempts == 1
        assert result.enhancement_log[0].outcome is AttemptOutcome.PROVIDER_ERROR

    def test_invalid_enhancement_settings_raise(self) -> None:
        """Test that a negative round count is rejected up front."""
        provider = ScriptedProvider(['{"name": "Ann"}'])

        with pytest.raises(ValueError):
            make_orchestrator(provider).run(Person, "Ann", enhancement=-1)

        assert provider.send_count == 0

    def test_summary_and_stats_report_enhancement(self) -> None:
        """Test that result helpers count enhancement rounds separately."""
        provider = ScriptedProvider(['{"names": ["a"]}', '{"names": ["a", "b", "c"]}'])

        result = make_orchestrator(provider).run(Roster, "list names", enhancement=1)
        stats = result.stats()

        assert result.summary().splitlines()[-1] == "  Enhancement: 1 round(s), 1 accepted"
        assert stats["total_attempts"] == 1
        assert stats["enhancement_attempts"] == 1
        assert stats["enhancements_accepted"] == 1
