"""Schema-guided retry loop with corrective feedback."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from persuader.cancellation import CancellationToken
from persuader.enhancement import (
    EnhancementConfig,
    build_enhancement_request,
    evaluate_improvement,
)
from persuader.exceptions import CancelledRunException, ProviderException
from persuader.feedback import FailureDetail, FeedbackMessage, FeedbackSynthesizer
from persuader.orchestrator.models import (
    Attempt,
    AttemptOutcome,
    ErrorKind,
    RunError,
    RunMetadata,
    RunResult,
    RunState,
    SessionInitResult,
)
from persuader.prompt import PromptBuilder
from persuader.providers.base import ProviderFailure
from persuader.schema.manager import CompiledSchema, SchemaInput, SchemaManager
from persuader.schema.validators import (
    ParseFailure,
    SchemaValidator,
    ValidationFailure,
    ValidationIssue,
)
from persuader.session import SessionContinuity, SessionHandle

logger = logging.getLogger(__name__)


@dataclass
class _RunRecord:
    """Mutable bookkeeping owned by a single call to ``run``."""

    started_at: datetime = field(default_factory=datetime.now)
    started: float = field(default_factory=time.time)
    handle: SessionHandle | None = None
    attempts: list[Attempt] = field(default_factory=list)
    enhancements: list[Attempt] = field(default_factory=list)
    enhancements_accepted: int = 0


class RetryOrchestrator:
    """Drives a provider to produce output matching a schema.

    Each attempt sends the full prompt through the session contract and
    validates the raw response. Failures become corrective feedback for the
    next attempt until the output conforms, the attempt budget runs out, or a
    fatal error occurs. Expected failures are reported in the ``RunResult``;
    only precondition violations raise.

    Per-run state lives in a record owned by each call to ``run``. The only
    state shared between calls is the schema manager's lock-guarded compile
    cache, so one instance can serve concurrent runs on separate threads.
    """

    def __init__(
        self,
        session: SessionContinuity,
        validator: SchemaValidator | None = None,
        synthesizer: FeedbackSynthesizer | None = None,
        prompt_builder: PromptBuilder | None = None,
        schema_manager: SchemaManager | None = None,
        model: str | None = None,
        check_health: bool = True,
        max_attempts: int = 3,
        retry_delay: float = 0.0,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session: Session contract over the provider
            validator: Schema validator (default: ``SchemaValidator()``)
            synthesizer: Feedback synthesizer (default: ``FeedbackSynthesizer()``)
            prompt_builder: Prompt builder (default: ``PromptBuilder()``)
            schema_manager: Resolves schema inputs (default: ``SchemaManager()``)
            model: Model name reported in run metadata
            check_health: Whether to consult provider health before a run
            max_attempts: Attempt budget for runs that do not pass one
            retry_delay: Delay between attempts for runs that do not pass one

        Raises:
            ValueError: If session is None
        """
        if session is None:
            raise ValueError("Session is required")
        self.session = session
        self.validator = validator or SchemaValidator()
        self.synthesizer = synthesizer or FeedbackSynthesizer()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.schema_manager = schema_manager or SchemaManager()
        self.model = model
        self.check_health = check_health
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def run(
        self,
        schema: SchemaInput,
        input_data: Any,
        context: str | None = None,
        *,
        lens: str | None = None,
        session_id: str | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        cancel_token: CancellationToken | None = None,
        success_message: str | None = None,
        example_output: Any = None,
        enhancement: int | EnhancementConfig | None = None,
    ) -> RunResult:
        """Run the retry loop until the output conforms to ``schema``.

        Args:
            schema: Pydantic model class, JSON schema dict, schema name, or
                compiled schema
            input_data: Data for the model to process
            context: Global context for the run and any session it creates
            lens: Perspective to process the input from
            session_id: Existing session to continue, used verbatim
            max_attempts: Attempt budget, at least 1 (default: the
                orchestrator's ``max_attempts``)
            retry_delay: Seconds to wait between attempts (default: the
                orchestrator's ``retry_delay``)
            cancel_token: Token that aborts the run when cancelled
            success_message: Sent to the session after a successful attempt
            example_output: Concrete example of valid output for the prompt
            enhancement: Enhancement rounds to run after success, as a round
                count or a full ``EnhancementConfig``; the best valid result
                is returned

        Returns:
            Run result; ``ok`` tells success from failure

        Raises:
            ValueError: If max_attempts < 1 or retry_delay < 0, or the
                enhancement settings are invalid
            SchemaDefinitionException: If the schema description is malformed
        """
        if max_attempts is None:
            max_attempts = self.max_attempts
        if retry_delay is None:
            retry_delay = self.retry_delay
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if retry_delay < 0:
            raise ValueError("retry_delay must not be negative")
        enhancement_config = EnhancementConfig.coerce(enhancement)
        compiled = self.schema_manager.compile(schema)

        record = _RunRecord(handle=SessionHandle(session_id) if session_id else None)
        self._transition(RunState.INIT)
        logger.info(
            "Starting run for schema '%s' on %s (max_attempts=%d)",
            compiled.name,
            self.session.provider_name,
            max_attempts,
        )

        if self.check_health:
            health = self.session.health()
            if health is not None and not health.healthy and health.terminal:
                return self._fatal(
                    record,
                    ErrorKind.PROVIDER,
                    f"Provider {self.session.provider_name} is unavailable: {health.error}",
                )
            if health is not None and not health.healthy:
                logger.warning(
                    "Provider %s reported unhealthy, continuing: %s",
                    self.session.provider_name,
                    health.error,
                )

        if record.handle is None and self.session.creates_eagerly:
            try:
                record.handle = self.session.ensure(None, context or "")
            except ProviderException as e:
                return self._fatal(record, ErrorKind.PROVIDER, f"Session creation failed: {e}")

        parts = self.prompt_builder.build(
            compiled, input_data, context, lens, example_output
        )
        feedback: FeedbackMessage | None = None
        last_failure: FailureDetail | None = None

        for number in range(1, max_attempts + 1):
            if cancel_token is not None and cancel_token.cancelled:
                return self._fatal(record, ErrorKind.CANCELLED, cancel_token.reason)

            self._transition(RunState.ATTEMPTING, number)
            prompt = self.prompt_builder.combine(parts, feedback)
            attempt_started = datetime.now()
            started = time.time()

            if record.handle is None:
                try:
                    record.handle = self.session.ensure(None, context or "")
                except ProviderException as e:
                    return self._fatal(
                        record, ErrorKind.PROVIDER, f"Session creation failed: {e}"
                    )

            try:
                raw_response = self.session.send(record.handle, prompt, cancel_token)
            except CancelledRunException as e:
                record.attempts.append(
                    Attempt(
                        number=number,
                        prompt=prompt,
                        raw_response=None,
                        outcome=AttemptOutcome.PROVIDER_ERROR,
                        timestamp=attempt_started,
                        duration_ms=(time.time() - started) * 1000,
                        failure=ProviderFailure(
                            message=str(e),
                            retryable=False,
                            provider=self.session.provider_name,
                        ),
                    )
                )
                return self._fatal(record, ErrorKind.CANCELLED, str(e))
            except ProviderException as e:
                failure = ProviderFailure.from_exception(e, self.session.provider_name)
                record.attempts.append(
                    Attempt(
                        number=number,
                        prompt=prompt,
                        raw_response=None,
                        outcome=AttemptOutcome.PROVIDER_ERROR,
                        timestamp=attempt_started,
                        duration_ms=(time.time() - started) * 1000,
                        failure=failure,
                    )
                )
                if not e.retryable:
                    return self._fatal(
                        record, ErrorKind.PROVIDER, str(e), last_failure=failure
                    )

                logger.warning("Attempt %d hit a retryable provider error: %s", number, e)
                if e.invalidates_session and record.handle is not None:
                    self.session.invalidate(record.handle)
                    record.handle = None
                last_failure = failure
            else:
                self._transition(RunState.VALIDATING, number)
                outcome = self.validator.validate(compiled, raw_response)
                duration_ms = (time.time() - started) * 1000

                if outcome.success:
                    record.attempts.append(
                        Attempt(
                            number=number,
                            prompt=prompt,
                            raw_response=raw_response,
                            outcome=AttemptOutcome.SUCCESS,
                            timestamp=attempt_started,
                            duration_ms=duration_ms,
                        )
                    )
                    self._transition(RunState.SUCCEEDED, number)
                    value = outcome.value
                    if enhancement_config is not None and enhancement_config.rounds:
                        value = self._enhance(
                            record,
                            compiled,
                            value,
                            enhancement_config,
                            context,
                            lens,
                            cancel_token,
                        )
                    if success_message:
                        self._send_success_message(record.handle, success_message)
                    return self._succeed(record, value)

                failed_with = outcome.failure
                record.attempts.append(
                    Attempt(
                        number=number,
                        prompt=prompt,
                        raw_response=raw_response,
                        outcome=(
                            AttemptOutcome.PARSE_FAILURE
                            if isinstance(failed_with, ParseFailure)
                            else AttemptOutcome.VALIDATION_FAILURE
                        ),
                        timestamp=attempt_started,
                        duration_ms=duration_ms,
                        failure=failed_with,
                    )
                )
                logger.debug(
                    "Attempt %d failed validation with %d issue(s)",
                    number,
                    len(outcome.issues),
                )
                last_failure = failed_with

            if number == max_attempts or last_failure is None:
                break

            feedback = self.synthesizer.synthesize(
                last_failure, number, max_attempts, compiled
            )
            self._transition(RunState.RETRYING, number)
            if retry_delay > 0:
                if cancel_token is not None:
                    if cancel_token.wait(retry_delay):
                        return self._fatal(record, ErrorKind.CANCELLED, cancel_token.reason)
                else:
                    time.sleep(retry_delay)

        issues = last_failure.issues if isinstance(last_failure, ValidationFailure) else ()
        message = (
            f"No valid output after {len(record.attempts)} attempt(s)"
            f"{': ' + _describe_failure(last_failure) if last_failure else ''}"
        )
        logger.warning("Run exhausted: %s", message)
        return self._fatal(
            record,
            ErrorKind.EXHAUSTED,
            message,
            issues=issues,
            last_failure=last_failure,
            state=RunState.EXHAUSTED,
        )

    def init_session(
        self,
        context: str,
        initial_prompt: str | None = None,
        session_id: str | None = None,
    ) -> SessionInitResult:
        """Establish or reuse a session seeded with context, without a schema.

        Args:
            context: Context for the session
            initial_prompt: Optional first message; its raw reply is returned
            session_id: Existing session to reuse

        Returns:
            Session handle, optional response and timing metadata

        Raises:
            ProviderException: If the session cannot be created or the
                initial prompt fails
        """
        record = _RunRecord()
        handle = self.session.ensure(session_id, context)
        response = None
        if initial_prompt:
            response = self.session.send(handle, initial_prompt)
        logger.info("Initialized session %s on %s", handle, self.session.provider_name)
        return SessionInitResult(
            session_handle=handle, response=response, metadata=self._metadata(record)
        )

    def preload(
        self,
        data: Any,
        context: str | None = None,
        lens: str | None = None,
        session_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RunResult:
        """Load data into a session with one schema-free send.

        Args:
            data: Data to load
            context: Global context for the session
            lens: Perspective to read the data from
            session_id: Existing session to load into
            cancel_token: Token that aborts the send

        Returns:
            Run result whose value is the provider's raw reply
        """
        record = _RunRecord(handle=SessionHandle(session_id) if session_id else None)
        prompt = self.prompt_builder.build_preload(data, context, lens)
        attempt_started = datetime.now()
        started = time.time()

        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            record.handle = self.session.ensure(session_id, context or "")
            raw_response = self.session.send(record.handle, prompt, cancel_token)
        except CancelledRunException as e:
            return self._fatal(record, ErrorKind.CANCELLED, str(e))
        except ProviderException as e:
            failure = ProviderFailure.from_exception(e, self.session.provider_name)
            record.attempts.append(
                Attempt(
                    number=1,
                    prompt=prompt,
                    raw_response=None,
                    outcome=AttemptOutcome.PROVIDER_ERROR,
                    timestamp=attempt_started,
                    duration_ms=(time.time() - started) * 1000,
                    failure=failure,
                )
            )
            return self._fatal(
                record, ErrorKind.PROVIDER, f"Preload failed: {e}", last_failure=failure
            )

        record.attempts.append(
            Attempt(
                number=1,
                prompt=prompt,
                raw_response=raw_response,
                outcome=AttemptOutcome.SUCCESS,
                timestamp=attempt_started,
                duration_ms=(time.time() - started) * 1000,
            )
        )
        logger.info("Preloaded data into session %s", record.handle)
        return self._succeed(record, raw_response)

    def _enhance(
        self,
        record: _RunRecord,
        compiled: CompiledSchema,
        baseline: Any,
        config: EnhancementConfig,
        context: str | None,
        lens: str | None,
        cancel_token: CancellationToken | None,
    ) -> Any:
        """Run enhancement rounds on the session and return the best valid result.

        A round's candidate replaces the current best only when it validates
        and scores at least ``config.min_improvement``. Failed rounds never
        fail the run; cancellation or a non-retryable provider error ends the
        rounds early.
        """
        logger.info(
            "Starting %d enhancement round(s) (strategy=%s, min_improvement=%.2f)",
            config.rounds,
            config.strategy.value,
            config.min_improvement,
        )
        best = baseline
        for round_number in range(1, config.rounds + 1):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Enhancement cancelled before round %d", round_number)
                break

            request = build_enhancement_request(config, best, round_number)
            prompt = self.prompt_builder.build_enhancement(
                compiled, best, request, context, lens
            )
            attempt_started = datetime.now()
            started = time.time()

            try:
                raw_response = self.session.send(record.handle, prompt, cancel_token)
            except CancelledRunException as e:
                record.enhancements.append(
                    Attempt(
                        number=round_number,
                        prompt=prompt,
                        raw_response=None,
                        outcome=AttemptOutcome.PROVIDER_ERROR,
                        timestamp=attempt_started,
                        duration_ms=(time.time() - started) * 1000,
                        failure=ProviderFailure(
                            message=str(e),
                            retryable=False,
                            provider=self.session.provider_name,
                        ),
                    )
                )
                logger.info("Enhancement round %d cancelled: %s", round_number, e)
                break
            except ProviderException as e:
                record.enhancements.append(
                    Attempt(
                        number=round_number,
                        prompt=prompt,
                        raw_response=None,
                        outcome=AttemptOutcome.PROVIDER_ERROR,
                        timestamp=attempt_started,
                        duration_ms=(time.time() - started) * 1000,
                        failure=ProviderFailure.from_exception(
                            e, self.session.provider_name
                        ),
                    )
                )
                logger.warning("Enhancement round %d failed: %s", round_number, e)
                if e.invalidates_session and record.handle is not None:
                    self.session.invalidate(record.handle)
                    record.handle = None
                    break
                if not e.retryable:
                    break
                continue

            outcome = self.validator.validate(compiled, raw_response)
            duration_ms = (time.time() - started) * 1000
            if not outcome.success:
                record.enhancements.append(
                    Attempt(
                        number=round_number,
                        prompt=prompt,
                        raw_response=raw_response,
                        outcome=(
                            AttemptOutcome.PARSE_FAILURE
                            if isinstance(outcome.failure, ParseFailure)
                            else AttemptOutcome.VALIDATION_FAILURE
                        ),
                        timestamp=attempt_started,
                        duration_ms=duration_ms,
                        failure=outcome.failure,
                    )
                )
                logger.warning(
                    "Enhancement round %d failed validation; keeping current result",
                    round_number,
                )
                continue

            record.enhancements.append(
                Attempt(
                    number=round_number,
                    prompt=prompt,
                    raw_response=raw_response,
                    outcome=AttemptOutcome.SUCCESS,
                    timestamp=attempt_started,
                    duration_ms=duration_ms,
                )
            )
            score = evaluate_improvement(config, best, outcome.value)
            if score >= config.min_improvement:
                logger.info(
                    "Enhancement round %d accepted (score %.2f)", round_number, score
                )
                best = outcome.value
                record.enhancements_accepted += 1
            else:
                logger.debug(
                    "Enhancement round %d rejected (score %.2f < %.2f)",
                    round_number,
                    score,
                    config.min_improvement,
                )

        logger.info(
            "Enhancement finished: %d round(s), %d accepted",
            len(record.enhancements),
            record.enhancements_accepted,
        )
        return best

    def _send_success_message(
        self, handle: SessionHandle | None, message: str
    ) -> None:
        if handle is None:
            logger.debug("Skipping success message: provider keeps no session")
            return
        try:
            self.session.send(handle, message)
        except ProviderException as e:
            logger.warning("Failed to send success message to session %s: %s", handle, e)

    def _succeed(self, record: _RunRecord, value: Any) -> RunResult:
        metadata = self._metadata(record)
        logger.info(
            "Run succeeded after %d attempt(s) in %.0f ms",
            len(record.attempts),
            metadata.execution_time_ms,
        )
        return RunResult(
            ok=True,
            value=value,
            attempts=len(record.attempts),
            session_handle=record.handle,
            metadata=metadata,
            attempt_log=tuple(record.attempts),
            enhancement_log=tuple(record.enhancements),
        )

    def _fatal(
        self,
        record: _RunRecord,
        kind: ErrorKind,
        message: str,
        issues: tuple[ValidationIssue, ...] = (),
        last_failure: FailureDetail | None = None,
        state: RunState = RunState.FATAL,
    ) -> RunResult:
        self._transition(state)
        if state is RunState.FATAL:
            logger.info("Run stopped (%s): %s", kind.value, message)
        return RunResult(
            ok=False,
            attempts=len(record.attempts),
            session_handle=record.handle,
            metadata=self._metadata(record),
            error=RunError(
                kind=kind, message=message, issues=issues, last_failure=last_failure
            ),
            attempt_log=tuple(record.attempts),
        )

    def _metadata(self, record: _RunRecord) -> RunMetadata:
        return RunMetadata(
            execution_time_ms=(time.time() - record.started) * 1000,
            started_at=record.started_at,
            completed_at=datetime.now(),
            provider=self.session.provider_name,
            model=self.model,
            enhancement_attempts=len(record.enhancements),
            enhancements_accepted=record.enhancements_accepted,
        )

    def _transition(self, state: RunState, attempt: int | None = None) -> None:
        if attempt is None:
            logger.debug("Run state -> %s", state.value)
        else:
            logger.debug("Run state -> %s (attempt %d)", state.value, attempt)


def _describe_failure(failure: FailureDetail) -> str:
    if isinstance(failure, ValidationFailure):
        count = len(failure.issues)
        return f"{count} validation issue{'s' if count != 1 else ''}"
    if isinstance(failure, ParseFailure):
        return f"response was not valid JSON ({failure.message})"
    return f"provider error ({failure.message})"
