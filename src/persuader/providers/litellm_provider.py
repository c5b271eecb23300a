"""Provider capability backed by LiteLLM for multi-provider hosted APIs."""

import logging
import threading
import time
from datetime import datetime
from typing import Any
from uuid import uuid4

import litellm
from litellm import completion, validate_environment

from persuader.exceptions import ProviderException
from persuader.providers.base import (
    ProviderCapability,
    ProviderHealth,
    ProviderRequest,
    ProviderResponse,
)

logger = logging.getLogger(__name__)

# Checked in order; ContextWindowExceededError subclasses BadRequestError
_ERROR_POLICY: tuple[tuple[type[Exception], bool, bool], ...] = (
    # (exception, retryable, invalidates_session)
    (litellm.ContextWindowExceededError, True, True),
    (litellm.AuthenticationError, False, False),
    (litellm.PermissionDeniedError, False, False),
    (litellm.NotFoundError, False, False),
    (litellm.BadRequestError, False, False),
    (litellm.Timeout, True, False),
    (litellm.RateLimitError, True, False),
    (litellm.APIConnectionError, True, False),
    (litellm.ServiceUnavailableError, True, False),
    (litellm.InternalServerError, True, False),
)


class LiteLLMProvider(ProviderCapability):
    """Hosted-API provider using LiteLLM's ``completion``.

    Hosted chat APIs are stateless, so sessions are client-side transcripts:
    each session id maps to the message list sent so far, and every send on
    that id replays the transcript before the new user turn. Two sends on
    one handle are therefore seen by the model as one conversation.
    """

    supports_sessions = True
    requires_session_before_send = False

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        max_tokens: int = 1000,
        temperature: float | None = None,
    ):
        """Initialize the LiteLLM provider.

        Args:
            model: The model name (e.g., 'gpt-4o-mini', 'claude-3-haiku-20240307')
            api_key: The API key for authentication
            max_tokens: Maximum tokens for response (default: 1000)
            temperature: Optional sampling temperature

        Raises:
            ValueError: If model is None
        """
        if model is None:
            raise ValueError("Model is required")

        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.name = f"litellm/{get_provider_from_model(model)}"

        self._transcripts: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def create_session(
        self, context: str = "", options: dict[str, Any] | None = None
    ) -> str:
        """Start a transcript seeded with ``context`` as the system message."""
        session_id = uuid4().hex
        with self._lock:
            self._transcripts[session_id] = (
                [{"role": "system", "content": context}] if context else []
            )
        logger.info("Created LiteLLM session %s for %s", session_id, self.model)
        return session_id

    def destroy_session(self, session_id: str) -> None:
        with self._lock:
            self._transcripts.pop(session_id, None)

    def transcript(self, session_id: str) -> list[dict[str, Any]]:
        """Return a copy of the messages recorded for a session."""
        with self._lock:
            return list(self._transcripts.get(session_id, []))

    def send(self, request: ProviderRequest) -> ProviderResponse:
        """Send the prompt, replaying the session transcript when present.

        An unknown session id is adopted as a new, empty transcript so a
        caller-supplied handle is always used verbatim.

        Args:
            request: Prompt, session id and provider options

        Returns:
            Provider response with the assistant's reply

        Raises:
            ProviderException: Mapped from LiteLLM's exception hierarchy
        """
        user_message = {"role": "user", "content": request.prompt}
        if request.session_id is not None:
            with self._lock:
                history = self._transcripts.setdefault(request.session_id, [])
                messages = [*history, user_message]
        else:
            messages = [user_message]

        kwargs: dict[str, Any] = {"max_tokens": self.max_tokens}
        if self.api_key is not None:
            kwargs["api_key"] = self.api_key
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        kwargs.update(request.options)

        try:
            raw_response = completion(model=self.model, messages=messages, **kwargs)
        except Exception as e:
            raise self._map_error(e) from e

        choice = raw_response.choices[0]
        content = choice.message.content or ""
        if request.session_id is not None:
            if request.lease is not None and not request.lease.commit():
                logger.info(
                    "Dropping reply for abandoned send on session %s",
                    request.session_id,
                )
            else:
                with self._lock:
                    history = self._transcripts.setdefault(request.session_id, [])
                    history.append(user_message)
                    history.append({"role": "assistant", "content": content})

        return ProviderResponse(
            content=str(content),
            metadata=self._build_metadata(raw_response),
            truncated=getattr(choice, "finish_reason", None) == "length",
        )

    def health(self) -> ProviderHealth:
        """Report health without a network round-trip.

        Credentials come from ``api_key`` or from the environment variables
        LiteLLM reads for the model. Only keys LiteLLM names as missing make
        the report terminal; local backends such as Ollama need none.
        """
        started = time.time()
        missing_keys = self._missing_keys()
        if missing_keys:
            return ProviderHealth(
                healthy=False,
                checked_at=datetime.now(),
                error=(
                    f"No API key configured for {self.model} "
                    f"(missing: {', '.join(missing_keys)})"
                ),
                terminal=True,
                response_time_ms=(time.time() - started) * 1000,
            )
        return ProviderHealth(
            healthy=True,
            checked_at=datetime.now(),
            response_time_ms=(time.time() - started) * 1000,
        )

    def _missing_keys(self) -> list[str]:
        if self.api_key or get_provider_from_model(self.model) == "ollama":
            return []
        try:
            report = validate_environment(model=self.model)
        except Exception as e:
            logger.debug("Could not check environment for %s: %s", self.model, e)
            return []
        if report.get("keys_in_environment"):
            return []
        return list(report.get("missing_keys") or [])

    def _map_error(self, error: Exception) -> ProviderException:
        """Translate a LiteLLM exception into a retry-aware ProviderException."""
        for error_type, retryable, invalidates_session in _ERROR_POLICY:
            if isinstance(error, error_type):
                break
        else:
            retryable, invalidates_session = True, False

        if not retryable:
            logger.warning(
                "Non-retryable LiteLLM error for %s: %s", self.model, error
            )
        return ProviderException(
            f"{type(error).__name__}: {error}",
            provider=self.name,
            retryable=retryable,
            invalidates_session=invalidates_session,
            original_error=error,
        )

    def _build_metadata(self, raw_response: Any) -> dict[str, Any]:
        """Collect model and token usage from a LiteLLM response."""
        metadata: dict[str, Any] = {"model": getattr(raw_response, "model", self.model)}
        usage = getattr(raw_response, "usage", None)
        if usage is not None:
            metadata["input_tokens"] = getattr(usage, "prompt_tokens", None)
            metadata["output_tokens"] = getattr(usage, "completion_tokens", None)
        return metadata


def get_provider_from_model(model: str) -> str:
    """Determine provider from model name.

    Args:
        model: The model name

    Returns:
        Provider name ('openai', 'anthropic', etc.)
    """
    model_lower = model.lower()

    if model_lower.startswith("ollama"):
        return "ollama"
    elif any(prefix in model_lower for prefix in ["gpt", "davinci", "curie", "babbage"]):
        return "openai"
    elif any(prefix in model_lower for prefix in ["claude"]):
        return "anthropic"
    elif any(prefix in model_lower for prefix in ["gemini", "palm", "bison"]):
        return "google"
    elif any(prefix in model_lower for prefix in ["llama", "code-llama"]):
        return "meta"
    else:
        return "unknown"
