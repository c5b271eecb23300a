"""Provider capability surface implemented by every model backend."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from persuader.exceptions import ProviderException


class SendLease:
    """Settles which side wins when a send finishes as its caller gives up.

    A provider calls ``commit`` before recording a reply in session state;
    the caller calls ``abandon`` when it stops waiting. Whichever runs first
    wins and the other gets False, so an abandoned reply never lands in a
    session and a committed one is never reported as cancelled.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: str | None = None

    def commit(self) -> bool:
        with self._lock:
            if self._state is None:
                self._state = "committed"
            return self._state == "committed"

    def abandon(self) -> bool:
        with self._lock:
            if self._state is None:
                self._state = "abandoned"
            return self._state == "abandoned"


@dataclass(frozen=True)
class ProviderRequest:
    """One outbound prompt, optionally continuing a provider-held session.

    ``lease`` is set when the caller may abandon the send; providers that
    keep session state must ``commit`` it before recording the turn.
    """

    prompt: str
    session_id: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    lease: SendLease | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ProviderResponse:
    """Raw text returned by a provider plus optional metadata."""

    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    truncated: bool = False


@dataclass(frozen=True)
class ProviderHealth:
    """Health report for a provider.

    Attributes:
        healthy: Whether the provider can currently serve requests
        checked_at: When the check ran
        error: Error message if unhealthy
        terminal: True when no retry can help (e.g. missing credentials)
        response_time_ms: Time the check took, if measured
    """

    healthy: bool
    checked_at: datetime
    error: str | None = None
    terminal: bool = False
    response_time_ms: float | None = None


@dataclass(frozen=True)
class ProviderFailure:
    """A provider-side failure recorded against an attempt."""

    message: str
    retryable: bool = True
    invalidates_session: bool = False
    provider: str | None = None

    @classmethod
    def from_exception(
        cls, error: ProviderException, provider: str | None = None
    ) -> "ProviderFailure":
        return cls(
            message=str(error),
            retryable=error.retryable,
            invalidates_session=error.invalidates_session,
            provider=error.provider or provider,
        )


class ProviderCapability(ABC):
    """Abstract base class for model backends.

    Subclasses declare their session behaviour through class attributes:

    - ``supports_sessions``: the provider keeps conversation state under a
      session id, so repeated sends on one id continue one conversation.
    - ``requires_session_before_send``: a session must exist before the
      first send (created eagerly at run start rather than on first send).

    ``send`` raises ``ProviderException`` on failure, with ``retryable`` and
    ``invalidates_session`` set from the provider's own signal.
    """

    name: str = "provider"
    supports_sessions: bool = True
    requires_session_before_send: bool = False

    @abstractmethod
    def send(self, request: ProviderRequest) -> ProviderResponse:
        """Send a prompt and return the raw response.

        Args:
            request: Prompt, session id and provider options

        Returns:
            Provider response holding the generated text

        Raises:
            ProviderException: If the request fails
        """
        pass

    @abstractmethod
    def health(self) -> ProviderHealth:
        """Report whether the provider can currently serve requests."""
        pass

    def create_session(
        self, context: str = "", options: dict[str, Any] | None = None
    ) -> str:
        """Create a provider-held conversation seeded with ``context``.

        Args:
            context: Global context for the session
            options: Provider-specific session options

        Returns:
            Session id
        """
        raise ProviderException(
            f"Provider {self.name} does not support sessions",
            provider=self.name,
            retryable=False,
        )

    def destroy_session(self, session_id: str) -> None:
        """Release a session. Providers without session state do nothing."""
        return None
