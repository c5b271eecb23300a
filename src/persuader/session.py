"""Session continuity contract between the retry loop and a provider.

The orchestrator only ever talks to ``SessionContinuity``; whether a
session is a subprocess conversation, a hosted-API transcript, or nothing at
all is the implementation's business.
"""

import concurrent.futures
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, NewType

from persuader.cancellation import CancellationToken
from persuader.exceptions import CancelledRunException, ProviderException
from persuader.providers.base import (
    ProviderCapability,
    ProviderHealth,
    ProviderRequest,
    SendLease,
)

logger = logging.getLogger(__name__)

SessionHandle = NewType("SessionHandle", str)


class SessionContinuity(ABC):
    """Narrow interface the orchestrator uses to keep conversational context.

    Guarantees:
    - ``ensure`` with an existing handle returns it verbatim and creates
      nothing.
    - Two ``send`` calls on the same handle are seen by the provider as one
      continuing conversation.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @property
    @abstractmethod
    def creates_eagerly(self) -> bool:
        """True when a session must exist before the first send."""
        pass

    @abstractmethod
    def ensure(
        self, existing: str | None = None, context: str = ""
    ) -> SessionHandle | None:
        """Return a usable session handle, creating one only if needed.

        Args:
            existing: Handle supplied by the caller, reused verbatim
            context: Context to seed a newly created session with

        Returns:
            Session handle, or None when the provider keeps no sessions

        Raises:
            ProviderException: If session creation fails
        """
        pass

    @abstractmethod
    def send(
        self,
        handle: SessionHandle | None,
        text: str,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Send text on a session and return the raw response text.

        Raises:
            ProviderException: If the provider fails
            CancelledRunException: If ``cancel_token`` fires while waiting
        """
        pass

    def invalidate(self, handle: SessionHandle | None) -> None:
        """Discard a handle the provider reported as no longer usable."""
        return None

    def health(self) -> ProviderHealth | None:
        return None


class ProviderSession(SessionContinuity):
    """``SessionContinuity`` over any ``ProviderCapability``.

    Sends run on the calling thread unless a cancellation token is given; in
    that case the provider call runs on a worker thread and the caller waits
    on whichever finishes first, the call or the token.
    """

    def __init__(
        self,
        provider: ProviderCapability,
        options: dict[str, Any] | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        """Initialize the session adapter.

        Args:
            provider: Provider capability to drive
            options: Provider options forwarded with every request
            poll_interval: Seconds between cancellation checks during a send

        Raises:
            ValueError: If provider is None
        """
        if provider is None:
            raise ValueError("Provider is required")
        self.provider = provider
        self.options = dict(options or {})
        self.poll_interval = poll_interval

    @property
    def provider_name(self) -> str:
        return self.provider.name

    @property
    def creates_eagerly(self) -> bool:
        return self.provider.supports_sessions and self.provider.requires_session_before_send

    def ensure(
        self, existing: str | None = None, context: str = ""
    ) -> SessionHandle | None:
        if existing:
            return SessionHandle(existing)
        if not self.provider.supports_sessions:
            return None

        try:
            session_id = self.provider.create_session(context, self.options)
        except ProviderException:
            raise
        except Exception as e:
            raise ProviderException(
                f"Failed to create session: {e}",
                provider=self.provider.name,
                retryable=False,
                original_error=e,
            ) from e

        logger.info("Created session %s on %s", session_id, self.provider.name)
        return SessionHandle(session_id)

    def send(
        self,
        handle: SessionHandle | None,
        text: str,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        lease = SendLease() if cancel_token is not None else None
        request = ProviderRequest(
            prompt=text, session_id=handle, options=self.options, lease=lease
        )
        logger.debug(
            "Sending %d characters to %s (session=%s)",
            len(text),
            self.provider.name,
            handle,
        )

        if cancel_token is None or lease is None:
            return self._call(request)

        cancel_token.raise_if_cancelled()
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="persuader-send"
        )
        try:
            future = executor.submit(self._call, request)
            while not future.done():
                if cancel_token.wait(self.poll_interval):
                    if lease.abandon():
                        future.cancel()
                        raise CancelledRunException(cancel_token.reason)
                    # The provider already recorded the reply
                    break
            return future.result()
        finally:
            # An abandoned call finishes in the background; its result is dropped
            executor.shutdown(wait=False)

    def invalidate(self, handle: SessionHandle | None) -> None:
        if handle is None:
            return
        logger.info("Discarding session %s on %s", handle, self.provider.name)
        try:
            self.provider.destroy_session(handle)
        except ProviderException as e:
            logger.debug("Could not destroy session %s: %s", handle, e)

    def health(self) -> ProviderHealth:
        try:
            return self.provider.health()
        except Exception as e:
            logger.warning("Health check for %s failed: %s", self.provider.name, e)
            return ProviderHealth(healthy=False, checked_at=datetime.now(), error=str(e))

    def _call(self, request: ProviderRequest) -> str:
        try:
            response = self.provider.send(request)
        except ProviderException:
            raise
        except Exception as e:
            # Unclassified failures are treated as transient
            raise ProviderException(
                f"{type(e).__name__}: {e}",
                provider=self.provider.name,
                retryable=True,
                original_error=e,
            ) from e
        return response.content
