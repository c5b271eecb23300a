"""Deterministic provider that replays a scripted sequence of responses."""

import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from persuader.providers.base import (
    ProviderCapability,
    ProviderHealth,
    ProviderRequest,
    ProviderResponse,
)

ScriptStep = str | Exception | Callable[[ProviderRequest], str]


class ScriptedProvider(ProviderCapability):
    """Provider replaying queued responses, for tests and offline examples.

    Each step is either the raw text to return, an exception to raise, or a
    callable receiving the request and returning raw text. Once the script
    runs out the last step repeats.

    Every request is recorded in ``requests`` and every turn is appended to
    the transcript of its session in ``transcripts``.

    Example::

        provider = ScriptedProvider(["not json", '{"name": "Ann"}'])
        orchestrator = RetryOrchestrator(ProviderSession(provider))
    """

    def __init__(
        self,
        script: Iterable[ScriptStep],
        name: str = "scripted",
        supports_sessions: bool = True,
        requires_session_before_send: bool = False,
        healthy: bool = True,
    ) -> None:
        self._script = list(script)
        if not self._script:
            raise ValueError("Script must contain at least one step")
        self.name = name
        self.supports_sessions = supports_sessions
        self.requires_session_before_send = requires_session_before_send
        self._healthy = healthy
        self._lock = threading.Lock()
        self._position = 0
        self.requests: list[ProviderRequest] = []
        self.created_sessions: list[str] = []
        self.destroyed_sessions: list[str] = []
        self.transcripts: dict[str, list[str]] = {}

    @property
    def send_count(self) -> int:
        return len(self.requests)

    def send(self, request: ProviderRequest) -> ProviderResponse:
        with self._lock:
            self.requests.append(request)
            step = self._script[min(self._position, len(self._script) - 1)]
            self._position += 1
            if request.session_id is not None:
                self.transcripts.setdefault(request.session_id, []).append(
                    request.prompt
                )

        if isinstance(step, Exception):
            raise step
        content = step(request) if callable(step) else step
        return ProviderResponse(content=content, metadata={"provider": self.name})

    def create_session(
        self, context: str = "", options: dict[str, Any] | None = None
    ) -> str:
        if not self.supports_sessions:
            return super().create_session(context, options)
        with self._lock:
            session_id = f"{self.name}-session-{len(self.created_sessions) + 1}"
            self.created_sessions.append(session_id)
            self.transcripts[session_id] = [context] if context else []
        return session_id

    def destroy_session(self, session_id: str) -> None:
        with self._lock:
            self.destroyed_sessions.append(session_id)
            self.transcripts.pop(session_id, None)

    def health(self) -> ProviderHealth:
        if self._healthy:
            return ProviderHealth(healthy=True, checked_at=datetime.now())
        return ProviderHealth(
            healthy=False,
            checked_at=datetime.now(),
            error=f"Provider {self.name} is unavailable",
            terminal=True,
        )
