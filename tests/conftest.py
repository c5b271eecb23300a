"""Shared pytest configuration and fixtures for the test suite."""

import os
from typing import Any
from unittest.mock import Mock

import pytest


@pytest.fixture
def mock_api_response() -> Mock:
    """Mock LiteLLM completion response."""
    mock_response = Mock()
    mock_response.choices = [Mock()]
    mock_response.choices[0].message.content = '{"name": "Ann"}'
    mock_response.choices[0].finish_reason = "stop"
    mock_response.model = "gpt-4o-mini"
    mock_response.usage.prompt_tokens = 12
    mock_response.usage.completion_tokens = 5
    return mock_response


@pytest.fixture
def sample_api_key() -> str:
    """Sample API key for testing."""
    return "test-api-key-12345"


@pytest.fixture
def clean_persuader_env(monkeypatch: Any) -> None:
    """Remove PERSUADER_* and provider key variables from the environment."""
    for key in list(os.environ):
        if key.startswith("PERSUADER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    # Keep a developer's .env file from leaking into unit tests
    monkeypatch.setattr("persuader.utils.config.load_dotenv", lambda: False)


class SecureTestConfig:
    """Test configuration that doesn't expose API keys in repr."""

    def __init__(self, openai_key: str | None, anthropic_key: str | None) -> None:
        self._openai_key = openai_key
        self._anthropic_key = anthropic_key

    def __getitem__(self, key: str) -> Any:
        if key == "openai_api_key":
            return self._openai_key
        elif key == "anthropic_api_key":
            return self._anthropic_key
        else:
            raise KeyError(key)

    def __repr__(self) -> str:
        return "SecureTestConfig(keys_available=True)"


@pytest.fixture
def integration_test_setup() -> SecureTestConfig:
    """Setup fixture for integration tests - requires real API keys."""
    openai_key = os.getenv("OPENAI_API_KEY")
    anthropic_key = os.getenv("ANTHROPIC_API_KEY")

    if not openai_key and not anthropic_key:
        pytest.skip(
            "Integration tests require real API keys. Set OPENAI_API_KEY or "
            "ANTHROPIC_API_KEY environment variables."
        )

    return SecureTestConfig(openai_key=openai_key, anthropic_key=anthropic_key)


# Pytest configuration
pytest_plugins: list[str] = []
