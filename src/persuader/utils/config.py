"""Configuration utilities for environment-based setup."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from persuader.exceptions import ConfigurationException
from persuader.orchestrator import RetryOrchestrator
from persuader.providers import LiteLLMProvider, ProviderCapability
from persuader.session import ProviderSession

DEFAULT_MODEL = "claude-3-haiku-20240307"

_ENV_FIELDS = {
    "max_attempts": "PERSUADER_MAX_ATTEMPTS",
    "retry_delay": "PERSUADER_RETRY_DELAY",
    "model": "PERSUADER_MODEL",
    "max_tokens": "PERSUADER_MAX_TOKENS",
}


def load_environment() -> None:
    """Load environment variables from .env file if it exists."""
    load_dotenv()


class RunSettings(BaseModel):
    """Defaults applied to runs built through ``create_orchestrator``."""

    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.0, ge=0)
    model: str = DEFAULT_MODEL
    max_tokens: int = Field(default=1000, ge=1)

    @classmethod
    def from_env(cls) -> "RunSettings":
        """Build settings from ``PERSUADER_*`` environment variables.

        Unset variables keep their defaults.

        Returns:
            Validated settings

        Raises:
            ConfigurationException: If a variable holds an invalid value
        """
        load_environment()

        values = {
            name: os.environ[env_key]
            for name, env_key in _ENV_FIELDS.items()
            if os.getenv(env_key)
        }
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            error = e.errors()[0]
            name = str(error["loc"][0]) if error.get("loc") else None
            env_key = _ENV_FIELDS.get(name, name) if name else None
            raise ConfigurationException(
                f"Invalid value for {env_key}: {error['msg']}",
                config_key=env_key,
                config_value=values.get(name) if name else None,
            ) from e


def create_litellm_provider(
    model: str | None = None,
    api_key: str | None = None,
    max_tokens: int | None = None,
) -> LiteLLMProvider:
    """Create a LiteLLM provider with environment-based configuration.

    Args:
        model: Model name (default: ``PERSUADER_MODEL`` or 'claude-3-haiku-20240307')
        api_key: API key (if None, tries to infer from model and environment)
        max_tokens: Maximum tokens for response (default: ``PERSUADER_MAX_TOKENS``)

    Returns:
        Configured LiteLLMProvider

    Raises:
        ValueError: If no API key is found and cannot be inferred
    """
    settings = RunSettings.from_env()
    model = model or settings.model

    if api_key is None:
        if model.startswith("gpt"):
            api_key = os.getenv("OPENAI_API_KEY")
        elif model.startswith("claude"):
            api_key = os.getenv("ANTHROPIC_API_KEY")

    if api_key is None:
        raise ValueError(
            f"API key not found for model '{model}'. Set appropriate environment "
            "variable or pass api_key parameter."
        )

    return LiteLLMProvider(
        model=model,
        api_key=api_key,
        max_tokens=max_tokens or settings.max_tokens,
    )


def create_orchestrator(
    provider: ProviderCapability | None = None,
    settings: RunSettings | None = None,
) -> RetryOrchestrator:
    """Create a wired orchestrator.

    Args:
        provider: Provider to drive (default: LiteLLM provider from settings)
        settings: Run settings (default: ``RunSettings.from_env()``)

    Returns:
        Orchestrator over a ``ProviderSession`` for the provider
    """
    settings = settings or RunSettings.from_env()
    if provider is None:
        provider = create_litellm_provider(
            model=settings.model, max_tokens=settings.max_tokens
        )
    model = getattr(provider, "model", None) or settings.model
    return RetryOrchestrator(
        ProviderSession(provider),
        model=model,
        max_attempts=settings.max_attempts,
        retry_delay=settings.retry_delay,
    )


def get_available_providers() -> dict[str, bool]:
    """Check which providers have API keys available.

    Returns:
        Dictionary mapping provider names to availability status
    """
    load_environment()

    return {
        "openai": os.getenv("OPENAI_API_KEY") is not None,
        "anthropic": os.getenv("ANTHROPIC_API_KEY") is not None,
    }


def get_default_models() -> dict[str, str]:
    """Get default models for each provider.

    Returns:
        Dictionary mapping provider names to default model names
    """
    return {
        "openai": "gpt-4o-mini",
        "anthropic": DEFAULT_MODEL,
    }
