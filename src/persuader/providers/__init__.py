"""Provider capabilities: the model backends a run sends prompts to."""

from .base import (
    ProviderCapability,
    ProviderFailure,
    ProviderHealth,
    ProviderRequest,
    ProviderResponse,
)
from .litellm_provider import LiteLLMProvider, get_provider_from_model
from .scripted import ScriptedProvider

__all__ = [
    "ProviderCapability",
    "ProviderFailure",
    "ProviderHealth",
    "ProviderRequest",
    "ProviderResponse",
    "LiteLLMProvider",
    "ScriptedProvider",
    "get_provider_from_model",
]
