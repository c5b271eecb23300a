"""Utility functions for environment-based configuration."""

from .config import (
    RunSettings,
    create_litellm_provider,
    create_orchestrator,
    get_available_providers,
    get_default_models,
    load_environment,
)

__all__ = [
    "RunSettings",
    "load_environment",
    "create_litellm_provider",
    "create_orchestrator",
    "get_available_providers",
    "get_default_models",
]
