"""Persuader - schema-guided retry-with-feedback for LLM structured output."""

__version__ = "0.1.0"

# Cancellation
from .cancellation import CancellationToken

# Custom exceptions
from .exceptions import (
    CancelledRunException,
    ConfigurationException,
    PersuaderException,
    ProviderException,
    SchemaDefinitionException,
    SchemaValidationException,
)

# Enhancement rounds
from .enhancement import EnhancementConfig, EnhancementStrategy

# Feedback and prompts
from .feedback import FeedbackMessage, FeedbackSynthesizer
from .prompt import PromptBuilder, PromptParts

# Core orchestration
from .orchestrator import (
    Attempt,
    AttemptOutcome,
    ErrorKind,
    RetryOrchestrator,
    RunError,
    RunMetadata,
    RunResult,
    SessionInitResult,
)

# Providers and sessions
from .providers import LiteLLMProvider, ProviderCapability, ScriptedProvider
from .schema import CompiledSchema, SchemaManager, SchemaValidator, ValidationIssue
from .session import ProviderSession, SessionContinuity, SessionHandle

# Configuration utilities
from .utils import (
    RunSettings,
    create_litellm_provider,
    create_orchestrator,
    get_available_providers,
    get_default_models,
    load_environment,
)

__all__ = [
    "__version__",
    "RetryOrchestrator",
    "RunResult",
    "RunError",
    "RunMetadata",
    "Attempt",
    "AttemptOutcome",
    "ErrorKind",
    "SessionInitResult",
    "CancellationToken",
    "EnhancementConfig",
    "EnhancementStrategy",
    "FeedbackMessage",
    "FeedbackSynthesizer",
    "PromptBuilder",
    "PromptParts",
    "ProviderCapability",
    "LiteLLMProvider",
    "ScriptedProvider",
    "ProviderSession",
    "SessionContinuity",
    "SessionHandle",
    "CompiledSchema",
    "SchemaManager",
    "SchemaValidator",
    "ValidationIssue",
    "RunSettings",
    "load_environment",
    "create_litellm_provider",
    "create_orchestrator",
    "get_available_providers",
    "get_default_models",
    # Exceptions
    "PersuaderException",
    "CancelledRunException",
    "ConfigurationException",
    "ProviderException",
    "SchemaDefinitionException",
    "SchemaValidationException",
]
