"""Custom exceptions for Persuader."""

from typing import Any


class PersuaderException(Exception):
    """Base exception for Persuader.

    All custom exceptions in this package should inherit from this base class.
    """

    pass


class SchemaDefinitionException(PersuaderException):
    """Raised when a schema description itself is malformed.

    This exception is raised when:
    - A schema node declares an unknown or unsupported ``type``
    - A ``$ref`` points outside the schema's local definitions
    - Constraint keywords carry values of the wrong kind

    This is a precondition violation on the caller's side and is never
    absorbed by the retry loop.

    Attributes:
        pointer: JSON-pointer-like location of the offending schema node
    """

    def __init__(self, message: str, pointer: str | None = None):
        super().__init__(message)
        self.pointer = pointer


class SchemaValidationException(PersuaderException):
    """Raised when a caller unwraps a run that failed to produce valid output.

    Attributes:
        schema: Name of the schema that failed validation
        response_text: The last raw response received from the provider
        validation_errors: Rendered validation issue lines
        kind: Run error kind (``exhausted``, ``cancelled``, ``provider`` ...)
    """

    def __init__(
        self,
        message: str,
        schema: str | None = None,
        response_text: str | None = None,
        validation_errors: list[str] | None = None,
        kind: str | None = None,
    ):
        super().__init__(message)
        self.schema = schema
        self.response_text = response_text
        self.validation_errors = validation_errors or []
        self.kind = kind


class ProviderException(PersuaderException):
    """Raised by provider capabilities when a request fails.

    This exception is raised when:
    - API authentication fails (fatal)
    - Rate limits are exceeded or the request times out (retryable)
    - The provider reports the session is no longer usable

    Attributes:
        provider: The provider that caused the error
        retryable: Whether another attempt may succeed
        invalidates_session: Whether the current session must be discarded
        original_error: The original exception from the provider
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retryable: bool = True,
        invalidates_session: bool = False,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.invalidates_session = invalidates_session
        self.original_error = original_error


class CancelledRunException(PersuaderException):
    """Raised inside a run when its cancellation token fires."""

    pass


class ConfigurationException(PersuaderException):
    """Raised when configuration errors occur.

    This exception is raised when:
    - Required configuration is missing
    - Invalid configuration values are provided
    - Environment setup is incorrect

    Attributes:
        config_key: The configuration key that caused the error
        config_value: The invalid configuration value
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        config_value: Any | None = None,
    ):
        super().__init__(message)
        self.config_key = config_key
        self.config_value = config_value
