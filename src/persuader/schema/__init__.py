"""Schema handling for structured LLM responses.

This module provides:
- Compilation of JSON schemas and pydantic models into tagged schema nodes
- Schema loading from files and URLs with caching
- Structural validation that collects every violation in a response
"""

from .manager import (
    CompiledSchema,
    SchemaManager,
    SchemaNotFoundError,
    SchemaValidationError,
)
from .nodes import (
    FieldSpec,
    SchemaKind,
    SchemaNode,
    compile_schema,
    describe_schema,
)
from .validators import (
    IssueCode,
    ParseFailure,
    SchemaValidator,
    ValidationFailure,
    ValidationIssue,
    ValidationOutcome,
    format_path,
)

__all__ = [
    # Nodes
    "FieldSpec",
    "SchemaKind",
    "SchemaNode",
    "compile_schema",
    "describe_schema",
    # Manager
    "CompiledSchema",
    "SchemaManager",
    "SchemaNotFoundError",
    "SchemaValidationError",
    # Validators
    "IssueCode",
    "ParseFailure",
    "SchemaValidator",
    "ValidationFailure",
    "ValidationIssue",
    "ValidationOutcome",
    "format_path",
]
