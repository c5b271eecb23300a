"""Parse raw model output and check it structurally against a compiled schema."""

import difflib
import json
import logging
import re
import time
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError

from persuader.schema.manager import CompiledSchema
from persuader.schema.nodes import (
    SchemaKind,
    SchemaNode,
    describe_received,
    format_number,
    kind_of,
)

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)

PathSegment = str | int


class IssueCode(Enum):
    """Kinds of schema violation, in the order feedback reports them."""

    MISSING = "missing"
    TYPE = "type"
    ENUM = "enum"
    TOO_SMALL = "too_small"
    TOO_BIG = "too_big"
    UNEXPECTED = "unexpected"
    CUSTOM = "custom"


ISSUE_CODE_ORDER = {code: index for index, code in enumerate(IssueCode)}


def format_path(path: Sequence[PathSegment]) -> str:
    """Render a field path as ``a.b[0].c``; the empty path is ``root``."""
    if not path:
        return "root"
    rendered = ""
    for segment in path:
        if isinstance(segment, int):
            rendered += f"[{segment}]"
        else:
            rendered += f".{segment}" if rendered else segment
    return rendered


@dataclass(frozen=True)
class ValidationIssue:
    """One schema violation found in a parsed response."""

    path: tuple[PathSegment, ...]
    expected: str
    received: str
    message: str
    code: IssueCode = IssueCode.CUSTOM

    @property
    def path_str(self) -> str:
        return format_path(self.path)


@dataclass(frozen=True)
class ParseFailure:
    """The response could not be parsed as JSON at all.

    Attributes:
        message: Parser message
        excerpt: Bounded slice of the raw text around the failure
        line: 1-based line of the failure, when known
        column: 1-based column of the failure, when known
        position: Character offset of the failure, when known
        empty: True when the response held no usable text
    """

    message: str
    excerpt: str = ""
    line: int | None = None
    column: int | None = None
    position: int | None = None
    empty: bool = False


@dataclass(frozen=True)
class ValidationFailure:
    """The response parsed but does not conform to the schema."""

    issues: tuple[ValidationIssue, ...]
    value: Any = None


class ValidationOutcome:
    """Result of validating one response."""

    def __init__(
        self,
        success: bool,
        value: Any = None,
        failure: ParseFailure | ValidationFailure | None = None,
        validation_time_ms: float = 0,
    ) -> None:
        """Initialize validation outcome.

        Args:
            success: Whether validation succeeded
            value: Typed value (model instance or parsed JSON) on success
            failure: Parse or validation failure detail otherwise
            validation_time_ms: Time taken for validation in milliseconds
        """
        self.success = success
        self.value = value
        self.failure = failure
        self.validation_time_ms = validation_time_ms

    @property
    def issues(self) -> tuple[ValidationIssue, ...]:
        if isinstance(self.failure, ValidationFailure):
            return self.failure.issues
        return ()

    def __repr__(self) -> str:
        if self.success:
            return f"ValidationOutcome(success=True, value={self.value!r})"
        return f"ValidationOutcome(success=False, failure={self.failure!r})"


class SchemaValidator:
    """Validates LLM responses against compiled schemas.

    The validator is stateless: one instance can serve any number of
    concurrent runs.
    """

    def __init__(self, excerpt_length: int = 120) -> None:
        """Initialize SchemaValidator.

        Args:
            excerpt_length: Maximum characters of raw text quoted in parse failures
        """
        self.excerpt_length = excerpt_length

    def validate(
        self, schema: CompiledSchema | SchemaNode, raw_text: Any
    ) -> ValidationOutcome:
        """Parse raw response text and validate it against a schema.

        Args:
            schema: Compiled schema (or bare root node) to validate against
            raw_text: Raw response from the provider

        Returns:
            Outcome with the typed value, or the parse/validation failure
        """
        start_time = time.time()

        parsed, parse_failure = self.parse(raw_text)
        if parse_failure is not None:
            logger.debug("Response failed to parse: %s", parse_failure.message)
            return ValidationOutcome(
                success=False,
                failure=parse_failure,
                validation_time_ms=(time.time() - start_time) * 1000,
            )

        outcome = self.validate_value(schema, parsed)
        outcome.validation_time_ms = (time.time() - start_time) * 1000
        return outcome

    def validate_value(
        self, schema: CompiledSchema | SchemaNode, value: Any
    ) -> ValidationOutcome:
        """Validate an already-parsed value.

        Every violation is collected so feedback can address all of them in
        one round-trip. When the schema carries a pydantic model and the
        structural check is clean, the model builds the typed value.

        Args:
            schema: Compiled schema (or bare root node)
            value: Parsed JSON value

        Returns:
            Validation outcome
        """
        start_time = time.time()
        root = schema.root if isinstance(schema, CompiledSchema) else schema
        model = schema.model if isinstance(schema, CompiledSchema) else None

        issues = self.check(root, value)
        typed_value = value
        if not issues and model is not None:
            try:
                typed_value = model.model_validate(value)
            except ValidationError as e:
                issues = self._issues_from_model_error(root, value, e)

        elapsed = (time.time() - start_time) * 1000
        if issues:
            logger.debug("Validation failed with %d issue(s)", len(issues))
            return ValidationOutcome(
                success=False,
                failure=ValidationFailure(issues=tuple(issues), value=value),
                validation_time_ms=elapsed,
            )
        return ValidationOutcome(
            success=True, value=typed_value, validation_time_ms=elapsed
        )

    def parse(self, raw_text: Any) -> tuple[Any, ParseFailure | None]:
        """Parse raw response text as JSON.

        Surrounding whitespace and a single Markdown code fence are removed
        first.

        Args:
            raw_text: Raw provider response

        Returns:
            Tuple of (parsed_value, None) or (None, parse_failure)
        """
        if not isinstance(raw_text, str):
            return None, ParseFailure(
                message=f"Response was not text (received {kind_of(raw_text)})",
                empty=True,
            )

        text = extract_json_text(raw_text)
        if not text:
            return None, ParseFailure(message="Response was empty", empty=True)

        try:
            return json.loads(text), None
        except json.JSONDecodeError as e:
            return None, ParseFailure(
                message=e.msg,
                excerpt=self._excerpt(text, e.pos),
                line=e.lineno,
                column=e.colno,
                position=e.pos,
            )

    def check(
        self,
        node: SchemaNode,
        value: Any,
        path: tuple[PathSegment, ...] = (),
    ) -> list[ValidationIssue]:
        """Structurally check a value against a node, collecting all issues.

        Args:
            node: Schema node to check against
            value: Parsed value at ``path``
            path: Field path of ``value``

        Returns:
            Every violation found, in traversal order
        """
        issues: list[ValidationIssue] = []
        self._check(node, value, path, issues)
        return issues

    def _check(
        self,
        node: SchemaNode,
        value: Any,
        path: tuple[PathSegment, ...],
        issues: list[ValidationIssue],
    ) -> None:
        if value is None and (
            node.nullable or (node.kind is SchemaKind.ANY and node.enum is None)
        ):
            return

        if not _matches_kind(node.kind, value):
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=describe_received(value),
                    message=f"Expected {node.kind.value}, received {kind_of(value)}",
                    code=IssueCode.TYPE,
                )
            )
            return

        if node.enum is not None and not any(_same(value, option) for option in node.enum):
            message = "Value is not one of the allowed options"
            if isinstance(value, str):
                suggestions = closest_options(value, node.enum)
                if suggestions:
                    quoted = ", ".join(json.dumps(option) for option in suggestions)
                    message = f"{message}. Did you mean: {quoted}?"
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=describe_received(value),
                    message=message,
                    code=IssueCode.ENUM,
                )
            )
            return

        if node.kind in (SchemaKind.INTEGER, SchemaKind.NUMBER) or (
            node.kind is SchemaKind.ANY and kind_of(value) in ("integer", "number")
        ):
            self._check_bounds(node, value, path, issues)
        elif isinstance(value, str):
            self._check_length(node, value, path, issues)
        elif isinstance(value, list):
            self._check_array(node, value, path, issues)
        elif isinstance(value, dict):
            self._check_object(node, value, path, issues)

    def _check_bounds(
        self,
        node: SchemaNode,
        value: float,
        path: tuple[PathSegment, ...],
        issues: list[ValidationIssue],
    ) -> None:
        checks = (
            (node.minimum, value < (node.minimum or 0), IssueCode.TOO_SMALL,
             "greater than or equal to"),
            (node.exclusive_minimum, value <= (node.exclusive_minimum or 0),
             IssueCode.TOO_SMALL, "greater than"),
            (node.maximum, value > (node.maximum or 0), IssueCode.TOO_BIG,
             "less than or equal to"),
            (node.exclusive_maximum, value >= (node.exclusive_maximum or 0),
             IssueCode.TOO_BIG, "less than"),
        )
        for bound, violated, code, relation in checks:
            if bound is None or not violated:
                continue
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=describe_received(value),
                    message=f"Number must be {relation} {format_number(bound)}",
                    code=code,
                )
            )

    def _check_length(
        self,
        node: SchemaNode,
        value: str,
        path: tuple[PathSegment, ...],
        issues: list[ValidationIssue],
    ) -> None:
        if node.min_length is not None and len(value) < node.min_length:
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=f"string of {len(value)} character(s)",
                    message=f"String must contain at least {node.min_length} character(s)",
                    code=IssueCode.TOO_SMALL,
                )
            )
        if node.max_length is not None and len(value) > node.max_length:
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=f"string of {len(value)} character(s)",
                    message=f"String must contain at most {node.max_length} character(s)",
                    code=IssueCode.TOO_BIG,
                )
            )

    def _check_array(
        self,
        node: SchemaNode,
        value: list[Any],
        path: tuple[PathSegment, ...],
        issues: list[ValidationIssue],
    ) -> None:
        if node.min_items is not None and len(value) < node.min_items:
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=describe_received(value),
                    message=f"Array must contain at least {node.min_items} item(s)",
                    code=IssueCode.TOO_SMALL,
                )
            )
        if node.max_items is not None and len(value) > node.max_items:
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected(),
                    received=describe_received(value),
                    message=f"Array must contain at most {node.max_items} item(s)",
                    code=IssueCode.TOO_BIG,
                )
            )
        if node.items is not None:
            for index, item in enumerate(value):
                self._check(node.items, item, (*path, index), issues)

    def _check_object(
        self,
        node: SchemaNode,
        value: dict[str, Any],
        path: tuple[PathSegment, ...],
        issues: list[ValidationIssue],
    ) -> None:
        for spec in node.fields:
            if spec.name not in value:
                if spec.required:
                    issues.append(
                        ValidationIssue(
                            path=(*path, spec.name),
                            expected=spec.node.expected(),
                            received="nothing (field missing)",
                            message="Required field is missing",
                            code=IssueCode.MISSING,
                        )
                    )
                continue
            self._check(spec.node, value[spec.name], (*path, spec.name), issues)

        if not node.additional_properties:
            declared = {spec.name for spec in node.fields}
            unexpected = [key for key in value if key not in declared]
            if unexpected:
                names = ", ".join(json.dumps(key) for key in unexpected)
                noun = "field" if len(unexpected) == 1 else "fields"
                # Reported on the parent object; the unknown keys are not schema paths
                issues.append(
                    ValidationIssue(
                        path=path,
                        expected="no fields beyond those declared",
                        received=f"{noun} {names}",
                        message=f"Unrecognized {noun} {names} not allowed",
                        code=IssueCode.UNEXPECTED,
                    )
                )

    def _issues_from_model_error(
        self, root: SchemaNode, value: Any, error: ValidationError
    ) -> list[ValidationIssue]:
        """Convert pydantic's structured error list into validation issues."""
        issues = []
        for detail in error.errors():
            path = _declared_path(root, value, detail.get("loc", ()))
            node = root.node_at(path)
            error_type = detail.get("type", "")
            issues.append(
                ValidationIssue(
                    path=path,
                    expected=node.expected() if node is not None else error_type,
                    received=(
                        describe_received(detail["input"])
                        if "input" in detail
                        else "unknown"
                    ),
                    message=detail.get("msg", "Invalid value"),
                    code=IssueCode.MISSING if error_type == "missing" else IssueCode.CUSTOM,
                )
            )
        return issues

    def _excerpt(self, text: str, position: int) -> str:
        half = self.excerpt_length // 2
        start = max(0, position - half)
        end = min(len(text), start + self.excerpt_length)
        excerpt = text[start:end]
        if start > 0:
            excerpt = "..." + excerpt
        if end < len(text):
            excerpt += "..."
        return excerpt


def extract_json_text(raw_text: str) -> str:
    """Strip whitespace and one surrounding Markdown code fence."""
    text = raw_text.strip()
    match = _CODE_FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text


def closest_options(
    value: str, options: Sequence[Any], limit: int = 3, cutoff: float = 0.3
) -> list[str]:
    """Return the string options most similar to ``value``, best first.

    Comparison ignores case; options below ``cutoff`` similarity are dropped.

    Args:
        value: The rejected string
        options: Allowed enum values; non-strings are ignored
        limit: Maximum number of suggestions
        cutoff: Minimum similarity ratio in [0, 1]

    Returns:
        Matching options in their declared spelling
    """
    by_folded: dict[str, str] = {}
    for option in options:
        if isinstance(option, str):
            by_folded.setdefault(option.lower(), option)
    matches = difflib.get_close_matches(
        value.lower(), list(by_folded), n=limit, cutoff=cutoff
    )
    return [by_folded[match] for match in matches]


def _matches_kind(kind: SchemaKind, value: Any) -> bool:
    if kind is SchemaKind.ANY:
        return True
    if kind is SchemaKind.OBJECT:
        return isinstance(value, dict)
    if kind is SchemaKind.ARRAY:
        return isinstance(value, list)
    if kind is SchemaKind.STRING:
        return isinstance(value, str)
    if kind is SchemaKind.BOOLEAN:
        return isinstance(value, bool)
    if kind is SchemaKind.NULL:
        return value is None
    if isinstance(value, bool):
        return False
    if kind is SchemaKind.INTEGER:
        return isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    return isinstance(value, (int, float))


def _same(value: Any, option: Any) -> bool:
    """JSON equality: booleans never equal numbers."""
    if isinstance(value, bool) or isinstance(option, bool):
        return isinstance(value, bool) and isinstance(option, bool) and value == option
    return bool(value == option)


def _declared_path(
    root: SchemaNode, value: Any, loc: Sequence[Any]
) -> tuple[PathSegment, ...]:
    """Longest prefix of ``loc`` the schema declares and ``value`` contains.

    pydantic locations can carry segments that are not field names, such as
    the tag of the union member being tried; the walk stops at the first
    segment the node does not declare. A missing field is the one exception
    to the presence rule: its name is kept since the schema declares it.
    """
    path: list[PathSegment] = []
    node: SchemaNode | None = root
    current = value
    for segment in loc:
        child = node.child(segment) if node is not None else None
        if child is None:
            break
        if isinstance(current, dict) and isinstance(segment, str):
            path.append(segment)
            if segment not in current:
                break
            current = current[segment]
        elif (
            isinstance(current, list)
            and isinstance(segment, int)
            and 0 <= segment < len(current)
        ):
            path.append(segment)
            current = current[segment]
        else:
            break
        node = child
    return tuple(path)
