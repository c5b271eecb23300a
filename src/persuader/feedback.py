"""Turn a failed attempt into corrective feedback for the next attempt.

The synthesizer is a pure function of its inputs: the same failure, attempt
number, attempt budget and schema always produce the same text. Issues are
ordered by where the schema declares them, never by discovery order.
"""

from dataclasses import dataclass

from persuader.providers.base import ProviderFailure
from persuader.schema.manager import CompiledSchema
from persuader.schema.nodes import SchemaKind, SchemaNode, describe_schema
from persuader.schema.validators import (
    ISSUE_CODE_ORDER,
    ParseFailure,
    ValidationFailure,
    ValidationIssue,
)

FailureDetail = ParseFailure | ValidationFailure | ProviderFailure

FINAL_ATTEMPT_WARNING = (
    "FINAL ATTEMPT: this is your last chance to return valid output. "
    "Every outstanding issue is listed below; fix all of them."
)


@dataclass(frozen=True)
class FeedbackMessage:
    """Corrective text appended to the next attempt's prompt."""

    text: str
    attempt_number: int
    final_attempt: bool = False


class FeedbackSynthesizer:
    """Builds feedback messages from parse, validation and provider failures."""

    def __init__(self, summary_limit: int = 5) -> None:
        """Initialize the synthesizer.

        Args:
            summary_limit: Issues listed before summarising the remainder,
                except on the final retry where all are listed
        """
        if summary_limit < 1:
            raise ValueError("summary_limit must be at least 1")
        self.summary_limit = summary_limit

    def synthesize(
        self,
        failure: FailureDetail,
        attempt_number: int,
        max_attempts: int,
        schema: CompiledSchema | SchemaNode | None = None,
    ) -> FeedbackMessage:
        """Build feedback for the attempt following ``attempt_number``.

        Args:
            failure: Why attempt ``attempt_number`` failed
            attempt_number: Ordinal of the failed attempt (1-based)
            max_attempts: Attempt budget of the run
            schema: Schema being enforced, used to restate the expected shape
                and to order issues by declaration

        Returns:
            Feedback message for the next prompt
        """
        root = schema.root if isinstance(schema, CompiledSchema) else schema
        final = attempt_number == max_attempts - 1

        if isinstance(failure, ParseFailure):
            body = self._parse_feedback(failure, attempt_number, root)
        elif isinstance(failure, ValidationFailure):
            body = self._validation_feedback(failure, attempt_number, root, final)
        else:
            body = self._provider_feedback(failure, attempt_number)

        text = f"{FINAL_ATTEMPT_WARNING}\n\n{body}" if final else body
        return FeedbackMessage(text=text, attempt_number=attempt_number, final_attempt=final)

    def order_issues(
        self, issues: tuple[ValidationIssue, ...] | list[ValidationIssue], root: SchemaNode | None
    ) -> list[ValidationIssue]:
        """Sort by schema declaration order and keep the first issue per path."""
        indexed = list(enumerate(issues))
        if root is not None:
            indexed.sort(
                key=lambda item: (
                    root.order_key(item[1].path),
                    ISSUE_CODE_ORDER[item[1].code],
                    item[0],
                )
            )

        seen: set[tuple[str | int, ...]] = set()
        ordered = []
        for _, issue in indexed:
            if issue.path in seen:
                continue
            seen.add(issue.path)
            ordered.append(issue)
        return ordered

    def _validation_feedback(
        self,
        failure: ValidationFailure,
        attempt_number: int,
        root: SchemaNode | None,
        final: bool,
    ) -> str:
        issues = self.order_issues(failure.issues, root)
        shown = issues if final else issues[: self.summary_limit]

        lines = [
            f"{_tone(attempt_number)}Your previous response (attempt {attempt_number}) "
            f"did not match the required schema. {_count(len(issues), 'issue')} found:"
        ]
        lines.extend(f"  - {format_issue(issue)}" for issue in shown)
        hidden = len(issues) - len(shown)
        if hidden:
            lines.append(f"  ... and {_count(hidden, 'more issue')}")
        lines.append("")
        lines.append(
            "Return a corrected JSON value that fixes every issue above. "
            "Respond with the JSON only."
        )
        return "\n".join(lines)

    def _parse_feedback(
        self, failure: ParseFailure, attempt_number: int, root: SchemaNode | None
    ) -> str:
        tone = _tone(attempt_number)
        if failure.empty:
            lines = [
                f"{tone}Your previous response (attempt {attempt_number}) was empty "
                f"or unusable: {failure.message}."
            ]
        else:
            location = ""
            if failure.line is not None and failure.column is not None:
                location = f" (line {failure.line}, column {failure.column})"
            lines = [
                f"{tone}Your previous response (attempt {attempt_number}) was not "
                f"well-formed JSON: {failure.message}{location}."
            ]
            if failure.excerpt:
                lines.append(f"Near: {failure.excerpt}")

        if root is not None:
            lines.append("")
            lines.append("Respond with a single JSON value of exactly this shape:")
            lines.append(describe_schema(root))
        lines.append("")
        lines.append(_json_instruction(attempt_number, root))
        return "\n".join(lines)

    def _provider_feedback(self, failure: ProviderFailure, attempt_number: int) -> str:
        return (
            f"{_tone(attempt_number)}The previous request (attempt {attempt_number}) "
            f"failed before a usable response arrived ({failure.message}). "
            "Please answer again with JSON matching the required schema only."
        )


def format_issue(issue: ValidationIssue) -> str:
    """Render one issue as ``<path>: expected <expected>, got <received> — <message>``."""
    return (
        f"{issue.path_str}: expected {issue.expected}, "
        f"got {issue.received} — {issue.message}"
    )


def _tone(attempt_number: int) -> str:
    if attempt_number >= 3:
        return "CRITICAL: "
    if attempt_number >= 2:
        return "IMPORTANT: "
    return ""


def _json_instruction(attempt_number: int, root: SchemaNode | None) -> str:
    if attempt_number >= 2 and root is not None and root.kind in (
        SchemaKind.OBJECT,
        SchemaKind.ARRAY,
    ):
        opening, closing = ("{", "}") if root.kind is SchemaKind.OBJECT else ("[", "]")
        return (
            f'Your response MUST start with "{opening}" and end with "{closing}". '
            "No text before or after the JSON."
        )
    return (
        "The response must be valid JSON: balanced brackets, double-quoted "
        "strings and keys, no trailing commas, and no text outside the JSON."
    )


def _count(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"
