"""Unit tests for PromptBuilder."""

import pytest
from pydantic import BaseModel

from persuader.feedback import FeedbackMessage
from persuader.prompt import FEEDBACK_HEADING, PromptBuilder, serialize
from persuader.schema.manager import SchemaManager


class Recipe(BaseModel):
    """Sample model for prompt tests."""

    title: str
    servings: int


@pytest.mark.unit
class TestPromptBuilder:
    """Test cases for prompt construction."""

    def test_build_includes_all_sections(self) -> None:
        """Test that the prompt carries context, lens, schema and input."""
        schema = SchemaManager().compile(Recipe)

        parts = PromptBuilder().build(
            schema,
            {"text": "Pancakes for four"},
            context="You read recipes.",
            lens="a pastry chef",
            example_output={"title": "Soup", "servings": 2},
        )

        assert "CONTEXT:\nYou read recipes." in parts.system_prompt
        assert "a pastry chef" in parts.system_prompt
        assert '"title" (required): string' in parts.system_prompt
        assert '"servings": 2' in parts.system_prompt
        assert '"text": "Pancakes for four"' in parts.user_prompt

    def test_build_omits_absent_sections(self) -> None:
        """Test that context, lens and example sections are optional."""
        schema = SchemaManager().compile(Recipe)

        parts = PromptBuilder().build(schema, "plain text input")

        assert "CONTEXT:" not in parts.system_prompt
        assert "PERSPECTIVE:" not in parts.system_prompt
        assert "EXAMPLE OUTPUT FORMAT:" not in parts.system_prompt
        assert "plain text input" in parts.user_prompt

    def test_first_attempt_has_no_feedback(self) -> None:
        """Test that combining without feedback adds no feedback section."""
        builder = PromptBuilder()
        parts = builder.build(SchemaManager().compile(Recipe), "x")

        prompt = builder.combine(parts)

        assert FEEDBACK_HEADING not in prompt
        assert prompt.startswith(parts.system_prompt)
        assert parts.user_prompt in prompt

    def test_retry_appends_feedback(self) -> None:
        """Test that retries carry the full prompt plus the feedback section."""
        builder = PromptBuilder()
        parts = builder.build(SchemaManager().compile(Recipe), "x")
        feedback = FeedbackMessage(text="servings: expected integer", attempt_number=1)

        prompt = builder.combine(parts, feedback)

        assert prompt.startswith(builder.combine(parts))
        assert f"{FEEDBACK_HEADING}:\nservings: expected integer" in prompt

    def test_build_preload(self) -> None:
        """Test the schema-free preload prompt."""
        prompt = PromptBuilder().build_preload(
            {"rows": [1, 2]}, context="Sales data", lens="an auditor"
        )

        assert prompt.startswith("CONTEXT:\nSales data")
        assert "PERSPECTIVE:\nan auditor" in prompt
        assert '"rows": [' in prompt
        assert "SCHEMA" not in prompt

    def test_serialize(self) -> None:
        """Test input serialization for strings, models and plain data."""
        assert serialize("as is") == "as is"
        assert serialize({"a": 1}) == '{\n  "a": 1\n}'
        assert '"title": "Soup"' in serialize(Recipe(title="Soup", servings=2))
