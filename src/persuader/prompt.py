"""Prompt construction for schema-guided runs and schema-free preloads."""

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from persuader.feedback import FeedbackMessage
from persuader.schema.manager import CompiledSchema
from persuader.schema.nodes import describe_schema

logger = logging.getLogger(__name__)

FEEDBACK_HEADING = "PREVIOUS ATTEMPT FAILED VALIDATION"

_REQUIREMENTS = """REQUIREMENTS:
1. Output MUST be valid JSON that parses correctly
2. Output MUST conform exactly to the schema below
3. All required fields MUST be present
4. Field types MUST match exactly (string, number, boolean, etc.)
5. Do not include any explanatory text, only the JSON response"""


@dataclass(frozen=True)
class PromptParts:
    """System and user halves of a prompt, combined before sending."""

    system_prompt: str
    user_prompt: str


class PromptBuilder:
    """Builds the outbound text for each attempt.

    Every attempt carries the full prompt: instructions, context, lens,
    schema description and input. Retries add the previous attempt's
    feedback as a trailing section.
    """

    def build(
        self,
        schema: CompiledSchema,
        input_data: Any,
        context: str | None = None,
        lens: str | None = None,
        example_output: Any = None,
    ) -> PromptParts:
        """Build prompt parts for a schema-guided run.

        Args:
            schema: Compiled schema the output must match
            input_data: Data to process; strings are sent as-is
            context: Global context for the run
            lens: Perspective to process the input from
            example_output: Concrete example of valid output

        Returns:
            Prompt parts for the run
        """
        sections = [
            "You are a precise data extraction and transformation assistant. "
            "Process the input data and return a JSON response that exactly "
            "matches the required schema.",
            _REQUIREMENTS,
            f"SCHEMA REQUIREMENTS:\n{describe_schema(schema.root)}",
        ]
        if context:
            sections.append(f"CONTEXT:\n{context}")
        if lens:
            sections.append(
                f"PERSPECTIVE:\nProcess the input from this perspective: {lens}"
            )
        if example_output is not None:
            sections.append(
                "EXAMPLE OUTPUT FORMAT:\n"
                f"{serialize(example_output)}\n"
                "Your response must follow this exact structure."
            )

        user_prompt = (
            "Process the following input and return a JSON response matching "
            f"the schema requirements:\n\nINPUT DATA:\n{serialize(input_data)}\n\n"
            "Remember: return only valid JSON that matches the schema."
        )
        return PromptParts(system_prompt="\n\n".join(sections), user_prompt=user_prompt)

    def combine(
        self, parts: PromptParts, feedback: FeedbackMessage | None = None
    ) -> str:
        """Join prompt parts, appending feedback from the previous attempt."""
        prompt = f"{parts.system_prompt}\n\n{parts.user_prompt}"
        if feedback is not None:
            prompt += (
                f"\n\n{FEEDBACK_HEADING}:\n{feedback.text}\n\n"
                "Please correct these issues and provide valid JSON matching the schema."
            )
        logger.debug("Built prompt of %d characters", len(prompt))
        return prompt

    def build_preload(
        self, data: Any, context: str | None = None, lens: str | None = None
    ) -> str:
        """Build the schema-free prompt that loads data into a session."""
        sections = []
        if context:
            sections.append(f"CONTEXT:\n{context}")
        if lens:
            sections.append(f"PERSPECTIVE:\n{lens}")
        sections.append(
            "Read and remember the following data. It will be referred to in "
            f"later requests.\n\nDATA:\n{serialize(data)}"
        )
        sections.append("Acknowledge briefly once the data is loaded.")
        return "\n\n".join(sections)

    def build_enhancement(
        self,
        schema: CompiledSchema,
        current: Any,
        request: str,
        context: str | None = None,
        lens: str | None = None,
    ) -> str:
        """Build the prompt asking for an improved version of a valid result.

        Args:
            schema: Compiled schema the improved result must still match
            current: Current best valid result
            request: Strategy-specific improvement request
            context: Global context for the run
            lens: Perspective to process the input from

        Returns:
            Prompt text for one enhancement round
        """
        sections = []
        if context:
            sections.append(f"CONTEXT:\n{context}")
        sections.append(
            "SCHEMA REQUIREMENTS:\nThe output must still conform exactly to this "
            f"structure:\n{describe_schema(schema.root)}"
        )
        sections.append(
            "CURRENT RESULT:\nHere is the current valid result:\n"
            f"{json.dumps(current) if isinstance(current, str) else serialize(current)}"
        )
        sections.append(f"ENHANCEMENT REQUEST:\n{request}")
        if lens:
            sections.append(f"PERSPECTIVE:\n{lens}")
        sections.append(
            "Return the complete improved result as valid JSON only, with no "
            "explanatory text."
        )
        return "\n\n".join(sections)


def serialize(data: Any) -> str:
    """Render input data for a prompt; strings pass through unchanged."""
    if isinstance(data, str):
        return data
    if isinstance(data, BaseModel):
        return data.model_dump_json(indent=2)
    return json.dumps(data, indent=2, default=str)
