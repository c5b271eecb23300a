"""Post-success enhancement rounds: asking for a better version of valid output.

After a run succeeds, each enhancement round shows the model its current
valid result and asks for an improved one. A candidate replaces the current
best only if it validates against the schema and scores at least
``min_improvement`` against it.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_ROUNDS = 5


class EnhancementStrategy(Enum):
    """How enhancement prompts push the model and how candidates are scored."""

    EXPAND_ARRAY = "expand-array"
    EXPAND_DETAIL = "expand-detail"
    EXPAND_VARIETY = "expand-variety"
    CUSTOM = "custom"


@dataclass(frozen=True)
class EnhancementConfig:
    """Settings for enhancement rounds.

    Attributes:
        rounds: Number of enhancement rounds after a successful run
        strategy: Built-in prompt and scoring strategy
        min_improvement: Score in [0, 1] a candidate needs to be accepted
        custom_prompt: Builds the request from (current_result, round_number);
            required for the CUSTOM strategy, overrides the built-in prompt
            for the others
        evaluate: Scores (baseline, candidate) in [0, 1]; overrides the
            strategy's built-in scoring
    """

    rounds: int
    strategy: EnhancementStrategy = EnhancementStrategy.EXPAND_ARRAY
    min_improvement: float = 0.2
    custom_prompt: Callable[[Any, int], str] | None = None
    evaluate: Callable[[Any, Any], float] | None = None

    def __post_init__(self) -> None:
        if self.rounds < 0:
            raise ValueError("Enhancement rounds must be non-negative")
        if not 0 <= self.min_improvement <= 1:
            raise ValueError("min_improvement must be between 0 and 1")
        if self.strategy is EnhancementStrategy.CUSTOM and self.custom_prompt is None:
            raise ValueError("The custom strategy requires custom_prompt")
        if self.rounds > MAX_RECOMMENDED_ROUNDS:
            logger.warning(
                "%d enhancement rounds requested; more than %d rarely helps",
                self.rounds,
                MAX_RECOMMENDED_ROUNDS,
            )

    @classmethod
    def coerce(cls, value: "int | EnhancementConfig | None") -> "EnhancementConfig | None":
        """Accept a bare round count as shorthand for the default strategy."""
        if value is None or isinstance(value, EnhancementConfig):
            return value
        return cls(rounds=value)


@dataclass(frozen=True)
class ResultProfile:
    """Size and variety measurements of a result, used for scoring."""

    array_count: int = 0
    total_items: int = 0
    total_string_length: int = 0
    unique_values: int = 0
    depth: int = 0
    has_arrays: bool = False

    @property
    def average_string_length(self) -> float:
        return self.total_string_length / max(1, self.total_items)

    @property
    def uniqueness_ratio(self) -> float:
        return self.unique_values / max(1, self.total_items)


def profile_result(result: Any) -> ResultProfile:
    """Measure a result: items in arrays and objects, string sizes, distinct values."""
    counts = {"arrays": 0, "items": 0, "chars": 0, "depth": 0}
    unique: set[str] = set()

    def walk(value: Any, depth: int) -> None:
        counts["depth"] = max(counts["depth"], depth)
        if isinstance(value, list):
            counts["arrays"] += 1
            counts["items"] += len(value)
            for item in value:
                unique.add(json.dumps(item, sort_keys=True, default=str))
                walk(item, depth + 1)
        elif isinstance(value, dict):
            counts["items"] += len(value)
            for item in value.values():
                walk(item, depth + 1)
        elif isinstance(value, str):
            counts["chars"] += len(value)
            unique.add(value)

    walk(_plain(result), 0)
    return ResultProfile(
        array_count=counts["arrays"],
        total_items=counts["items"],
        total_string_length=counts["chars"],
        unique_values=len(unique),
        depth=counts["depth"],
        has_arrays=counts["arrays"] > 0,
    )


def build_enhancement_request(
    config: EnhancementConfig, current: Any, round_number: int
) -> str:
    """Build the improvement request for one round (1-based)."""
    if config.custom_prompt is not None:
        return config.custom_prompt(current, round_number)

    profile = profile_result(current)
    if config.strategy is EnhancementStrategy.EXPAND_DETAIL:
        return _detail_request(profile, round_number)
    if config.strategy is EnhancementStrategy.EXPAND_VARIETY:
        return _variety_request(profile, round_number)
    return _array_request(profile, round_number)


def evaluate_improvement(
    config: EnhancementConfig, baseline: Any, candidate: Any
) -> float:
    """Score how much ``candidate`` improves on ``baseline``, clamped to [0, 1]."""
    if config.evaluate is not None:
        score = config.evaluate(baseline, candidate)
    else:
        before = profile_result(baseline)
        after = profile_result(candidate)
        if config.strategy is EnhancementStrategy.EXPAND_DETAIL:
            score = _detail_score(before, after)
        elif config.strategy is EnhancementStrategy.EXPAND_VARIETY:
            score = _variety_score(before, after)
        else:
            score = _array_score(before, after)
    return min(1.0, max(0.0, float(score)))


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _pick(options: tuple[str, ...], round_number: int) -> str:
    return options[min(max(round_number, 1), len(options)) - 1]


_ARRAY_OPENERS = (
    "Great start! Could you expand this with more comprehensive examples?",
    "Excellent foundation! Let's add more diverse items to make this even better.",
    "Good work! Can you provide additional entries to create a more complete set?",
)

_DETAIL_OPENERS = (
    "Good response! Let's enhance it with more detailed information.",
    "Nice work! Could you elaborate further with additional depth?",
    "Great foundation! Please add more comprehensive details.",
)

_VARIETY_OPENERS = (
    "Good variety! Let's add more diverse perspectives.",
    "Nice range! Could you include additional unique variations?",
    "Great diversity! Please add more distinct examples.",
)


def _array_request(profile: ResultProfile, round_number: int) -> str:
    opener = _pick(_ARRAY_OPENERS, round_number)
    if not profile.has_arrays:
        return (
            f"{opener}\n\nCould you expand your response with more items or "
            "examples? Aim for a comprehensive collection that thoroughly covers "
            "the topic."
        )
    more = max(5, profile.total_items // 2)
    return (
        f"{opener}\n\nYou provided {profile.total_items} items, which is good. "
        f"Could you add approximately {more} more items to create a more "
        "comprehensive collection?\n\n"
        "Focus on:\n"
        "- Adding diverse and unique examples\n"
        "- Maintaining the same quality and structure\n"
        "- Avoiding repetition or redundancy\n\n"
        "Please provide the complete enhanced result including both the "
        "original items and the new additions."
    )


def _detail_request(profile: ResultProfile, round_number: int) -> str:
    opener = _pick(_DETAIL_OPENERS, round_number)
    assessment = (
        "The current descriptions are quite brief."
        if profile.average_string_length < 50
        else "Good level of detail so far."
    )
    return (
        f"{opener}\n\n{assessment} Please enhance the result by:\n\n"
        "- Adding more descriptive information to each item\n"
        "- Including relevant context and explanations\n"
        "- Providing specific examples where applicable\n"
        "- Expanding on key points with additional insights\n\n"
        "Maintain the same structure while enriching the content quality."
    )


def _variety_request(profile: ResultProfile, round_number: int) -> str:
    opener = _pick(_VARIETY_OPENERS, round_number)
    assessment = (
        "Some items appear similar."
        if profile.uniqueness_ratio < 0.8
        else "Good variety so far."
    )
    return (
        f"{opener}\n\n{assessment} Please enhance the result by:\n\n"
        "- Adding more unique and distinctive items\n"
        "- Exploring different angles or perspectives\n"
        "- Avoiding repetition or similar patterns\n"
        "- Including edge cases or less common examples\n\n"
        "Focus on maximizing diversity while maintaining quality and relevance."
    )


def _array_score(before: ResultProfile, after: ResultProfile) -> float:
    if before.total_items == 0:
        return 1.0 if after.total_items > 0 else 0.0
    growth = (after.total_items - before.total_items) / before.total_items
    # Mostly growth, partly whether the new items stay distinct
    return growth * 0.7 + after.uniqueness_ratio * 0.3


def _detail_score(before: ResultProfile, after: ResultProfile) -> float:
    if before.average_string_length == 0:
        return 1.0 if after.average_string_length > 0 else 0.0
    growth = (
        after.average_string_length - before.average_string_length
    ) / before.average_string_length
    return growth * 0.8 + (0.2 if after.depth > before.depth else 0.0)


def _variety_score(before: ResultProfile, after: ResultProfile) -> float:
    if before.unique_values == 0:
        return 1.0 if after.unique_values > 0 else 0.0
    growth = (after.unique_values - before.unique_values) / before.unique_values
    return growth * 0.6 + after.uniqueness_ratio * 0.4
