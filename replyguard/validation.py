"""
Input validation for replyguard.

Validates caller-supplied values before they reach the matcher or the store.
"""

from typing import Any


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


MAX_TEXT_LENGTH = 20_000  # Chat messages, not documents
MAX_TOP_K = 100
MAX_AUTO_ACTIONS_PER_DAY = 10_000


def validate_text(text: Any) -> None:
    """
    Validate message text submitted for matching.

    Args:
        text: Message text

    Raises:
        ValidationError: If text is invalid
    """
    if not isinstance(text, str):
        raise ValidationError(f"Text must be a string, got {type(text).__name__}")

    if not text or not text.strip():
        raise ValidationError("Text cannot be empty or whitespace-only")

    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(
            f"Text too long: {len(text):,} characters "
            f"(max: {MAX_TEXT_LENGTH:,})"
        )


def validate_top_k(top_k: Any) -> None:
    """
    Validate number of candidates requested.

    Raises:
        ValidationError: If top_k is invalid
    """
    if isinstance(top_k, bool) or not isinstance(top_k, int):
        raise ValidationError(f"top_k must be an integer, got {type(top_k).__name__}")

    if top_k < 1:
        raise ValidationError(f"top_k must be >= 1, got {top_k}")

    if top_k > MAX_TOP_K:
        raise ValidationError(f"top_k too large: {top_k} (max: {MAX_TOP_K})")


def validate_min_score(min_score: Any) -> None:
    """
    Validate a similarity score floor.

    Raises:
        ValidationError: If min_score is outside 0.0-1.0
    """
    if isinstance(min_score, bool) or not isinstance(min_score, (int, float)):
        raise ValidationError(
            f"min_score must be a number, got {type(min_score).__name__}"
        )

    if not 0.0 <= min_score <= 1.0:
        raise ValidationError(f"min_score must be between 0.0 and 1.0, got {min_score}")


def validate_sentiment_threshold(threshold: Any) -> None:
    """
    Validate an escalation sentiment threshold.

    Raises:
        ValidationError: If threshold is outside -1.0-1.0
    """
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise ValidationError(
            f"escalation_sentiment_threshold must be a number, got {type(threshold).__name__}"
        )

    if not -1.0 <= threshold <= 1.0:
        raise ValidationError(
            f"escalation_sentiment_threshold must be between -1.0 and 1.0, got {threshold}"
        )


def validate_max_auto_actions(max_per_day: Any) -> None:
    """Validate the owner's daily automated action cap."""
    if isinstance(max_per_day, bool) or not isinstance(max_per_day, int):
        raise ValidationError(
            f"max_auto_actions_per_day must be an integer, got {type(max_per_day).__name__}"
        )

    if max_per_day < 0:
        raise ValidationError(f"max_auto_actions_per_day cannot be negative, got {max_per_day}")

    if max_per_day > MAX_AUTO_ACTIONS_PER_DAY:
        raise ValidationError(
            f"max_auto_actions_per_day too large: {max_per_day:,} "
            f"(max: {MAX_AUTO_ACTIONS_PER_DAY:,})"
        )


def validate_owner_config(config) -> None:
    """
    Validate an OwnerGuardrailConfig before it is stored.

    Raises:
        ValidationError: If any field is invalid
    """
    if not config.owner_id or not str(config.owner_id).strip():
        raise ValidationError("owner_id cannot be empty")
    validate_max_auto_actions(config.max_auto_actions_per_day)
    validate_sentiment_threshold(config.escalation_sentiment_threshold)


def validate_cost_cents(cents: Any) -> None:
    """Validate a billed amount in cents."""
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise ValidationError(f"cost must be an integer number of cents, got {type(cents).__name__}")

    if cents < 0:
        raise ValidationError(f"cost cannot be negative, got {cents}")
