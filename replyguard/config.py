"""Global configuration for replyguard."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass
from typing import Dict, Any, Optional


CONFIDENCE_THRESHOLDS: Dict[str, float] = {
    "auto_response": 0.85,
    "suggest": 0.70,
}

DEFAULT_RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "categorization": {"per_hour": 200, "per_day": 2000},
    "sentiment": {"per_hour": 200, "per_day": 2000},
    "faq_detection": {"per_hour": 200, "per_day": 2000},
    "auto_response": {"per_hour": 50, "per_day": 500},
    "voice_matching": {"per_hour": 50, "per_day": 500},
    "opportunity_scoring": {"per_hour": 100, "per_day": 1000},
    "daily_agent": {"per_hour": 2, "per_day": 2},
}

# Cents charged to the owner's daily cost record per billed operation.
DEFAULT_OPERATION_COST_CENTS: Dict[str, int] = {
    "faq_detection": 1,
    "auto_response": 0,
}

DEFAULT_DAILY_BUDGET_CENTS = 500
BUDGET_ALERT_PERCENT = 80.0
BUDGET_EXCEEDED_PERCENT = 100.0
RATE_LIMIT_WARNING_RATIO = 0.8

IDEMPOTENCY_MAX_SIZE = 1000
IDEMPOTENCY_TTL_SECONDS = 300.0
IDEMPOTENCY_SWEEP_SECONDS = 60.0

BUDGET_SWEEP_SECONDS = 3600.0

MATCHER_TOP_K = 3
MATCHER_TIMEOUT_SECONDS = 1.0
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSION = 1536

# Auto-response delay, and the window in which an owner message cancels it.
AUTO_RESPONSE_DELAY_SECONDS = 0.5
MANUAL_OVERRIDE_WINDOW_SECONDS = 1.0

DEFAULT_OWNER_CONFIG: Dict[str, Any] = {
    "feature_enabled": True,
    "require_approval": False,
    "max_auto_actions_per_day": 20,
    "escalation_sentiment_threshold": 0.3,
}

_rate_limits: Dict[str, Dict[str, int]] = copy.deepcopy(DEFAULT_RATE_LIMITS)
_operation_costs: Dict[str, int] = copy.deepcopy(DEFAULT_OPERATION_COST_CENTS)


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _check_rate_limits(limits: Dict[str, Dict[str, int]]) -> None:
    if not isinstance(limits, dict) or not limits:
        raise ValueError("rate limits must be a non-empty dict")
    for operation, window in limits.items():
        if not isinstance(window, dict) or "per_hour" not in window or "per_day" not in window:
            raise ValueError(f"rate limits for {operation} must include 'per_hour' and 'per_day'")
        for key in ("per_hour", "per_day"):
            if not isinstance(window[key], int) or window[key] < 1:
                raise ValueError(f"{key} for {operation} must be a positive integer")


def get_rate_limits() -> Dict[str, Dict[str, int]]:
    """Return the per-operation rate limit table, with optional env override."""
    parsed = _parse_json_env("REPLYGUARD_RATE_LIMITS_JSON")
    if parsed:
        try:
            _check_rate_limits(parsed)
        except ValueError:
            return _rate_limits
        return parsed
    return _rate_limits


def set_rate_limits(limits: Dict[str, Dict[str, int]]) -> None:
    """Replace the rate limit table at runtime."""
    _check_rate_limits(limits)
    global _rate_limits
    _rate_limits = copy.deepcopy(limits)


def get_operation_costs() -> Dict[str, int]:
    """Return per-operation charges in cents, with optional env override."""
    parsed = _parse_json_env("REPLYGUARD_OPERATION_COSTS_JSON")
    if parsed:
        return {str(k): int(v) for k, v in parsed.items()}
    return _operation_costs


def set_operation_costs(costs: Dict[str, int]) -> None:
    """Set per-operation charges at runtime."""
    if not isinstance(costs, dict):
        raise ValueError("operation costs must be a dict")
    for operation, cents in costs.items():
        if not isinstance(cents, int) or cents < 0:
            raise ValueError(f"cost for {operation} must be a non-negative integer")
    global _operation_costs
    _operation_costs = copy.deepcopy(costs)


def reset_defaults() -> None:
    """Restore the built-in tables (used by tests and the CLI)."""
    global _rate_limits, _operation_costs
    _rate_limits = copy.deepcopy(DEFAULT_RATE_LIMITS)
    _operation_costs = copy.deepcopy(DEFAULT_OPERATION_COST_CENTS)


@dataclass(frozen=True)
class Settings:
    """Deployment settings read from the environment."""
    db_path: str = "replyguard.db"
    metrics_file: Optional[str] = None
    api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    expo_access_token: Optional[str] = None
    fcm_project_id: Optional[str] = None
    fcm_access_token: Optional[str] = None


def get_settings() -> Settings:
    """Build a settings snapshot from environment variables."""
    return Settings(
        db_path=os.getenv("REPLYGUARD_DB_PATH", "replyguard.db"),
        metrics_file=os.getenv("REPLYGUARD_METRICS_FILE") or None,
        api_key=os.getenv("REPLYGUARD_API_KEY") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        expo_access_token=os.getenv("EXPO_ACCESS_TOKEN") or None,
        fcm_project_id=os.getenv("FCM_PROJECT_ID") or None,
        fcm_access_token=os.getenv("FCM_ACCESS_TOKEN") or None,
    )
