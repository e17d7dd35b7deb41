"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from replyguard import config


class WindowKind(str, Enum):
    """Rate-limit window cadence."""
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def duration(self) -> timedelta:
        if self is WindowKind.HOURLY:
            return timedelta(hours=1)
        return timedelta(days=1)

    def window_start(self, now: datetime) -> datetime:
        """Start of the window containing `now` (UTC hour or UTC day)."""
        now = now.astimezone(timezone.utc)
        if self is WindowKind.HOURLY:
            return now.replace(minute=0, second=0, microsecond=0)
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    def next_reset(self, now: datetime) -> datetime:
        return self.window_start(now) + self.duration


def day_period_id(now: datetime) -> str:
    """Cost and action period id for the UTC day containing `now`."""
    return "daily-" + now.astimezone(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class OwnerGuardrailConfig:
    """Per-owner automation settings. Written by the owner's settings surface."""
    owner_id: str
    feature_enabled: bool = True
    require_approval: bool = False
    max_auto_actions_per_day: int = 20
    escalation_sentiment_threshold: float = 0.3

    @classmethod
    def default(cls, owner_id: str) -> "OwnerGuardrailConfig":
        return cls(owner_id=owner_id, **config.DEFAULT_OWNER_CONFIG)


@dataclass
class FeatureFlags:
    """Budget kill switch for an owner's automated features."""
    owner_id: str
    features_disabled: bool = False
    disabled_reason: Optional[str] = None
    disabled_at: Optional[datetime] = None


@dataclass
class WindowCounter:
    """One rate-limit window row for (owner, operation, window kind)."""
    owner_id: str
    operation: str
    window_kind: WindowKind
    count: int
    window_start: datetime
    warning_sent: bool = False

    def is_current(self, now: datetime) -> bool:
        return now < self.window_start + self.window_kind.duration


@dataclass
class CostUsageRecord:
    """Accumulated cost for an owner over one day period."""
    owner_id: str
    period_id: str
    total_cost_cents: int = 0
    budget_limit_cents: int = config.DEFAULT_DAILY_BUDGET_CENTS
    used_percent: float = 0.0
    alert_sent: bool = False
    exceeded: bool = False
    cost_by_operation: Dict[str, int] = field(default_factory=dict)
    updated_at: Optional[datetime] = None


@dataclass
class PushToken:
    """A device push token registered to an owner."""
    token: str
    provider: Optional[str] = None
    platform: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class AnswerPayload:
    """Stored payload attached to an indexed answer."""
    answer_text: str
    is_active: bool
    owner_scope: str
    category: str = "general"
    question: str = ""


@dataclass
class CandidateMatch:
    """One similarity search hit, highest score first in result lists."""
    id: str
    score: float
    payload: AnswerPayload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "answer_text": self.payload.answer_text,
            "is_active": self.payload.is_active,
            "owner_scope": self.payload.owner_scope,
            "category": self.payload.category,
        }
