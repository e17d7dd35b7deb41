"""
Decision schemas for replyguard.

The outcome of one pass of the decision pipeline over an inbound message.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Optional

from replyguard.models import CandidateMatch


class Outcome(str, Enum):
    """Terminal outcomes of the decision pipeline."""
    AUTO_RESPOND = "auto_respond"
    SUGGEST = "suggest"
    ESCALATE = "escalate"
    NO_ACTION = "no_action"


class ConfidenceTier(str, Enum):
    """Similarity confidence bands."""
    AUTO_RESPONSE = "auto_response"  # score >= 0.85
    SUGGEST = "suggest"              # 0.70 <= score < 0.85
    BELOW_THRESHOLD = "below_threshold"
    NONE = "none"                    # never matched


class DecisionReason(str, Enum):
    """Why a decision ended where it did."""
    MATCHED = "matched"
    EMPTY_TEXT = "empty_text"
    ALREADY_DECIDED = "already_decided"
    OWNER_UNRESOLVED = "owner_unresolved"
    OWN_MESSAGE = "own_message"
    FEATURE_DISABLED = "feature_disabled"
    BUDGET_EXCEEDED = "budget_exceeded"
    MATCHING_UNAVAILABLE = "matching_unavailable"
    INVALID_EMBEDDING = "invalid_embedding"
    NO_MATCH = "no_match"
    BELOW_THRESHOLD = "below_threshold"
    SUGGEST_TIER = "suggest_tier"
    RATE_LIMITED = "rate_limited"
    DAILY_CAP_REACHED = "daily_cap_reached"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    REQUIRE_APPROVAL = "require_approval"
    DUPLICATE_OPERATION = "duplicate_operation"
    MANUAL_REPLY_DETECTED = "manual_reply_detected"
    ANSWER_UNAVAILABLE = "answer_unavailable"
    INTERNAL_ERROR = "internal_error"


# NoAction reasons that must not touch the message: either nothing was
# evaluated or an earlier decision already owns the metadata.
SILENT_REASONS = frozenset({
    DecisionReason.EMPTY_TEXT,
    DecisionReason.ALREADY_DECIDED,
    DecisionReason.OWNER_UNRESOLVED,
    DecisionReason.OWN_MESSAGE,
    DecisionReason.FEATURE_DISABLED,
    DecisionReason.BUDGET_EXCEEDED,
    DecisionReason.DUPLICATE_OPERATION,
})


@dataclass
class Decision:
    """
    The outcome chosen for one inbound message.

    Computed once, applied immediately by the ActionExecutor, then discarded.
    """
    outcome: Outcome
    reason: DecisionReason
    owner_id: Optional[str]
    conversation_id: str
    message_id: str
    tier: ConfidenceTier = ConfidenceTier.NONE
    match: Optional[CandidateMatch] = None
    timestamp_utc: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def answer_text(self) -> Optional[str]:
        return self.match.payload.answer_text if self.match else None

    @property
    def match_id(self) -> Optional[str]:
        return self.match.id if self.match else None

    @property
    def score(self) -> Optional[float]:
        return self.match.score if self.match else None

    @property
    def writes_metadata(self) -> bool:
        return not (self.outcome == Outcome.NO_ACTION and self.reason in SILENT_REASONS)

    def downgrade(self, outcome: Outcome, reason: DecisionReason) -> "Decision":
        """Return a copy with a weaker outcome, keeping the match."""
        return Decision(
            outcome=outcome,
            reason=reason,
            owner_id=self.owner_id,
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            tier=self.tier,
            match=self.match,
            timestamp_utc=self.timestamp_utc,
        )


@dataclass
class ExecutionResult:
    """What the ActionExecutor actually wrote."""
    decision: Decision
    reply_message_id: Optional[str] = None
    metadata_written: bool = False
    usage_recorded: bool = False
