"""
Decision engine for replyguard.

Decides, for every inbound message, whether to auto-respond on the owner's
behalf, store a suggestion, escalate for review, or do nothing:

    gate -> match -> tier -> limits -> sentiment -> approval -> claim -> execute

Every collaborator failure degrades toward NoAction or Suggest. Nothing in
here may raise into the message delivery path.
"""

import logging
import time
from datetime import datetime, UTC
from typing import Callable, Optional

from replyguard import config
from replyguard.budget import BudgetMonitor
from replyguard.embeddings import InvalidEmbeddingDimension
from replyguard.executor import ActionExecutor, has_decision_metadata
from replyguard.idempotency import IdempotencyCache
from replyguard.matcher import MatchingUnavailable, SimilarityMatcher
from replyguard.messages import MessageCreatedEvent, MessageStore, manual_override_since
from replyguard.metrics import DecisionMetrics
from replyguard.models import OwnerGuardrailConfig, day_period_id
from replyguard.rate_limiter import RateLimiter
from replyguard.schemas import (
    ConfidenceTier,
    Decision,
    DecisionReason,
    ExecutionResult,
    Outcome,
)
from replyguard.storage import CounterReadFailure, GuardrailStore

logger = logging.getLogger(__name__)

AUTO_RESPONSE_OPERATION = "auto_response"
MATCH_OPERATION = "faq_detection"


def classify_score(score: float) -> ConfidenceTier:
    """Map a similarity score to its confidence tier. Both lower bounds are inclusive."""
    if score >= config.CONFIDENCE_THRESHOLDS["auto_response"]:
        return ConfidenceTier.AUTO_RESPONSE
    if score >= config.CONFIDENCE_THRESHOLDS["suggest"]:
        return ConfidenceTier.SUGGEST
    return ConfidenceTier.BELOW_THRESHOLD


class DecisionEngine:
    """
    Per-message guardrail state machine.

    Collaborators are injected so each can be replaced in tests. The engine
    holds no per-message state between invocations.

    Example:
        ```python
        engine = DecisionEngine(store, messages, matcher, limiter, cache, executor)
        unsubscribe = messages.subscribe(engine.on_message_created)
        ```
    """

    def __init__(
        self,
        store: GuardrailStore,
        messages: MessageStore,
        matcher: SimilarityMatcher,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyCache,
        executor: ActionExecutor,
        budget: Optional[BudgetMonitor] = None,
        metrics: Optional[DecisionMetrics] = None,
        auto_response_delay_seconds: float = config.AUTO_RESPONSE_DELAY_SECONDS,
        manual_override_window_seconds: float = config.MANUAL_OVERRIDE_WINDOW_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.messages = messages
        self.matcher = matcher
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self.executor = executor
        self.budget = budget
        self.metrics = metrics
        self.auto_response_delay_seconds = auto_response_delay_seconds
        self.manual_override_window_seconds = manual_override_window_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep

    # =========================================================================
    # Entry points
    # =========================================================================

    def on_message_created(self, event: MessageCreatedEvent) -> Decision:
        """Subscriber callback for "message created". Never raises."""
        return self.process(event).decision

    def process(self, event: MessageCreatedEvent) -> ExecutionResult:
        """Decide and apply. Any unexpected failure becomes NoAction(internal_error)."""
        owner_id = None
        try:
            decision, owner_id = self.decide(event)
            result = self._execute(decision)
        except Exception as e:
            logger.exception(
                "Decision pipeline failed for owner=%s message=%s: %s",
                owner_id, event.message_id, e,
            )
            decision = self._decision(event, owner_id, Outcome.NO_ACTION, DecisionReason.INTERNAL_ERROR)
            result = ExecutionResult(decision=decision)

        self._log_decision(result.decision)
        return result

    def _log_decision(self, decision: Decision) -> None:
        if self.metrics is None:
            logger.info(
                "Decision owner=%s message=%s tier=%s outcome=%s reason=%s score=%s",
                decision.owner_id, decision.message_id, decision.tier.value,
                decision.outcome.value, decision.reason.value, decision.score,
            )
            return
        try:
            self.metrics.record_decision(decision)
        except OSError as e:
            logger.error("Failed to record decision metrics for message %s: %s", decision.message_id, e)

    # =========================================================================
    # Decision
    # =========================================================================

    def _decision(
        self,
        event: MessageCreatedEvent,
        owner_id: Optional[str],
        outcome: Outcome,
        reason: DecisionReason,
        **kwargs,
    ) -> Decision:
        return Decision(
            outcome=outcome,
            reason=reason,
            owner_id=owner_id,
            conversation_id=event.conversation_id,
            message_id=event.message_id,
            timestamp_utc=self._clock(),
            **kwargs,
        )

    def _owner_config(self, owner_id: str) -> OwnerGuardrailConfig:
        return self.store.get_owner_config(owner_id) or OwnerGuardrailConfig.default(owner_id)

    def decide(self, event: MessageCreatedEvent) -> tuple[Decision, Optional[str]]:
        """
        Run every gate up to (not including) the claim and execution.

        Returns:
            (decision, resolved owner id)
        """
        def no_action(owner: Optional[str], reason: DecisionReason, **kwargs) -> Decision:
            return self._decision(event, owner, Outcome.NO_ACTION, reason, **kwargs)

        if not event.text or not event.text.strip():
            return no_action(None, DecisionReason.EMPTY_TEXT), None

        message = self.messages.get_message(event.conversation_id, event.message_id)
        metadata = message.metadata if message else {}
        if has_decision_metadata(metadata):
            return no_action(None, DecisionReason.ALREADY_DECIDED), None

        conversation = self.messages.get_conversation(event.conversation_id)
        owner_id = conversation.resolve_owner(event.sender_id) if conversation else None
        if owner_id is None:
            return no_action(None, DecisionReason.OWNER_UNRESOLVED), None
        if owner_id == event.sender_id:
            return no_action(owner_id, DecisionReason.OWN_MESSAGE), owner_id

        owner_config = self._owner_config(owner_id)
        if not owner_config.feature_enabled:
            return no_action(owner_id, DecisionReason.FEATURE_DISABLED), owner_id
        if self.store.get_feature_flags(owner_id).features_disabled:
            return no_action(owner_id, DecisionReason.BUDGET_EXCEEDED), owner_id

        try:
            matches = self.matcher.query(
                event.text,
                owner_id,
                top_k=config.MATCHER_TOP_K,
                min_score=config.CONFIDENCE_THRESHOLDS["suggest"],
            )
        except MatchingUnavailable as e:
            logger.warning("Matching unavailable for owner=%s message=%s: %s", owner_id, event.message_id, e)
            return no_action(owner_id, DecisionReason.MATCHING_UNAVAILABLE), owner_id
        except InvalidEmbeddingDimension as e:
            logger.error("Invalid embedding for owner=%s message=%s: %s", owner_id, event.message_id, e)
            return no_action(owner_id, DecisionReason.INVALID_EMBEDDING), owner_id

        self._charge_query(owner_id)

        if not matches:
            return no_action(owner_id, DecisionReason.NO_MATCH), owner_id

        best = matches[0]
        tier = classify_score(best.score)
        if tier is ConfidenceTier.BELOW_THRESHOLD:
            return no_action(owner_id, DecisionReason.BELOW_THRESHOLD, tier=tier, match=best), owner_id

        if tier is ConfidenceTier.AUTO_RESPONSE:
            decision = self._decision(event, owner_id, Outcome.AUTO_RESPOND, DecisionReason.MATCHED, tier=tier, match=best)
            limit_reason = self._limit_reason(owner_id, owner_config)
            if limit_reason is not None:
                decision = decision.downgrade(Outcome.SUGGEST, limit_reason)
        else:
            decision = self._decision(event, owner_id, Outcome.SUGGEST, DecisionReason.SUGGEST_TIER, tier=tier, match=best)

        sentiment = message.sentiment_score if message else None
        if sentiment is not None and sentiment < owner_config.escalation_sentiment_threshold:
            return decision.downgrade(Outcome.ESCALATE, DecisionReason.NEGATIVE_SENTIMENT), owner_id

        if owner_config.require_approval and decision.outcome == Outcome.AUTO_RESPOND:
            decision = decision.downgrade(Outcome.SUGGEST, DecisionReason.REQUIRE_APPROVAL)

        return decision, owner_id

    def _charge_query(self, owner_id: str) -> None:
        if self.budget is None:
            return
        try:
            self.budget.record_cost(owner_id, operation=MATCH_OPERATION)
        except Exception as e:
            logger.error("Failed to record matching cost for owner=%s: %s", owner_id, e)

    def _limit_reason(self, owner_id: str, owner_config: OwnerGuardrailConfig) -> Optional[DecisionReason]:
        """Read-only check of the auto-response rate limit and the owner's daily cap."""
        status = self.rate_limiter.check(owner_id, AUTO_RESPONSE_OPERATION)
        if not status.allowed:
            return DecisionReason.RATE_LIMITED

        day_id = day_period_id(self._clock())
        try:
            used = self.store.get_daily_actions(owner_id, day_id)
        except CounterReadFailure as e:
            logger.warning("Daily action count unreadable for owner=%s, suggesting instead: %s", owner_id, e)
            return DecisionReason.DAILY_CAP_REACHED
        if used >= owner_config.max_auto_actions_per_day:
            return DecisionReason.DAILY_CAP_REACHED
        return None

    # =========================================================================
    # Claim and execute
    # =========================================================================

    def _execute(self, decision: Decision) -> ExecutionResult:
        if decision.outcome == Outcome.AUTO_RESPOND:
            decision = self._claim_auto_response(decision)
        elif decision.outcome in (Outcome.SUGGEST, Outcome.ESCALATE):
            decision = self._claim(decision, decision.outcome.value)
        return self.executor.apply(decision)

    def _claim(self, decision: Decision, operation: str) -> Decision:
        """Take the idempotency claim for one action on one message, or downgrade to a duplicate."""
        op_id = self.idempotency.id({
            "operation": operation,
            "message_id": decision.message_id,
            "answer_id": decision.match_id,
        })
        if self.idempotency.mark_processed(op_id, decision.message_id):
            return decision
        logger.info("Duplicate %s for message %s suppressed", operation, decision.message_id)
        return decision.downgrade(Outcome.NO_ACTION, DecisionReason.DUPLICATE_OPERATION)

    def _claim_auto_response(self, decision: Decision) -> Decision:
        """
        Final gates before an automated reply is sent.

        The idempotency claim and both counter reservations are atomic, so
        concurrent or redelivered triggers produce at most one reply.
        """
        decision = self._claim(decision, AUTO_RESPONSE_OPERATION)
        if decision.outcome == Outcome.NO_ACTION:
            return decision

        if self._manual_reply_detected(decision):
            logger.info(
                "Owner %s replied manually to conversation %s, skipping auto-response",
                decision.owner_id, decision.conversation_id,
            )
            return decision.downgrade(Outcome.NO_ACTION, DecisionReason.MANUAL_REPLY_DETECTED)

        owner_config = self._owner_config(decision.owner_id)
        if not self.rate_limiter.acquire(decision.owner_id, AUTO_RESPONSE_OPERATION).allowed:
            return decision.downgrade(Outcome.SUGGEST, DecisionReason.RATE_LIMITED)

        try:
            reserved = self.store.try_reserve_daily_action(
                decision.owner_id,
                day_period_id(self._clock()),
                owner_config.max_auto_actions_per_day,
            )
        except CounterReadFailure as e:
            logger.warning("Daily action reservation failed for owner=%s: %s", decision.owner_id, e)
            reserved = False
        if not reserved:
            return decision.downgrade(Outcome.SUGGEST, DecisionReason.DAILY_CAP_REACHED)

        return decision

    def _manual_reply_detected(self, decision: Decision) -> bool:
        if self.auto_response_delay_seconds > 0:
            self._sleep(self.auto_response_delay_seconds)
        message = self.messages.get_message(decision.conversation_id, decision.message_id)
        if message is None:
            return False
        return self.messages.has_recent_message_from(
            decision.conversation_id,
            decision.owner_id,
            since=manual_override_since(message.timestamp, self.manual_override_window_seconds),
            exclude_message_id=decision.message_id,
        )
