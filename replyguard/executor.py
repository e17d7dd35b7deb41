"""
Action executor for replyguard.

Applies a Decision to the message store: sends the automated reply,
stores a suggestion for review, flags an escalation, or writes only the
classification. Answers that are used or suggested get their usage counters
bumped.
"""

import logging
from datetime import datetime, UTC
from typing import Any, Callable, Optional

from replyguard.answers import AnswerLibrary, AnswerTemplate
from replyguard.messages import MessageStore
from replyguard.schemas import (
    ConfidenceTier,
    Decision,
    DecisionReason,
    ExecutionResult,
    Outcome,
)

logger = logging.getLogger(__name__)

AI_VERSION = "auto-response-v1"
DECISION_METADATA_KEY = "guardrail_outcome"

_LIMIT_REASONS = {DecisionReason.RATE_LIMITED, DecisionReason.DAILY_CAP_REACHED}


def has_decision_metadata(metadata: dict[str, Any]) -> bool:
    """True if a message was already decided on or is itself an automated reply."""
    return DECISION_METADATA_KEY in metadata or bool(metadata.get("auto_response_sent"))


class ActionExecutor:
    """
    Performs exactly one write per decision.

    The executor is the only component that writes to messages or answers.
    """

    def __init__(
        self,
        messages: MessageStore,
        answers: AnswerLibrary,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.messages = messages
        self.answers = answers
        self._clock = clock or (lambda: datetime.now(UTC))

    def apply(self, decision: Decision) -> ExecutionResult:
        """
        Apply a decision.

        AutoRespond and Suggest are downgraded to NoAction(answer_unavailable)
        when the matched answer has been deleted or deactivated since the match.

        Returns:
            ExecutionResult carrying the decision that was actually applied
        """
        if not decision.writes_metadata:
            return ExecutionResult(decision=decision)

        template = None
        if decision.outcome in (Outcome.AUTO_RESPOND, Outcome.SUGGEST):
            template = self._usable_answer(decision.match_id)
            if template is None:
                logger.info(
                    "Answer %s unavailable for message %s, taking no action",
                    decision.match_id, decision.message_id,
                )
                decision = decision.downgrade(Outcome.NO_ACTION, DecisionReason.ANSWER_UNAVAILABLE)
        elif decision.outcome == Outcome.ESCALATE:
            template = self._usable_answer(decision.match_id)

        if decision.outcome == Outcome.AUTO_RESPOND:
            return self._auto_respond(decision, template)
        if decision.outcome == Outcome.SUGGEST:
            return self._suggest(decision, template)
        if decision.outcome == Outcome.ESCALATE:
            return self._escalate(decision, template)
        return self._classify_only(decision)

    def _usable_answer(self, answer_id: Optional[str]) -> Optional[AnswerTemplate]:
        if answer_id is None:
            return None
        template = self.answers.get(answer_id)
        if template is None or not template.is_active:
            return None
        return template

    def _classification(self, decision: Decision) -> dict[str, Any]:
        return {
            DECISION_METADATA_KEY: decision.outcome.value,
            "guardrail_reason": decision.reason.value,
            "confidence_tier": decision.tier.value,
            "is_faq": decision.tier in (ConfidenceTier.AUTO_RESPONSE, ConfidenceTier.SUGGEST),
            "match_confidence": decision.score or 0.0,
            "ai_processed_at": self._clock().isoformat(),
        }

    def _write(self, decision: Decision, fields: dict[str, Any]) -> None:
        self.messages.update_metadata(decision.conversation_id, decision.message_id, fields)

    def _record_use(self, template: AnswerTemplate) -> bool:
        return self.answers.record_use(template.id, self._clock()) is not None

    def _auto_respond(self, decision: Decision, template: AnswerTemplate) -> ExecutionResult:
        now = self._clock()
        reply = self.messages.add_message(
            decision.conversation_id,
            decision.owner_id,
            template.answer,
            metadata={
                "auto_response_sent": True,
                "answer_id": template.id,
                "source_message_id": decision.message_id,
                "ai_version": AI_VERSION,
                "ai_processed_at": now.isoformat(),
            },
            timestamp=now,
        )
        fields = self._classification(decision)
        fields.update({"answer_id": template.id, "auto_response_id": reply.id})
        self._write(decision, fields)
        logger.info(
            "Auto-response %s sent for message %s (owner=%s answer=%s score=%.3f)",
            reply.id, decision.message_id, decision.owner_id, template.id, decision.score,
        )
        return ExecutionResult(
            decision=decision,
            reply_message_id=reply.id,
            metadata_written=True,
            usage_recorded=self._record_use(template),
        )

    def _suggest(self, decision: Decision, template: AnswerTemplate) -> ExecutionResult:
        fields = self._classification(decision)
        fields.update({
            "answer_id": template.id,
            "suggested_response": template.answer,
            "pending_review": True,
        })
        if decision.reason in _LIMIT_REASONS:
            fields["auto_response_limit_reached"] = True
        self._write(decision, fields)
        return ExecutionResult(
            decision=decision,
            metadata_written=True,
            usage_recorded=self._record_use(template),
        )

    def _escalate(self, decision: Decision, template: Optional[AnswerTemplate]) -> ExecutionResult:
        fields = self._classification(decision)
        fields.update({
            "escalated": True,
            "escalation_reason": decision.reason.value,
            "pending_review": True,
        })
        usage_recorded = False
        if template is not None:
            fields["answer_id"] = template.id
            fields["suggested_response"] = template.answer
            usage_recorded = self._record_use(template)
        self._write(decision, fields)
        logger.info(
            "Message %s escalated for owner=%s: %s",
            decision.message_id, decision.owner_id, decision.reason.value,
        )
        return ExecutionResult(decision=decision, metadata_written=True, usage_recorded=usage_recorded)

    def _classify_only(self, decision: Decision) -> ExecutionResult:
        self._write(decision, self._classification(decision))
        return ExecutionResult(decision=decision, metadata_written=True)
