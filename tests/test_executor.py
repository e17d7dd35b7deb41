"""Tests for the action executor and the message store."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from replyguard.answers import InMemoryAnswerLibrary
from replyguard.executor import ActionExecutor, has_decision_metadata
from replyguard.messages import (
    Conversation,
    ConversationType,
    InMemoryMessageStore,
    manual_override_since,
)
from replyguard.models import CandidateMatch
from replyguard.schemas import ConfidenceTier, Decision, DecisionReason, Outcome

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestActionExecutor:
    """Test how decisions are written."""

    def setup_method(self):
        self.messages = InMemoryMessageStore()
        self.answers = InMemoryAnswerLibrary()
        self.answer = self.answers.create("owner_1", "Do you ship abroad?", "Yes, worldwide.")
        self.message = self.messages.add_message("conv_1", "fan_1", "Ship to Spain?", timestamp=NOW)
        self.executor = ActionExecutor(self.messages, self.answers, clock=lambda: NOW)

    def decision(self, outcome, reason, score=0.9, tier=ConfidenceTier.AUTO_RESPONSE, with_match=True):
        match = CandidateMatch(self.answer.id, score, self.answer.to_payload()) if with_match else None
        return Decision(
            outcome=outcome,
            reason=reason,
            owner_id="owner_1",
            conversation_id="conv_1",
            message_id=self.message.id,
            tier=tier,
            match=match,
        )

    def stored(self):
        return self.messages.get_message("conv_1", self.message.id)

    def test_silent_decision_writes_nothing(self):
        """Silent no-action reasons leave the message untouched."""
        result = self.executor.apply(self.decision(Outcome.NO_ACTION, DecisionReason.BUDGET_EXCEEDED))
        assert result.metadata_written is False
        assert self.stored().metadata == {}

    def test_auto_respond(self):
        """Auto-respond sends one reply with provenance and classifies the source."""
        result = self.executor.apply(self.decision(Outcome.AUTO_RESPOND, DecisionReason.MATCHED))

        reply = self.messages.get_message("conv_1", result.reply_message_id)
        assert reply.sender_id == "owner_1"
        assert reply.text == "Yes, worldwide."
        assert reply.metadata["auto_response_sent"] is True
        assert reply.metadata["ai_processed_at"] == NOW.isoformat()

        metadata = self.stored().metadata
        assert metadata["guardrail_outcome"] == "auto_respond"
        assert metadata["auto_response_id"] == reply.id
        assert result.usage_recorded is True
        assert self.answers.get(self.answer.id).last_used_at == NOW

    def test_suggest_from_limit_flags_it(self):
        """Suggestions caused by limits say so."""
        self.executor.apply(self.decision(Outcome.SUGGEST, DecisionReason.DAILY_CAP_REACHED))
        metadata = self.stored().metadata
        assert metadata["suggested_response"] == "Yes, worldwide."
        assert metadata["auto_response_limit_reached"] is True

    def test_suggest_tier_has_no_limit_flag(self):
        """Ordinary suggestions carry no limit flag."""
        self.executor.apply(self.decision(
            Outcome.SUGGEST, DecisionReason.SUGGEST_TIER, score=0.75, tier=ConfidenceTier.SUGGEST
        ))
        assert "auto_response_limit_reached" not in self.stored().metadata

    def test_inactive_answer_downgrades(self):
        """An inactive answer is neither sent nor suggested."""
        self.answers.set_active(self.answer.id, False)
        result = self.executor.apply(self.decision(Outcome.AUTO_RESPOND, DecisionReason.MATCHED))

        assert result.decision.outcome is Outcome.NO_ACTION
        assert result.decision.reason is DecisionReason.ANSWER_UNAVAILABLE
        assert result.reply_message_id is None
        assert len(self.messages.list_messages("conv_1")) == 1
        assert self.answers.get(self.answer.id).use_count == 0

    def test_escalate_without_match(self):
        """Escalation works even without a usable answer."""
        result = self.executor.apply(self.decision(
            Outcome.ESCALATE, DecisionReason.NEGATIVE_SENTIMENT, with_match=False
        ))
        metadata = self.stored().metadata
        assert metadata["escalated"] is True
        assert metadata["pending_review"] is True
        assert "suggested_response" not in metadata
        assert result.usage_recorded is False

    def test_classify_only(self):
        """No-action with a reason worth recording writes classification only."""
        self.executor.apply(self.decision(
            Outcome.NO_ACTION, DecisionReason.BELOW_THRESHOLD, score=0.5, tier=ConfidenceTier.BELOW_THRESHOLD
        ))
        metadata = self.stored().metadata
        assert metadata["guardrail_outcome"] == "no_action"
        assert metadata["match_confidence"] == 0.5
        assert metadata["is_faq"] is False

    def test_has_decision_metadata(self):
        """Decided messages and automated replies are both recognized."""
        assert has_decision_metadata({}) is False
        assert has_decision_metadata({"guardrail_outcome": "suggest"}) is True
        assert has_decision_metadata({"auto_response_sent": True}) is True


class TestInMemoryMessageStore:
    """Test the message store collaborator."""

    def setup_method(self):
        self.store = InMemoryMessageStore()

    def test_subscribe_and_unsubscribe(self):
        """Subscribers see new messages until they unsubscribe."""
        callback = Mock()
        unsubscribe = self.store.subscribe(callback)
        message = self.store.add_message("conv_1", "fan_1", "hi")
        callback.assert_called_once()
        assert callback.call_args.args[0].message_id == message.id

        unsubscribe()
        self.store.add_message("conv_1", "fan_1", "hi again")
        callback.assert_called_once()

    def test_failing_subscriber_does_not_fail_write(self):
        """A subscriber error is logged and the message is still stored."""
        self.store.subscribe(Mock(side_effect=RuntimeError("boom")))
        message = self.store.add_message("conv_1", "fan_1", "hi")
        assert self.store.get_message("conv_1", message.id) is not None

    def test_redeliver(self):
        """Redelivery fires the same event again."""
        callback = Mock()
        message = self.store.add_message("conv_1", "fan_1", "hi")
        self.store.subscribe(callback)
        self.store.redeliver("conv_1", message.id)
        self.store.redeliver("conv_1", message.id)
        assert callback.call_count == 2
        with pytest.raises(KeyError):
            self.store.redeliver("conv_1", "missing")

    def test_resolve_owner(self):
        """Direct conversations resolve to the other participant, groups to the creator."""
        direct = Conversation("c1", ConversationType.DIRECT, ["owner_1", "fan_1"])
        assert direct.resolve_owner("fan_1") == "owner_1"
        assert Conversation("c2", ConversationType.DIRECT, ["fan_1"]).resolve_owner("fan_1") is None

        group = Conversation("g1", ConversationType.GROUP, ["owner_1", "a", "b"], creator_id="owner_1")
        assert group.resolve_owner("a") == "owner_1"

    def test_recent_message_ignores_automated_replies(self):
        """Automated replies never count as a manual reply."""
        self.store.add_message("conv_1", "owner_1", "auto", metadata={"auto_response_sent": True}, timestamp=NOW)
        since = manual_override_since(NOW, 1.0)
        assert since == NOW - timedelta(seconds=1)
        assert self.store.has_recent_message_from("conv_1", "owner_1", since) is False

        self.store.add_message("conv_1", "owner_1", "manual", timestamp=NOW)
        assert self.store.has_recent_message_from("conv_1", "owner_1", since) is True
