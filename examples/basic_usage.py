"""
Basic usage examples for replyguard.

Wires an in-memory pipeline with the offline hashing embedder and walks
through the main decision paths.
"""

from replyguard import (
    Conversation,
    ConversationType,
    HashingEmbedder,
    InMemoryGuardrailStore,
    Notifier,
    OwnerGuardrailConfig,
    build_pipeline,
)
from replyguard.config import Settings

OWNER = "creator_1"
FAN = "fan_1"


def make_pipeline():
    # No push providers, so nothing leaves the machine
    store = InMemoryGuardrailStore()
    pipeline = build_pipeline(
        store=store,
        embedder=HashingEmbedder(),
        notifier=Notifier(store, {}),
        settings=Settings(),
    )
    pipeline.messages.set_conversation(Conversation("conv_1", ConversationType.DIRECT, [OWNER, FAN]))
    pipeline.add_answer(OWNER, "What are your rates?", "My rates start at $50 per session.")
    pipeline.add_answer(OWNER, "Do you ship internationally?", "Yes, I ship worldwide.")
    pipeline.subscribe()
    return pipeline


def show(pipeline, message):
    stored = pipeline.messages.get_message(message.conversation_id, message.id)
    print(f"Fan: {message.text}")
    print(f"  outcome: {stored.metadata.get('guardrail_outcome', 'no_action')}")
    print(f"  reason: {stored.metadata.get('guardrail_reason', '-')}")
    if "auto_response_id" in stored.metadata:
        reply = pipeline.messages.get_message(message.conversation_id, stored.metadata["auto_response_id"])
        print(f"  reply: {reply.text}")
    if "suggested_response" in stored.metadata:
        print(f"  suggestion: {stored.metadata['suggested_response']}")
    print()


def example_auto_response():
    """An exact FAQ match is answered automatically."""
    print("=" * 60)
    print("Example 1: Auto Response")
    print("=" * 60)

    pipeline = make_pipeline()
    show(pipeline, pipeline.messages.add_message("conv_1", FAN, "What are your rates?"))
    show(pipeline, pipeline.messages.add_message("conv_1", FAN, "Any plans for the weekend?"))
    pipeline.close()


def example_require_approval():
    """Owners who require approval get suggestions instead of replies."""
    print("=" * 60)
    print("Example 2: Require Approval")
    print("=" * 60)

    pipeline = make_pipeline()
    pipeline.store.set_owner_config(OwnerGuardrailConfig(owner_id=OWNER, require_approval=True))
    show(pipeline, pipeline.messages.add_message("conv_1", FAN, "Do you ship internationally?"))
    pipeline.close()


def example_escalation():
    """Upset fans are escalated for review."""
    print("=" * 60)
    print("Example 3: Sentiment Escalation")
    print("=" * 60)

    pipeline = make_pipeline()
    message = pipeline.messages.add_message(
        "conv_1", FAN, "What are your rates?", sentiment_score=-0.7
    )
    show(pipeline, message)
    pipeline.close()


def example_budget_kill_switch():
    """Exceeding the daily budget disables automation."""
    print("=" * 60)
    print("Example 4: Budget Kill Switch")
    print("=" * 60)

    pipeline = make_pipeline()
    pipeline.budget.record_cost(OWNER, cents=500, budget_limit_cents=500)
    report = pipeline.budget.sweep()
    print(f"Sweep: {report.alerts_sent} alerts, {report.features_disabled} owners disabled")
    show(pipeline, pipeline.messages.add_message("conv_1", FAN, "What are your rates?"))
    pipeline.close()


def example_metrics():
    """Every decision is recorded."""
    print("=" * 60)
    print("Example 5: Decision Metrics")
    print("=" * 60)

    pipeline = make_pipeline()
    for text in ["What are your rates?", "Do you ship internationally?", "hi!"]:
        message = pipeline.messages.add_message("conv_1", FAN, text)
        # Redelivery is absorbed by the duplicate guards
        pipeline.messages.redeliver("conv_1", message.id)

    stats = pipeline.metrics.get_stats()
    print(f"Total decisions: {stats['total_events']}")
    print(f"Outcomes: {stats['outcomes']}")
    print(f"Auto-response rate: {stats['auto_response_rate']:.1%}")
    print()
    pipeline.close()


if __name__ == "__main__":
    example_auto_response()
    example_require_approval()
    example_escalation()
    example_budget_kill_switch()
    example_metrics()

    print("All examples completed!")
