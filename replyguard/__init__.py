"""
replyguard - Guardrails for automated chat replies.

Decides, for every inbound message, whether an answer may be sent on the
owner's behalf, and bounds duplication, rate, cost and risk while doing it.

Wiring a pipeline:
    from replyguard import build_pipeline, Conversation, ConversationType

    pipeline = build_pipeline()
    pipeline.subscribe()
    pipeline.messages.set_conversation(
        Conversation("c1", ConversationType.DIRECT, ["owner_1", "fan_1"])
    )
    pipeline.add_answer("owner_1", "What are your rates?", "Rates start at $50.")
    pipeline.messages.add_message("c1", "fan_1", "What are your rates?")

Rate limits:
    from replyguard import RateLimiter, InMemoryGuardrailStore

    limiter = RateLimiter(InMemoryGuardrailStore())
    status = limiter.acquire("owner_1", "auto_response")
    print(status.allowed, status.hourly_count)

Budget sweep:
    from replyguard import BudgetMonitor

    monitor = BudgetMonitor(store, notifier=notifier)
    report = monitor.sweep()
"""

from replyguard.answers import AnswerTemplate, InMemoryAnswerLibrary
from replyguard.budget import BudgetMonitor, SweepReport
from replyguard.embeddings import HashingEmbedder, InvalidEmbeddingDimension, OpenAIEmbedder
from replyguard.engine import DecisionEngine, classify_score
from replyguard.executor import ActionExecutor
from replyguard.idempotency import IdempotencyCache, make_idempotent, operation_id
from replyguard.matcher import MatchingUnavailable, SimilarityMatcher
from replyguard.messages import (
    Conversation,
    ConversationType,
    InMemoryMessageStore,
    InboundMessage,
    MessageCreatedEvent,
)
from replyguard.metrics import DecisionMetrics
from replyguard.models import OwnerGuardrailConfig, WindowKind
from replyguard.notifications import Notifier, ProviderFamily, detect_provider
from replyguard.pipeline import Pipeline, build_pipeline
from replyguard.rate_limiter import RateLimiter, RateLimitStatus
from replyguard.schemas import ConfidenceTier, Decision, DecisionReason, Outcome
from replyguard.storage import CounterReadFailure, InMemoryGuardrailStore, SQLiteGuardrailStore
from replyguard.validation import ValidationError
from replyguard.vector_index import InMemoryVectorIndex, SearchFilter

__version__ = "1.0.0"
