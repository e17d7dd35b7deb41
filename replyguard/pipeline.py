"""
Wiring for replyguard.

build_pipeline() assembles the guardrail services with injectable
collaborators and returns a Pipeline that can subscribe the decision engine
to message notifications and run the periodic sweeps.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from replyguard import config
from replyguard.answers import AnswerTemplate, InMemoryAnswerLibrary
from replyguard.budget import BudgetMonitor
from replyguard.embeddings import Embedder, HashingEmbedder, OpenAIEmbedder
from replyguard.engine import DecisionEngine
from replyguard.executor import ActionExecutor
from replyguard.idempotency import IdempotencyCache
from replyguard.matcher import SimilarityMatcher
from replyguard.messages import InMemoryMessageStore, MessageStore
from replyguard.metrics import DecisionMetrics
from replyguard.notifications import (
    ExpoPushProvider,
    FCMPushProvider,
    Notifier,
    ProviderFamily,
)
from replyguard.rate_limiter import RateLimiter
from replyguard.scheduler import PeriodicTask
from replyguard.storage import GuardrailStore, InMemoryGuardrailStore
from replyguard.vector_index import InMemoryVectorIndex

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """All guardrail services sharing one store."""
    store: GuardrailStore
    messages: MessageStore
    answers: InMemoryAnswerLibrary
    embedder: Embedder
    index: InMemoryVectorIndex
    matcher: SimilarityMatcher
    rate_limiter: RateLimiter
    idempotency: IdempotencyCache
    budget: BudgetMonitor
    notifier: Notifier
    executor: ActionExecutor
    engine: DecisionEngine
    metrics: DecisionMetrics
    tasks: list[PeriodicTask] = field(default_factory=list)

    def subscribe(self) -> Callable[[], None]:
        """Register the engine for "message created" events. Returns the unsubscribe handle."""
        return self.messages.subscribe(self.engine.on_message_created)

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    def stop(self) -> None:
        for task in self.tasks:
            task.stop()

    def close(self) -> None:
        self.stop()
        self.matcher.close()
        self.store.close()

    def add_answer(
        self,
        owner_id: str,
        question: str,
        answer: str,
        category: str = "general",
        is_active: bool = True,
    ) -> AnswerTemplate:
        """Store an answer template and index its question."""
        template = self.answers.create(owner_id, question, answer, category=category, is_active=is_active)
        self.index.upsert(template.id, self.embedder.embed(question), template.to_payload())
        return template

    def set_answer_active(self, answer_id: str, is_active: bool) -> None:
        self.answers.set_active(answer_id, is_active)
        self.index.update_metadata(answer_id, is_active=is_active)


def build_notifier(store: GuardrailStore, settings: Optional[config.Settings] = None) -> Notifier:
    """Notifier with Expo always enabled and FCM when credentials are configured."""
    settings = settings or config.get_settings()
    providers = {ProviderFamily.EXPO: ExpoPushProvider(access_token=settings.expo_access_token)}
    if settings.fcm_project_id and settings.fcm_access_token:
        providers[ProviderFamily.FCM] = FCMPushProvider(
            project_id=settings.fcm_project_id,
            access_token=settings.fcm_access_token,
        )
    return Notifier(store, providers)


def build_pipeline(
    store: Optional[GuardrailStore] = None,
    messages: Optional[MessageStore] = None,
    answers: Optional[InMemoryAnswerLibrary] = None,
    embedder: Optional[Embedder] = None,
    index: Optional[InMemoryVectorIndex] = None,
    notifier: Optional[Notifier] = None,
    metrics: Optional[DecisionMetrics] = None,
    idempotency: Optional[IdempotencyCache] = None,
    settings: Optional[config.Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
    matcher_timeout_seconds: float = config.MATCHER_TIMEOUT_SECONDS,
    auto_response_delay_seconds: float = config.AUTO_RESPONSE_DELAY_SECONDS,
    manual_override_window_seconds: float = config.MANUAL_OVERRIDE_WINDOW_SECONDS,
) -> Pipeline:
    """
    Assemble a pipeline. Every collaborator not passed in gets an in-process default.

    The embedder defaults to OpenAI when OPENAI_API_KEY is set and to the
    offline hashing embedder otherwise.
    """
    settings = settings or config.get_settings()
    if store is None:
        store = InMemoryGuardrailStore()
    if messages is None:
        messages = InMemoryMessageStore()
    if answers is None:
        answers = InMemoryAnswerLibrary()
    if embedder is None:
        embedder = OpenAIEmbedder(api_key=settings.openai_api_key) if settings.openai_api_key else HashingEmbedder()
    if index is None:
        index = InMemoryVectorIndex(dimension=embedder.dimension)
    if notifier is None:
        notifier = build_notifier(store, settings)
    if metrics is None:
        metrics = DecisionMetrics(metrics_file=settings.metrics_file, enable_logging=False)
    if idempotency is None:
        idempotency = IdempotencyCache()

    matcher = SimilarityMatcher(embedder, index, timeout_seconds=matcher_timeout_seconds)
    rate_limiter = RateLimiter(store, notifier=notifier, clock=clock)
    budget = BudgetMonitor(store, notifier=notifier, clock=clock)
    executor = ActionExecutor(messages, answers, clock=clock)
    engine = DecisionEngine(
        store=store,
        messages=messages,
        matcher=matcher,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        executor=executor,
        budget=budget,
        metrics=metrics,
        auto_response_delay_seconds=auto_response_delay_seconds,
        manual_override_window_seconds=manual_override_window_seconds,
        clock=clock,
    )
    tasks = [
        PeriodicTask("idempotency-sweep", config.IDEMPOTENCY_SWEEP_SECONDS, idempotency.sweep),
        PeriodicTask("budget-sweep", config.BUDGET_SWEEP_SECONDS, budget.sweep),
    ]
    logger.debug("Built pipeline with %s store and %s embedder", type(store).__name__, type(embedder).__name__)
    return Pipeline(
        store=store,
        messages=messages,
        answers=answers,
        embedder=embedder,
        index=index,
        matcher=matcher,
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        budget=budget,
        notifier=notifier,
        executor=executor,
        engine=engine,
        metrics=metrics,
        tasks=tasks,
    )
