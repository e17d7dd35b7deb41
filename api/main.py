"""FastAPI server for replyguard."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from functools import lru_cache
from typing import AsyncIterator, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Header, Depends
from pydantic import BaseModel, Field

from replyguard import (
    Conversation,
    ConversationType,
    MessageCreatedEvent,
    OwnerGuardrailConfig,
    Pipeline,
    SQLiteGuardrailStore,
    ValidationError,
    __version__,
    build_pipeline,
)
from replyguard.config import get_settings
from replyguard.notifications import register_token
from replyguard.validation import validate_owner_config


def _get_api_key() -> Optional[str]:
    return os.getenv("REPLYGUARD_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


@lru_cache(maxsize=1)
def _build_pipeline() -> Pipeline:
    settings = get_settings()
    store = SQLiteGuardrailStore(db_path=settings.db_path)
    return build_pipeline(store=store, settings=settings)


def get_pipeline() -> Pipeline:
    return _build_pipeline()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the periodic sweeps for as long as the server is up."""
    pipeline = get_pipeline()
    pipeline.start()
    try:
        yield
    finally:
        pipeline.close()
        _build_pipeline.cache_clear()


app = FastAPI(title="replyguard API", version=__version__, lifespan=lifespan)


class MessageEventRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    text: str
    timestamp: Optional[datetime] = None
    sentiment_score: Optional[float] = Field(None, ge=-1.0, le=1.0)


class DecisionResponse(BaseModel):
    outcome: str
    reason: str
    tier: str
    score: Optional[float]
    match_id: Optional[str]


class OwnerConfigRequest(BaseModel):
    feature_enabled: bool = True
    require_approval: bool = False
    max_auto_actions_per_day: int = Field(20, ge=0)
    escalation_sentiment_threshold: float = Field(0.3, ge=-1.0, le=1.0)


class ConversationRequest(BaseModel):
    type: ConversationType = ConversationType.DIRECT
    participant_ids: list[str] = Field(..., min_length=1)
    creator_id: Optional[str] = None


class AnswerRequest(BaseModel):
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    category: str = "general"
    is_active: bool = True


class PushTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)
    platform: Optional[str] = None


class CostRequest(BaseModel):
    operation: str = "faq_detection"
    cents: Optional[int] = Field(None, ge=0)
    budget_limit_cents: Optional[int] = Field(None, ge=0)


def _config_dict(owner_config: OwnerGuardrailConfig) -> Dict[str, Any]:
    return {
        "owner_id": owner_config.owner_id,
        "feature_enabled": owner_config.feature_enabled,
        "require_approval": owner_config.require_approval,
        "max_auto_actions_per_day": owner_config.max_auto_actions_per_day,
        "escalation_sentiment_threshold": owner_config.escalation_sentiment_threshold,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/events/message-created", response_model=DecisionResponse, dependencies=[Depends(_require_api_key)])
def message_created(req: MessageEventRequest) -> DecisionResponse:
    pipeline = get_pipeline()
    timestamp = req.timestamp or datetime.now(UTC)
    if pipeline.messages.get_message(req.conversation_id, req.message_id) is None:
        pipeline.messages.add_message(
            req.conversation_id,
            req.sender_id,
            req.text,
            timestamp=timestamp,
            sentiment_score=req.sentiment_score,
            message_id=req.message_id,
            notify=False,
        )
    decision = pipeline.engine.on_message_created(
        MessageCreatedEvent(
            conversation_id=req.conversation_id,
            message_id=req.message_id,
            sender_id=req.sender_id,
            text=req.text,
            timestamp=timestamp,
        )
    )
    return DecisionResponse(
        outcome=decision.outcome.value,
        reason=decision.reason.value,
        tier=decision.tier.value,
        score=decision.score,
        match_id=decision.match_id,
    )


@app.put("/conversations/{conversation_id}", dependencies=[Depends(_require_api_key)])
def put_conversation(conversation_id: str, req: ConversationRequest) -> Dict[str, Any]:
    if req.type is ConversationType.GROUP and not req.creator_id:
        raise HTTPException(status_code=400, detail="Group conversations need a creator_id")
    get_pipeline().messages.set_conversation(
        Conversation(
            id=conversation_id,
            type=req.type,
            participant_ids=req.participant_ids,
            creator_id=req.creator_id,
        )
    )
    return {"conversation_id": conversation_id, "type": req.type.value}


@app.post("/owners/{owner_id}/answers", dependencies=[Depends(_require_api_key)])
def add_answer(owner_id: str, req: AnswerRequest) -> Dict[str, Any]:
    template = get_pipeline().add_answer(
        owner_id, req.question, req.answer, category=req.category, is_active=req.is_active
    )
    return {"answer_id": template.id, "owner_id": owner_id, "is_active": template.is_active}


@app.post("/owners/{owner_id}/push-tokens", dependencies=[Depends(_require_api_key)])
def add_push_token(owner_id: str, req: PushTokenRequest) -> Dict[str, Any]:
    token = register_token(get_pipeline().store, owner_id, req.token, platform=req.platform)
    return {"owner_id": owner_id, "provider": token.provider}


@app.get("/owners/{owner_id}/config", dependencies=[Depends(_require_api_key)])
def get_owner_config(owner_id: str) -> Dict[str, Any]:
    store = get_pipeline().store
    owner_config = store.get_owner_config(owner_id) or OwnerGuardrailConfig.default(owner_id)
    data = _config_dict(owner_config)
    flags = store.get_feature_flags(owner_id)
    data["features_disabled"] = flags.features_disabled
    data["disabled_reason"] = flags.disabled_reason
    return data


@app.put("/owners/{owner_id}/config", dependencies=[Depends(_require_api_key)])
def put_owner_config(owner_id: str, req: OwnerConfigRequest) -> Dict[str, Any]:
    owner_config = OwnerGuardrailConfig(owner_id=owner_id, **req.model_dump())
    try:
        validate_owner_config(owner_config)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    get_pipeline().store.set_owner_config(owner_config)
    return _config_dict(owner_config)


@app.get("/owners/{owner_id}/rate-limits/{operation}", dependencies=[Depends(_require_api_key)])
def rate_limit_status(owner_id: str, operation: str) -> Dict[str, Any]:
    try:
        status = get_pipeline().rate_limiter.check(owner_id, operation)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return status.to_dict()


@app.post("/owners/{owner_id}/costs", dependencies=[Depends(_require_api_key)])
def record_cost(owner_id: str, req: CostRequest) -> Dict[str, Any]:
    try:
        record = get_pipeline().budget.record_cost(
            owner_id,
            cents=req.cents,
            operation=req.operation,
            budget_limit_cents=req.budget_limit_cents,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "owner_id": record.owner_id,
        "period_id": record.period_id,
        "total_cost_cents": record.total_cost_cents,
        "budget_limit_cents": record.budget_limit_cents,
        "used_percent": record.used_percent,
        "cost_by_operation": record.cost_by_operation,
    }


@app.post("/budgets/sweep", dependencies=[Depends(_require_api_key)])
def budget_sweep() -> Dict[str, Any]:
    return get_pipeline().budget.sweep().to_dict()


@app.post("/owners/{owner_id}/features/enable", dependencies=[Depends(_require_api_key)])
def enable_features(owner_id: str) -> Dict[str, Any]:
    cleared = get_pipeline().store.enable_features(owner_id)
    return {"owner_id": owner_id, "re_enabled": cleared}
