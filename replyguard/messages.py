"""
Message store collaborator.

The decision pipeline subscribes to "message created" notifications and
reads/annotates messages through the MessageStore interface. Delivery is
at-least-once: a subscriber may see the same event more than once.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


@dataclass
class Conversation:
    """A chat thread."""
    id: str
    type: ConversationType
    participant_ids: list[str]
    creator_id: Optional[str] = None

    def resolve_owner(self, sender_id: str) -> Optional[str]:
        """
        Owner whose automation answers a message from `sender_id`.

        Group conversations belong to their creator; in a direct conversation
        the owner is the participant who did not send the message.
        """
        if self.type is ConversationType.GROUP:
            return self.creator_id
        others = [p for p in self.participant_ids if p != sender_id]
        return others[0] if len(others) == 1 else None


@dataclass
class InboundMessage:
    """A stored chat message."""
    id: str
    conversation_id: str
    sender_id: str
    text: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    sentiment_score: Optional[float] = None


@dataclass
class MessageCreatedEvent:
    """Payload of a "message created" notification."""
    conversation_id: str
    message_id: str
    sender_id: str
    text: str
    timestamp: datetime

    @classmethod
    def from_message(cls, message: InboundMessage) -> "MessageCreatedEvent":
        return cls(
            conversation_id=message.conversation_id,
            message_id=message.id,
            sender_id=message.sender_id,
            text=message.text,
            timestamp=message.timestamp,
        )


Subscriber = Callable[[MessageCreatedEvent], Any]


class MessageStore(Protocol):
    """Message persistence with change notification."""

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        ...

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        sentiment_score: Optional[float] = None,
        message_id: Optional[str] = None,
        notify: bool = True,
    ) -> InboundMessage:
        ...

    def get_message(self, conversation_id: str, message_id: str) -> Optional[InboundMessage]:
        ...

    def update_metadata(self, conversation_id: str, message_id: str, fields: dict[str, Any]) -> None:
        ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def has_recent_message_from(
        self,
        conversation_id: str,
        sender_id: str,
        since: datetime,
        exclude_message_id: Optional[str] = None,
    ) -> bool:
        ...


class InMemoryMessageStore:
    """
    In-process message store.

    Subscribers run synchronously on the writer's thread after the message is
    stored. A failing subscriber is logged and never fails the write.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._messages: dict[tuple[str, str], InboundMessage] = {}
        self._conversations: dict[str, Conversation] = {}
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def set_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = replace(conversation)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return replace(conversation) if conversation else None

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        sentiment_score: Optional[float] = None,
        message_id: Optional[str] = None,
        notify: bool = True,
    ) -> InboundMessage:
        message = InboundMessage(
            id=message_id or uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text,
            timestamp=timestamp or datetime.now(UTC),
            metadata=dict(metadata or {}),
            sentiment_score=sentiment_score,
        )
        with self._lock:
            self._messages[(conversation_id, message.id)] = message
        if notify:
            self._notify(MessageCreatedEvent.from_message(message))
        return replace(message, metadata=dict(message.metadata))

    def redeliver(self, conversation_id: str, message_id: str) -> None:
        """Fire the "message created" event for an existing message again."""
        with self._lock:
            message = self._messages.get((conversation_id, message_id))
        if message is None:
            raise KeyError(f"Unknown message: {conversation_id}/{message_id}")
        self._notify(MessageCreatedEvent.from_message(message))

    def _notify(self, event: MessageCreatedEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.exception("Subscriber failed for message %s: %s", event.message_id, e)

    def get_message(self, conversation_id: str, message_id: str) -> Optional[InboundMessage]:
        with self._lock:
            message = self._messages.get((conversation_id, message_id))
            return replace(message, metadata=dict(message.metadata)) if message else None

    def update_metadata(self, conversation_id: str, message_id: str, fields: dict[str, Any]) -> None:
        with self._lock:
            message = self._messages.get((conversation_id, message_id))
            if message is None:
                raise KeyError(f"Unknown message: {conversation_id}/{message_id}")
            message.metadata.update(fields)

    def list_messages(self, conversation_id: str) -> list[InboundMessage]:
        with self._lock:
            messages = [
                replace(m, metadata=dict(m.metadata))
                for (cid, _), m in self._messages.items()
                if cid == conversation_id
            ]
        return sorted(messages, key=lambda m: m.timestamp)

    def has_recent_message_from(
        self,
        conversation_id: str,
        sender_id: str,
        since: datetime,
        exclude_message_id: Optional[str] = None,
    ) -> bool:
        """True if `sender_id` wrote a non-automated message at or after `since`."""
        with self._lock:
            for (cid, mid), message in self._messages.items():
                if cid != conversation_id or mid == exclude_message_id:
                    continue
                if message.sender_id != sender_id or message.metadata.get("auto_response_sent"):
                    continue
                if message.timestamp >= since:
                    return True
        return False


def manual_override_since(timestamp: datetime, window_seconds: float) -> datetime:
    """Start of the window in which an owner's own reply cancels automation."""
    return timestamp - timedelta(seconds=window_seconds)
