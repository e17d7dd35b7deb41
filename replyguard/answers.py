"""Answer library collaborator: the owner's stored question/answer templates."""

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, UTC
from typing import Optional, Protocol

from replyguard.models import AnswerPayload


@dataclass
class AnswerTemplate:
    """A reusable answer an owner has written."""
    id: str
    owner_id: str
    question: str
    answer: str
    category: str = "general"
    is_active: bool = True
    use_count: int = 0
    last_used_at: Optional[datetime] = None

    def to_payload(self) -> AnswerPayload:
        return AnswerPayload(
            answer_text=self.answer,
            is_active=self.is_active,
            owner_scope=self.owner_id,
            category=self.category,
            question=self.question,
        )


class AnswerLibrary(Protocol):
    """Answer template persistence."""

    def get(self, answer_id: str) -> Optional[AnswerTemplate]:
        ...

    def add(self, template: AnswerTemplate) -> AnswerTemplate:
        ...

    def record_use(self, answer_id: str, at: Optional[datetime] = None) -> Optional[AnswerTemplate]:
        ...


class InMemoryAnswerLibrary:
    """Thread-safe in-process answer library."""

    def __init__(self):
        self._lock = threading.Lock()
        self._templates: dict[str, AnswerTemplate] = {}

    def create(
        self,
        owner_id: str,
        question: str,
        answer: str,
        category: str = "general",
        is_active: bool = True,
    ) -> AnswerTemplate:
        return self.add(
            AnswerTemplate(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                question=question,
                answer=answer,
                category=category,
                is_active=is_active,
            )
        )

    def add(self, template: AnswerTemplate) -> AnswerTemplate:
        with self._lock:
            self._templates[template.id] = replace(template)
        return template

    def get(self, answer_id: str) -> Optional[AnswerTemplate]:
        with self._lock:
            template = self._templates.get(answer_id)
            return replace(template) if template else None

    def set_active(self, answer_id: str, is_active: bool) -> None:
        with self._lock:
            if answer_id not in self._templates:
                raise KeyError(f"Unknown answer: {answer_id}")
            self._templates[answer_id].is_active = is_active

    def list_for_owner(self, owner_id: str) -> list[AnswerTemplate]:
        with self._lock:
            return [replace(t) for t in self._templates.values() if t.owner_id == owner_id]

    def record_use(self, answer_id: str, at: Optional[datetime] = None) -> Optional[AnswerTemplate]:
        """Increment the use count and stamp last_used_at. Returns None if unknown."""
        with self._lock:
            template = self._templates.get(answer_id)
            if template is None:
                return None
            template.use_count += 1
            template.last_used_at = at or datetime.now(UTC)
            return replace(template)
