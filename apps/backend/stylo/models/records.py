from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ContentItem:
    """A passage the learner imitates, with its precomputed style metrics."""

    id: str
    title: str
    content: str
    collection: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    def to_public_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "collection": self.collection,
            "content": self.content,
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class SubmissionRecord:
    """Append-only log entry for one accepted grading round-trip.

    `result` is the response payload returned to the client, kept verbatim so
    that duplicate submissions can be answered without re-grading.
    """

    id: str
    idempotency_token: str
    user_id: str
    item_id: str
    fingerprint: str
    candidate_text: str
    accuracy_score: float
    sub_scores: dict[str, float]
    feedback_text: str
    grade: int
    result: dict[str, Any]
    created_at: datetime
