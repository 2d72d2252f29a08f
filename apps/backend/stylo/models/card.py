from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum


class CardState(str, Enum):
    """Scheduling phase of a card. Closed set; unknown values are rejected."""

    new = "new"
    learning = "learning"
    review = "review"
    relearning = "relearning"

    @classmethod
    def parse(cls, raw: object) -> CardState:
        """Strictly decode a stored/received state value."""

        if isinstance(raw, CardState):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                pass
        raise ValueError(f"unknown card state: {raw!r}")


class Grade(IntEnum):
    """Discrete rating of an attempt (1=Again … 4=Easy)."""

    again = 1
    hard = 2
    good = 3
    easy = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()


DEFAULT_DIFFICULTY = 5.0


@dataclass(frozen=True)
class Card:
    """Per-user, per-item scheduling record.

    `due` is None only for a card that has never been reviewed.
    """

    user_id: str
    item_id: str
    state: CardState = CardState.new
    difficulty: float = DEFAULT_DIFFICULTY
    stability: float = 0.0
    due: datetime | None = None
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0
    reps: int = 0
    lapses: int = 0
    last_review: datetime | None = None

    @property
    def is_new(self) -> bool:
        return self.state is CardState.new

    def to_public_dict(self) -> dict[str, object]:
        return {
            "item_id": self.item_id,
            "state": self.state.value,
            "difficulty": round(self.difficulty, 4),
            "stability": round(self.stability, 4),
            "due": self.due.isoformat() if self.due else None,
            "reps": self.reps,
            "lapses": self.lapses,
            "last_review": self.last_review.isoformat() if self.last_review else None,
        }


def new_card(user_id: str, item_id: str) -> Card:
    """Return the canonical never-reviewed card.

    Every call site that needs a default card goes through here so that the
    New-state defaults (difficulty 5.0, stability 0, reps 0, no due date) agree.
    """

    return Card(user_id=user_id, item_id=item_id)
