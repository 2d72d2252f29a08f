"""Retention scheduler based on the FSRS-4.5 memory model.

Stability (S) is the number of days after which recall probability decays to
90%; difficulty (D) lives in [1, 10]. Recall probability after t days follows
the power forgetting curve R(t, S) = (1 + FACTOR * t / S) ** DECAY, and the
next interval is the t at which R falls to the target retention.

`RetentionScheduler.schedule` is a pure function of (card, grade, review time)
and the scheduler parameters: fuzz is drawn from a generator seeded by the
inputs, so identical calls always yield identical results.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from .models.card import Card, CardState, Grade

DECAY = -0.5
FACTOR = 0.9 ** (1 / DECAY) - 1  # 19/81, so that R(S, S) == 0.9

MIN_STABILITY = 0.1
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
# Floor on the relative stability gain of a successful review. With an
# immediate re-review R == 1 and the FSRS gain term is exactly 0.
MIN_RECALL_GROWTH = 0.05

# FSRS-4.5 default weights w0..w16.
DEFAULT_WEIGHTS: tuple[float, ...] = (
    0.4872, 1.4003, 3.7145, 13.8206,
    5.1618, 1.2298, 0.8975, 0.031,
    1.6474, 0.1367, 1.0461,
    2.1072, 0.0793, 0.3246, 1.587,
    0.2272, 2.8755,
)

# (start, end, factor) bands for interval fuzzing, in days.
_FUZZ_RANGES: tuple[tuple[float, float, float], ...] = (
    (2.5, 7.0, 0.15),
    (7.0, 20.0, 0.1),
    (20.0, math.inf, 0.05),
)


@dataclass(frozen=True)
class SchedulerParameters:
    target_retention: float = 0.85
    maximum_interval_days: int = 365
    enable_fuzz: bool = True
    graduating_interval_days: int = 3
    weights: tuple[float, ...] = DEFAULT_WEIGHTS

    def __post_init__(self) -> None:
        if not 0.0 < self.target_retention < 1.0:
            raise ValueError("target_retention must be within (0, 1)")
        if self.maximum_interval_days < 1:
            raise ValueError("maximum_interval_days must be >= 1")
        if len(self.weights) != len(DEFAULT_WEIGHTS):
            raise ValueError(f"expected {len(DEFAULT_WEIGHTS)} weights, got {len(self.weights)}")

    @classmethod
    def from_settings(cls, settings: object) -> SchedulerParameters:
        return cls(
            target_retention=float(getattr(settings, "srs_target_retention")),
            maximum_interval_days=int(getattr(settings, "srs_maximum_interval_days")),
            enable_fuzz=bool(getattr(settings, "srs_enable_fuzz")),
            graduating_interval_days=int(getattr(settings, "srs_graduating_interval_days")),
        )


@dataclass(frozen=True)
class ScheduleOutcome:
    card: Card
    grade: Grade
    next_due: datetime
    interval_days: int
    retrievability: float


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RetentionScheduler:
    """Map (card, grade, review time) to the card's next scheduling state."""

    def __init__(self, params: SchedulerParameters | None = None) -> None:
        self.params = params or SchedulerParameters()

    # --- memory model ---
    def retrievability(self, elapsed_days: float, stability: float) -> float:
        if stability <= 0:
            return 0.0
        return (1 + FACTOR * max(0.0, elapsed_days) / stability) ** DECAY

    def _init_stability(self, grade: Grade) -> float:
        return max(self.params.weights[int(grade) - 1], MIN_STABILITY)

    def _init_difficulty(self, grade: Grade) -> float:
        w = self.params.weights
        return _clamp(w[4] - (int(grade) - 3) * w[5], MIN_DIFFICULTY, MAX_DIFFICULTY)

    def _next_difficulty(self, difficulty: float, grade: Grade) -> float:
        w = self.params.weights
        shifted = difficulty - w[6] * (int(grade) - 3)
        # mean reversion towards the initial difficulty of a Good first review
        reverted = w[7] * w[4] + (1 - w[7]) * shifted
        return _clamp(reverted, MIN_DIFFICULTY, MAX_DIFFICULTY)

    def _next_recall_stability(
        self, difficulty: float, stability: float, retrievability: float, grade: Grade
    ) -> float:
        w = self.params.weights
        growth = (
            math.exp(w[8])
            * (11 - difficulty)
            * stability ** -w[9]
            * (math.exp(w[10] * (1 - retrievability)) - 1)
        )
        hard_penalty = w[15] if grade is Grade.hard else 1.0
        easy_bonus = w[16] if grade is Grade.easy else 1.0
        return stability * (1 + max(growth, MIN_RECALL_GROWTH) * hard_penalty * easy_bonus)

    def _next_forget_stability(
        self, difficulty: float, stability: float, retrievability: float
    ) -> float:
        w = self.params.weights
        forgotten = (
            w[11]
            * difficulty ** -w[12]
            * ((stability + 1) ** w[13] - 1)
            * math.exp(w[14] * (1 - retrievability))
        )
        # a lapse never leaves the memory stronger than before
        return max(MIN_STABILITY, min(forgotten, stability))

    # --- intervals ---
    def interval_for(self, stability: float) -> float:
        """Days until recall probability decays to the target retention."""

        retention = self.params.target_retention
        return stability / FACTOR * (retention ** (1 / DECAY) - 1)

    def _fuzz_seed(self, card: Card, review_time: datetime) -> str:
        return f"{card.user_id}|{card.item_id}|{card.reps}|{review_time.isoformat()}"

    def _apply_fuzz(self, interval: float, rounded: int, seed: str) -> int:
        if not self.params.enable_fuzz or interval < 2.5:
            return rounded
        delta = 1.0
        for start, end, factor in _FUZZ_RANGES:
            delta += factor * max(min(interval, end) - start, 0.0)
        low = max(2, int(round(interval - delta)))
        high = min(int(round(interval + delta)), self.params.maximum_interval_days)
        low = min(low, high)
        return random.Random(seed).randint(low, high)

    def _interval_days(self, stability: float, seed: str) -> int:
        raw = self.interval_for(stability)
        rounded = min(max(int(round(raw)), 1), self.params.maximum_interval_days)
        fuzzed = self._apply_fuzz(raw, rounded, seed)
        return min(max(fuzzed, 1), self.params.maximum_interval_days)

    # --- state machine ---
    def _next_state(self, state: CardState, grade: Grade, interval_days: int) -> CardState:
        if state is CardState.new:
            return CardState.learning
        if state is CardState.learning:
            if grade is Grade.again:
                return CardState.learning
            if interval_days >= self.params.graduating_interval_days:
                return CardState.review
            return CardState.learning
        if state is CardState.review:
            return CardState.relearning if grade is Grade.again else CardState.review
        if state is CardState.relearning:
            return CardState.relearning if grade is Grade.again else CardState.review
        raise ValueError(f"unknown card state: {state!r}")

    def schedule(self, card: Card, grade: Grade | int, review_time: datetime) -> ScheduleOutcome:
        grade = Grade(grade)
        review_time = _as_utc(review_time)
        state = CardState.parse(card.state)

        elapsed_days = 0.0
        if card.last_review is not None:
            elapsed_days = max(
                0.0, (review_time - _as_utc(card.last_review)).total_seconds() / 86400.0
            )

        if state is CardState.new:
            retrievability = 0.0
            difficulty = self._init_difficulty(grade)
            stability = self._init_stability(grade)
        else:
            last_stability = max(card.stability, MIN_STABILITY)
            last_difficulty = _clamp(card.difficulty, MIN_DIFFICULTY, MAX_DIFFICULTY)
            retrievability = self.retrievability(elapsed_days, last_stability)
            difficulty = self._next_difficulty(last_difficulty, grade)
            if grade is Grade.again:
                stability = self._next_forget_stability(
                    last_difficulty, last_stability, retrievability
                )
            else:
                stability = self._next_recall_stability(
                    last_difficulty, last_stability, retrievability, grade
                )

        interval_days = self._interval_days(stability, self._fuzz_seed(card, review_time))
        next_state = self._next_state(state, grade, interval_days)
        lapses = card.lapses
        if grade is Grade.again and state in (CardState.review, CardState.relearning):
            lapses += 1

        next_due = review_time + timedelta(days=interval_days)
        updated = replace(
            card,
            state=next_state,
            difficulty=difficulty,
            stability=stability,
            due=next_due,
            elapsed_days=elapsed_days,
            scheduled_days=float(interval_days),
            reps=card.reps + 1,
            lapses=lapses,
            last_review=review_time,
        )
        return ScheduleOutcome(
            card=updated,
            grade=grade,
            next_due=next_due,
            interval_days=interval_days,
            retrievability=retrievability,
        )
