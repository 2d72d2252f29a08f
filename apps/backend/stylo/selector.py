"""Choose the next item a learner should work on.

Spaced mode serves due reviews first (earliest due wins) and only falls back to
never-attempted items when nothing is due. Linear mode walks unattempted items
with no notion of due dates. In both modes new items are drawn at random from a
bounded window instead of strict creation order.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Literal, Protocol, Sequence

from .config import StudyMode
from .logging import logger
from .models.card import Card, new_card
from .models.records import ContentItem

SelectionStatus = Literal["item", "caught_up", "exhausted", "all_attempted"]


class SelectorStore(Protocol):
    def get_due_cards(
        self,
        user_id: str,
        now: datetime,
        limit: int,
        exclude_ids: Sequence[str] = (),
        collection: str | None = None,
    ) -> list[Card]: ...

    def get_attempted_item_ids(self, user_id: str) -> set[str]: ...

    def list_items(
        self, *, limit: int, exclude_ids: Sequence[str] = (), collection: str | None = None
    ) -> list[ContentItem]: ...

    def get_item(self, item_id: str) -> ContentItem: ...

    def count_cards(self, user_id: str, collection: str | None = None) -> int: ...

    def count_items(self, collection: str | None = None) -> int: ...


@dataclass(frozen=True)
class Selection:
    status: SelectionStatus
    item: ContentItem | None = None
    card: Card | None = None
    is_new: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status != "item"


class DueItemSelector:
    def __init__(
        self,
        store: SelectorStore,
        *,
        due_batch_size: int = 10,
        new_window_size: int = 20,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._due_batch_size = max(1, int(due_batch_size))
        self._new_window_size = max(1, int(new_window_size))
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(UTC))

    def select(
        self,
        user_id: str,
        *,
        mode: StudyMode = "spaced",
        exclude_item_id: str | None = None,
        collection: str | None = None,
    ) -> Selection:
        excluded = [exclude_item_id] if exclude_item_id else []

        if mode == "spaced":
            due = self._pick_due(user_id, excluded, collection)
            if due is not None:
                return due

        fresh = self._pick_new(user_id, excluded, collection)
        if fresh is not None:
            return fresh

        status = self._terminal_status(user_id, mode, collection)
        logger.info(
            "selector_terminal",
            user_id=user_id,
            mode=mode,
            status=status,
            collection=collection,
        )
        return Selection(status=status)

    def _pick_due(
        self, user_id: str, excluded: list[str], collection: str | None
    ) -> Selection | None:
        cards = self._store.get_due_cards(
            user_id,
            self._clock(),
            self._due_batch_size,
            exclude_ids=excluded,
            collection=collection,
        )
        cards = [card for card in cards if card.item_id not in excluded]
        if not cards:
            return None
        card = cards[0]
        return Selection(
            status="item",
            item=self._store.get_item(card.item_id),
            card=card,
            is_new=False,
        )

    def _pick_new(
        self, user_id: str, excluded: list[str], collection: str | None
    ) -> Selection | None:
        skip = set(self._store.get_attempted_item_ids(user_id))
        skip.update(excluded)
        window = self._store.list_items(
            limit=self._new_window_size,
            exclude_ids=sorted(skip),
            collection=collection,
        )
        window = [item for item in window if item.id not in skip]
        if not window:
            return None
        item = self._rng.choice(window)
        return Selection(
            status="item",
            item=item,
            card=new_card(user_id, item.id),
            is_new=True,
        )

    def _terminal_status(
        self, user_id: str, mode: StudyMode, collection: str | None
    ) -> SelectionStatus:
        if mode == "linear":
            return "all_attempted" if self._store.count_items(collection) else "exhausted"
        # scheduled cards exist but none is due yet
        if self._store.count_cards(user_id, collection):
            return "caught_up"
        return "exhausted"
