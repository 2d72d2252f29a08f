from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stylo.models.card import Card, CardState
from stylo.selector import DueItemSelector
from stylo.store.sqlite_store import AppSQLiteStore

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture()
def store(tmp_path: Path) -> AppSQLiteStore:
    return AppSQLiteStore(str(tmp_path / "selector.sqlite3"))


def _selector(store: AppSQLiteStore, **kwargs: object) -> DueItemSelector:
    kwargs.setdefault("rng", random.Random(7))
    return DueItemSelector(store, clock=lambda: NOW, **kwargs)  # type: ignore[arg-type]


def _add(store: AppSQLiteStore, item_id: str, collection: str | None = "storm") -> None:
    store.add_item(item_id, item_id.title(), f"Passage {item_id}.", collection=collection)


def _card(item_id: str, due: datetime, user_id: str = "u1") -> Card:
    return Card(
        user_id=user_id,
        item_id=item_id,
        state=CardState.review,
        difficulty=5.0,
        stability=4.0,
        due=due,
        reps=2,
        last_review=due - timedelta(days=4),
    )


def test_fresh_user_gets_canonical_new_card(store: AppSQLiteStore) -> None:
    _add(store, "a")

    selection = _selector(store).select("u1")

    assert selection.status == "item"
    assert selection.is_new is True
    assert selection.item is not None and selection.item.id == "a"
    card = selection.card
    assert card is not None
    assert card.state is CardState.new
    assert (card.difficulty, card.stability, card.reps, card.due) == (5.0, 0.0, 0, None)


def test_due_review_dominates_new_items(store: AppSQLiteStore) -> None:
    for item_id in ("a", "b", "c", "d"):
        _add(store, item_id)
    store.upsert_card(_card("c", NOW - timedelta(hours=1)))

    for seed in range(10):
        selection = _selector(store, rng=random.Random(seed)).select("u1")
        assert selection.item is not None and selection.item.id == "c"
        assert selection.is_new is False


def test_earliest_due_card_is_returned_first(store: AppSQLiteStore) -> None:
    for item_id in ("a", "b", "c"):
        _add(store, item_id)
    store.upsert_card(_card("a", NOW - timedelta(hours=1)))
    store.upsert_card(_card("b", NOW - timedelta(days=2)))
    store.upsert_card(_card("c", NOW + timedelta(days=1)))

    selection = _selector(store).select("u1")

    assert selection.card is not None and selection.card.item_id == "b"


def test_excluded_item_is_never_returned(store: AppSQLiteStore) -> None:
    _add(store, "a")
    _add(store, "b")
    store.upsert_card(_card("a", NOW - timedelta(hours=1)))

    selection = _selector(store).select("u1", exclude_item_id="a")

    assert selection.item is not None and selection.item.id == "b"
    assert selection.is_new is True


def test_excluded_only_item_yields_terminal_state(store: AppSQLiteStore) -> None:
    _add(store, "a")
    store.upsert_card(_card("a", NOW - timedelta(hours=1)))

    selection = _selector(store).select("u1", exclude_item_id="a")

    assert selection.is_terminal
    assert selection.status == "caught_up"


def test_collection_filter_applies_to_due_and_new(store: AppSQLiteStore) -> None:
    _add(store, "storm-1", collection="storm")
    _add(store, "kafka-1", collection="kafka")
    _add(store, "kafka-2", collection="kafka")
    store.upsert_card(_card("storm-1", NOW - timedelta(days=1)))

    selection = _selector(store).select("u1", collection="kafka")

    assert selection.item is not None
    assert selection.item.collection == "kafka"
    assert selection.is_new is True


def test_caught_up_when_nothing_is_due(store: AppSQLiteStore) -> None:
    _add(store, "a")
    store.upsert_card(_card("a", NOW + timedelta(days=3)))

    selection = _selector(store).select("u1")

    assert selection.status == "caught_up"
    assert selection.item is None


def test_exhausted_when_library_is_empty(store: AppSQLiteStore) -> None:
    assert _selector(store).select("u1").status == "exhausted"


def test_new_items_are_picked_from_the_window_via_rng(store: AppSQLiteStore) -> None:
    for item_id in ("a", "b", "c", "d", "e"):
        _add(store, item_id)

    class LastPick(random.Random):
        def choice(self, seq):  # type: ignore[override]
            return seq[-1]

    selection = _selector(store, rng=LastPick(), new_window_size=3).select("u1")

    assert selection.item is not None and selection.item.id == "c"


def test_linear_mode_ignores_due_dates(store: AppSQLiteStore) -> None:
    _add(store, "a")
    _add(store, "b")
    store.upsert_card(_card("a", NOW - timedelta(days=1)))

    selection = _selector(store).select("u1", mode="linear")

    assert selection.item is not None and selection.item.id == "b"
    assert selection.is_new is True


def test_linear_mode_reports_all_attempted(store: AppSQLiteStore) -> None:
    _add(store, "a")
    store.upsert_card(_card("a", NOW - timedelta(days=1)))

    assert _selector(store).select("u1", mode="linear").status == "all_attempted"


def test_other_users_cards_do_not_count_as_attempted(store: AppSQLiteStore) -> None:
    _add(store, "a")
    store.upsert_card(_card("a", NOW - timedelta(days=1), user_id="someone-else"))

    selection = _selector(store).select("u1")

    assert selection.is_new is True
    assert selection.item is not None and selection.item.id == "a"
