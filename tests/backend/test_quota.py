from __future__ import annotations

from stylo.quota import QuotaService


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_remaining_does_not_consume() -> None:
    quota = QuotaService(capacity=2, interval_seconds=60, clock=_Clock())

    assert quota.remaining("u1") == 2
    assert quota.remaining("u1") == 2


def test_consume_until_exhausted() -> None:
    quota = QuotaService(capacity=2, interval_seconds=60, clock=_Clock())

    assert quota.check_and_consume("u1") is True
    assert quota.check_and_consume("u1") is True
    assert quota.check_and_consume("u1") is False
    assert quota.remaining("u1") == 0


def test_keys_are_independent() -> None:
    quota = QuotaService(capacity=1, interval_seconds=60, clock=_Clock())

    assert quota.check_and_consume("u1") is True
    assert quota.remaining("u2") == 1
    assert quota.check_and_consume("203.0.113.5") is True


def test_bucket_refills_after_interval() -> None:
    clock = _Clock()
    quota = QuotaService(capacity=1, interval_seconds=60, clock=clock)
    quota.check_and_consume("u1")

    clock.now += 59
    assert quota.remaining("u1") == 0
    clock.now += 1
    assert quota.remaining("u1") == 1
    assert quota.check_and_consume("u1") is True


def test_idle_buckets_are_pruned() -> None:
    clock = _Clock()
    quota = QuotaService(capacity=3, interval_seconds=60, bucket_ttl_seconds=120, clock=clock)
    quota.check_and_consume("idle")

    clock.now += 200
    quota.check_and_consume("fresh")

    assert "idle" not in quota._buckets
    assert quota.remaining("idle") == 3


def test_bucket_count_is_bounded() -> None:
    quota = QuotaService(capacity=1, interval_seconds=60, max_buckets=2, clock=_Clock())
    for key in ("a", "b", "c"):
        quota.check_and_consume(key)

    assert list(quota._buckets) == ["b", "c"]
