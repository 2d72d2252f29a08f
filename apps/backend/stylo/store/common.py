from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する（不正値/負値は0）。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def to_db_timestamp(value: datetime) -> str:
    """Serialize a timestamp as fixed-width UTC ISO-8601.

    Fixed width keeps lexical order equal to chronological order, which the
    `due <= ?` / `ORDER BY due` queries rely on.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def submission_fingerprint(user_id: str, item_id: str, candidate_text: str) -> str:
    """Stable key for the (user, item, candidate text) duplicate check."""

    digest = hashlib.sha256()
    for part in (user_id, item_id, candidate_text):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()
