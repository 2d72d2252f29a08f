from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from ..errors import NotFoundError, PersistenceError
from ..logging import logger
from ..models.card import Card, CardState, new_card
from ..models.records import ContentItem, SubmissionRecord
from .common import from_db_timestamp, normalize_non_negative_int, to_db_timestamp


@dataclass(frozen=True)
class CommitResult:
    """Outcome of `commit_submission`.

    committed=False means an earlier submission already covered this attempt;
    `submission` is then that earlier record and nothing was written.
    """

    committed: bool
    submission: SubmissionRecord
    card: Card | None = None


BuildFn = Callable[[Card], tuple[Card, SubmissionRecord]]

_CARD_COLUMNS = (
    "c.user_id, c.item_id, c.state, c.difficulty, c.stability, c.due, c.elapsed_days, "
    "c.scheduled_days, c.reps, c.lapses, c.last_review"
)
_SUBMISSION_COLUMNS = (
    "id, idempotency_token, user_id, item_id, fingerprint, candidate_text, accuracy_score, "
    "sub_scores, feedback_text, grade, result, created_at"
)


class AppSQLiteStore:
    """SQLite-backed persistence for cards, submissions, content items and study settings.

    - カードは (user_id, item_id) ごとに1行。初回提出のコミット時に作成される
    - 提出ログは追記専用。(user_id, idempotency_token) は一意
    - カード更新と提出ログの追加は BEGIN IMMEDIATE の単一トランザクションで行う
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
            conn.execute("pragma foreign_keys=ON;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn:
                self._ensure_items_table(conn)
                self._ensure_cards_table(conn)
                self._ensure_submissions_table(conn)
                self._ensure_user_settings_table(conn)

    def _ensure_items_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                collection TEXT,
                content TEXT NOT NULL,
                metrics TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_items_collection ON items(collection);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_items_created_at ON items(created_at);")

    def _ensure_cards_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cards (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                state TEXT NOT NULL CHECK (state IN ('new', 'learning', 'review', 'relearning')),
                difficulty REAL NOT NULL,
                stability REAL NOT NULL,
                due TEXT,
                elapsed_days REAL NOT NULL DEFAULT 0,
                scheduled_days REAL NOT NULL DEFAULT 0,
                reps INTEGER NOT NULL DEFAULT 0,
                lapses INTEGER NOT NULL DEFAULT 0,
                last_review TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, item_id),
                FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_cards_user_due ON cards(user_id, due);")

    def _ensure_submissions_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS submissions (
                id TEXT PRIMARY KEY,
                idempotency_token TEXT NOT NULL,
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                candidate_text TEXT NOT NULL,
                accuracy_score REAL NOT NULL,
                sub_scores TEXT NOT NULL,
                feedback_text TEXT NOT NULL,
                grade INTEGER NOT NULL,
                result TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_submissions_user_token "
            "ON submissions(user_id, idempotency_token);"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_submissions_user_fp_created "
            "ON submissions(user_id, fingerprint, created_at);"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_submissions_user_created "
            "ON submissions(user_id, created_at);"
        )

    def _ensure_user_settings_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_settings (
                user_id TEXT PRIMARY KEY,
                study_mode TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )

    @staticmethod
    def _now() -> str:
        return to_db_timestamp(datetime.now(UTC))

    # --- row mapping ---
    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ContentItem:
        try:
            metrics = json.loads(row["metrics"] or "{}")
        except json.JSONDecodeError:
            metrics = {}
        return ContentItem(
            id=row["id"],
            title=row["title"],
            collection=row["collection"],
            content=row["content"],
            metrics=metrics if isinstance(metrics, dict) else {},
            created_at=from_db_timestamp(row["created_at"]),
        )

    @staticmethod
    def _row_to_card(row: sqlite3.Row) -> Card:
        try:
            state = CardState.parse(row["state"])
        except ValueError as exc:
            logger.error(
                "card_state_invalid",
                user_id=row["user_id"],
                item_id=row["item_id"],
                state=row["state"],
            )
            raise PersistenceError() from exc
        return Card(
            user_id=row["user_id"],
            item_id=row["item_id"],
            state=state,
            difficulty=float(row["difficulty"]),
            stability=float(row["stability"]),
            due=from_db_timestamp(row["due"]),
            elapsed_days=float(row["elapsed_days"] or 0.0),
            scheduled_days=float(row["scheduled_days"] or 0.0),
            reps=normalize_non_negative_int(row["reps"]),
            lapses=normalize_non_negative_int(row["lapses"]),
            last_review=from_db_timestamp(row["last_review"]),
        )

    @staticmethod
    def _row_to_submission(row: sqlite3.Row) -> SubmissionRecord:
        return SubmissionRecord(
            id=row["id"],
            idempotency_token=row["idempotency_token"],
            user_id=row["user_id"],
            item_id=row["item_id"],
            fingerprint=row["fingerprint"],
            candidate_text=row["candidate_text"],
            accuracy_score=float(row["accuracy_score"]),
            sub_scores=json.loads(row["sub_scores"]),
            feedback_text=row["feedback_text"],
            grade=int(row["grade"]),
            result=json.loads(row["result"]),
            created_at=from_db_timestamp(row["created_at"]),  # type: ignore[arg-type]
        )

    @staticmethod
    def _id_list(ids: Iterable[str]) -> str:
        return json.dumps(sorted({str(i) for i in ids if i}))

    # --- content items ---
    def add_item(
        self,
        item_id: str,
        title: str,
        content: str,
        *,
        collection: str | None = None,
        metrics: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> ContentItem:
        """Insert or replace a content item (created_at of an existing item is kept)."""

        created = to_db_timestamp(created_at) if created_at else self._now()
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO items(id, title, collection, content, metrics, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        collection = excluded.collection,
                        content = excluded.content,
                        metrics = excluded.metrics;
                    """,
                    (
                        item_id,
                        title,
                        collection,
                        content,
                        json.dumps(metrics or {}, ensure_ascii=False),
                        created,
                    ),
                )
        return self.get_item(item_id)

    def get_item(self, item_id: str) -> ContentItem:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT id, title, collection, content, metrics, created_at FROM items WHERE id = ?;",
                (item_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError()
        return self._row_to_item(row)

    def list_items(
        self,
        *,
        limit: int,
        exclude_ids: Iterable[str] = (),
        collection: str | None = None,
    ) -> list[ContentItem]:
        """Return up to `limit` items, oldest first, outside `exclude_ids`."""

        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT id, title, collection, content, metrics, created_at
                FROM items
                WHERE id NOT IN (SELECT value FROM json_each(?))
                  AND (? IS NULL OR collection = ?)
                ORDER BY created_at ASC, id ASC
                LIMIT ?;
                """,
                (self._id_list(exclude_ids), collection, collection, max(0, int(limit))),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count_items(self, collection: str | None = None) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COUNT(1) AS c FROM items WHERE (? IS NULL OR collection = ?);",
                (collection, collection),
            ).fetchone()
        return int(row["c"]) if row else 0

    # --- cards ---
    def _read_card(self, conn: sqlite3.Connection, user_id: str, item_id: str) -> Card | None:
        row = conn.execute(
            f"SELECT {_CARD_COLUMNS} FROM cards c WHERE c.user_id = ? AND c.item_id = ?;",
            (user_id, item_id),
        ).fetchone()
        return self._row_to_card(row) if row else None

    def _write_card(self, conn: sqlite3.Connection, card: Card) -> None:
        conn.execute(
            """
            INSERT INTO cards(
                user_id, item_id, state, difficulty, stability, due, elapsed_days,
                scheduled_days, reps, lapses, last_review, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, item_id) DO UPDATE SET
                state = excluded.state,
                difficulty = excluded.difficulty,
                stability = excluded.stability,
                due = excluded.due,
                elapsed_days = excluded.elapsed_days,
                scheduled_days = excluded.scheduled_days,
                reps = excluded.reps,
                lapses = excluded.lapses,
                last_review = excluded.last_review,
                updated_at = excluded.updated_at;
            """,
            (
                card.user_id,
                card.item_id,
                CardState.parse(card.state).value,
                float(card.difficulty),
                float(card.stability),
                to_db_timestamp(card.due) if card.due else None,
                float(card.elapsed_days),
                float(card.scheduled_days),
                normalize_non_negative_int(card.reps),
                normalize_non_negative_int(card.lapses),
                to_db_timestamp(card.last_review) if card.last_review else None,
                self._now(),
            ),
        )

    def get_card(self, user_id: str, item_id: str) -> Card | None:
        with self._conn() as conn:
            return self._read_card(conn, user_id, item_id)

    def upsert_card(self, card: Card) -> None:
        with self._conn() as conn:
            with conn:
                self._write_card(conn, card)

    def get_due_cards(
        self,
        user_id: str,
        now: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
        collection: str | None = None,
    ) -> list[Card]:
        """Cards with `due <= now`, earliest due first."""

        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CARD_COLUMNS}
                FROM cards c
                JOIN items i ON i.id = c.item_id
                WHERE c.user_id = ?
                  AND c.due IS NOT NULL
                  AND c.due <= ?
                  AND c.item_id NOT IN (SELECT value FROM json_each(?))
                  AND (? IS NULL OR i.collection = ?)
                ORDER BY c.due ASC, c.item_id ASC
                LIMIT ?;
                """,
                (
                    user_id,
                    to_db_timestamp(now),
                    self._id_list(exclude_ids),
                    collection,
                    collection,
                    max(0, int(limit)),
                ),
            ).fetchall()
        return [self._row_to_card(row) for row in rows]

    def get_attempted_item_ids(self, user_id: str) -> set[str]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT item_id FROM cards WHERE user_id = ?;", (user_id,)
            ).fetchall()
        return {row["item_id"] for row in rows}

    def count_cards(self, user_id: str, collection: str | None = None) -> int:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS c
                FROM cards c JOIN items i ON i.id = c.item_id
                WHERE c.user_id = ? AND (? IS NULL OR i.collection = ?);
                """,
                (user_id, collection, collection),
            ).fetchone()
        return int(row["c"]) if row else 0

    # --- submissions ---
    def _find_duplicate(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        idempotency_token: str,
        fingerprint: str,
        window_start: datetime,
    ) -> SubmissionRecord | None:
        row = conn.execute(
            f"""
            SELECT {_SUBMISSION_COLUMNS}
            FROM submissions
            WHERE user_id = ?
              AND (idempotency_token = ? OR (fingerprint = ? AND created_at >= ?))
            ORDER BY (idempotency_token = ?) DESC, created_at ASC
            LIMIT 1;
            """,
            (
                user_id,
                idempotency_token,
                fingerprint,
                to_db_timestamp(window_start),
                idempotency_token,
            ),
        ).fetchone()
        return self._row_to_submission(row) if row else None

    def find_duplicate_submission(
        self,
        user_id: str,
        idempotency_token: str,
        fingerprint: str,
        window_start: datetime,
    ) -> SubmissionRecord | None:
        """Submission with the same token (any age) or fingerprint (since window_start)."""

        with self._conn() as conn:
            return self._find_duplicate(conn, user_id, idempotency_token, fingerprint, window_start)

    def commit_submission(
        self,
        *,
        user_id: str,
        item_id: str,
        idempotency_token: str,
        fingerprint: str,
        window_start: datetime,
        build: BuildFn,
    ) -> CommitResult:
        """Atomically re-check for duplicates, then write the new card and the submission.

        `build` receives the card as currently stored (or the canonical new card)
        and returns the updated card plus the submission record. It runs inside
        the write transaction, so the card it sees cannot change underneath it.
        """

        with self._conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                existing = self._find_duplicate(
                    conn, user_id, idempotency_token, fingerprint, window_start
                )
                if existing is not None:
                    conn.execute("ROLLBACK;")
                    return CommitResult(committed=False, submission=existing)

                current = self._read_card(conn, user_id, item_id) or new_card(user_id, item_id)
                updated, record = build(current)
                if updated.reps < current.reps:
                    raise ValueError("reps must not decrease")
                conn.execute(
                    f"""
                    INSERT INTO submissions({_SUBMISSION_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        record.id,
                        record.idempotency_token,
                        record.user_id,
                        record.item_id,
                        record.fingerprint,
                        record.candidate_text,
                        float(record.accuracy_score),
                        json.dumps(record.sub_scores),
                        record.feedback_text,
                        int(record.grade),
                        json.dumps(record.result, ensure_ascii=False),
                        to_db_timestamp(record.created_at),
                    ),
                )
                self._write_card(conn, updated)
                conn.execute("COMMIT;")
                return CommitResult(committed=True, submission=record, card=updated)
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    conn.execute("ROLLBACK;")
                raise PersistenceError() from exc
            except Exception:
                with suppress(sqlite3.Error):
                    conn.execute("ROLLBACK;")
                raise

    def list_recent_submissions(self, user_id: str, limit: int = 10) -> list[SubmissionRecord]:
        """直近の提出を新しい順に最大 limit 件返す。"""

        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SUBMISSION_COLUMNS}
                FROM submissions
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?;
                """,
                (user_id, max(0, int(limit))),
            ).fetchall()
        return [self._row_to_submission(row) for row in rows]

    # --- study settings ---
    def get_study_mode(self, user_id: str) -> str | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT study_mode FROM user_settings WHERE user_id = ?;", (user_id,)
            ).fetchone()
        return row["study_mode"] if row else None

    def set_study_mode(self, user_id: str, study_mode: str) -> None:
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO user_settings(user_id, study_mode, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        study_mode = excluded.study_mode,
                        updated_at = excluded.updated_at;
                    """,
                    (user_id, study_mode, self._now()),
                )

    # --- stats ---
    def get_stats(self, user_id: str, now: datetime) -> dict[str, Any]:
        """Return (total_studied, due_now, average_reps, by_state) for a user."""

        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT state,
                       COUNT(1) AS c,
                       COALESCE(SUM(reps), 0) AS r,
                       COALESCE(SUM(CASE WHEN due IS NOT NULL AND due <= ? THEN 1 ELSE 0 END), 0) AS d
                FROM cards
                WHERE user_id = ?
                GROUP BY state;
                """,
                (to_db_timestamp(now), user_id),
            ).fetchall()
        by_state = {state.value: 0 for state in CardState}
        total = reps = due = 0
        for row in rows:
            by_state[CardState.parse(row["state"]).value] = int(row["c"])
            total += int(row["c"])
            reps += int(row["r"])
            due += int(row["d"])
        return {
            "total_studied": total,
            "due_now": due,
            "average_reps": round(reps / total) if total else 0,
            "by_state": by_state,
        }
