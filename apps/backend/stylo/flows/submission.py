"""Submission flow: grade an imitation attempt and commit its schedule exactly once.

Order of operations for a fresh attempt:
idempotency lookup → item lookup → quota pre-check → grading (retried,
cancellable) → grade mapping + scheduling → atomic commit → quota consume.

Duplicate attempts (same idempotency token at any age, or same user/item/text
within the idempotency window) are answered with the stored result. Concurrent
duplicates inside this process share a single grading call; across processes
the duplicate check is repeated inside the write transaction.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any, Awaitable, Callable

import anyio

from ..config import settings
from ..errors import (
    CANCELLED,
    Cancelled,
    GraderError,
    PersistenceError,
    QuotaExceededError,
    ValidationError,
)
from ..grades import map_to_grade
from ..id_factory import generate_submission_id
from ..logging import logger
from ..metrics import registry
from ..models.card import Card, Grade
from ..models.records import ContentItem, SubmissionRecord
from ..models.training import GraderOutput, ScheduleInfo, SubmissionResult
from ..providers.grader import Grader, GradingRequest
from ..quota import QuotaService
from ..retry import CancelToken, OperationCancelled, RetryPolicy, call_with_retry, wait_or_cancel
from ..scheduler import RetentionScheduler
from ..store.common import submission_fingerprint
from ..store.sqlite_store import AppSQLiteStore


@dataclass(frozen=True)
class SubmissionOutcome:
    result: dict[str, Any]
    submission_id: str
    replayed: bool = False
    card: Card | None = None


def schedule_message(grade: Grade, interval_days: int) -> str:
    unit = "day" if interval_days == 1 else "days"
    return f"{grade.label}: next review in {interval_days} {unit}"


class SubmissionCoordinator:
    def __init__(
        self,
        *,
        store: AppSQLiteStore,
        grader: Grader | Callable[[], Grader],
        quota: QuotaService,
        scheduler: RetentionScheduler,
        retry_policy: RetryPolicy,
        idempotency_window: timedelta = timedelta(seconds=60),
        max_text_chars: int = 10_000,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._grader = grader
        self._quota = quota
        self._scheduler = scheduler
        self._retry_policy = retry_policy
        self._window = idempotency_window
        self._max_text_chars = max(1, int(max_text_chars))
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}

    def _resolve_grader(self) -> Grader:
        grader = self._grader
        if hasattr(grader, "grade"):
            return grader  # type: ignore[return-value]
        return grader()  # type: ignore[operator]

    async def submit(
        self,
        user_id: str,
        item_id: str,
        candidate_text: str,
        idempotency_token: str,
        cancel: CancelToken | None = None,
        *,
        quota_key: str | None = None,
    ) -> SubmissionOutcome | Cancelled:
        """Grade and schedule one attempt; returns CANCELLED if `cancel` fires before commit."""

        if not candidate_text or not candidate_text.strip():
            raise ValidationError("candidate_text must not be blank")
        if len(candidate_text) > self._max_text_chars:
            raise ValidationError(
                f"candidate_text must be at most {self._max_text_chars} characters"
            )
        if not idempotency_token or not idempotency_token.strip():
            raise ValidationError("idempotency_token must not be blank")

        fingerprint = submission_fingerprint(user_id, item_id, candidate_text)
        key = (user_id, fingerprint)
        log_ctx = {
            "user_id": user_id,
            "item_id": item_id,
            "fingerprint": fingerprint[:16],
            "candidate_chars": len(candidate_text),
        }

        while True:
            replay = await self._lookup_duplicate(
                user_id, idempotency_token, fingerprint, log_ctx
            )
            if replay is not None:
                return replay

            leader = self._inflight.get(key)
            if leader is None:
                break
            logger.info("submission_joined_inflight", **log_ctx)
            try:
                shared = await wait_or_cancel(asyncio.shield(leader), cancel)
            except OperationCancelled:
                registry.record_outcome("cancelled")
                return CANCELLED
            if isinstance(shared, Cancelled):
                # the leader was cancelled; this caller still wants a result
                continue
            return SubmissionOutcome(
                result=shared.result,
                submission_id=shared.submission_id,
                replayed=True,
                card=shared.card,
            )

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            outcome = await self._run(
                user_id,
                item_id,
                candidate_text,
                idempotency_token,
                fingerprint,
                cancel,
                quota_key or user_id,
                log_ctx,
            )
        except asyncio.CancelledError:
            future.set_result(CANCELLED)
            raise
        except BaseException as exc:
            future.set_exception(exc)
            # followers re-raise it; mark it retrieved for the leader-only case
            future.exception()
            raise
        else:
            future.set_result(outcome)
            return outcome
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    async def _lookup_duplicate(
        self,
        user_id: str,
        idempotency_token: str,
        fingerprint: str,
        log_ctx: dict[str, Any],
    ) -> SubmissionOutcome | None:
        window_start = self._clock() - self._window
        existing = await anyio.to_thread.run_sync(
            partial(
                self._store.find_duplicate_submission,
                user_id,
                idempotency_token,
                fingerprint,
                window_start,
            )
        )
        if existing is None:
            return None
        return self._replay(existing, idempotency_token, fingerprint, log_ctx)

    def _replay(
        self,
        existing: SubmissionRecord,
        idempotency_token: str,
        fingerprint: str,
        log_ctx: dict[str, Any],
    ) -> SubmissionOutcome:
        if existing.idempotency_token == idempotency_token and existing.fingerprint != fingerprint:
            logger.warning("idempotency_token_conflict", **log_ctx)
            raise ValidationError("idempotency_token was already used for a different submission")
        logger.info("submission_replayed", submission_id=existing.id, **log_ctx)
        registry.record_outcome("replayed")
        return SubmissionOutcome(
            result=existing.result,
            submission_id=existing.id,
            replayed=True,
        )

    async def _run(
        self,
        user_id: str,
        item_id: str,
        candidate_text: str,
        idempotency_token: str,
        fingerprint: str,
        cancel: CancelToken | None,
        quota_key: str,
        log_ctx: dict[str, Any],
    ) -> SubmissionOutcome | Cancelled:
        item: ContentItem = await anyio.to_thread.run_sync(self._store.get_item, item_id)

        if self._quota.remaining(quota_key) <= 0:
            logger.info("submission_quota_exceeded", quota_key=quota_key, **log_ctx)
            raise QuotaExceededError()

        grader = self._resolve_grader()
        request = GradingRequest(
            original_text=item.content,
            candidate_text=candidate_text,
            reference_style_metrics=item.metrics,
        )
        try:
            output: GraderOutput = await call_with_retry(
                lambda: grader.grade(request),
                policy=self._retry_policy,
                cancel=cancel,
                sleep=self._sleep,
                operation="grade",
            )
        except OperationCancelled:
            logger.info("submission_cancelled", stage="grading", **log_ctx)
            registry.record_outcome("cancelled")
            return CANCELLED
        except GraderError as exc:
            logger.warning(
                "submission_grading_failed",
                error_type=exc.__class__.__name__,
                reason_code=exc.reason_code,
                **log_ctx,
            )
            registry.record_outcome("grader_failed")
            raise

        if cancel is not None and cancel.cancelled:
            logger.info("submission_cancelled", stage="before_commit", **log_ctx)
            registry.record_outcome("cancelled")
            return CANCELLED

        grade = map_to_grade(output.accuracy)
        submission_id = generate_submission_id()
        review_time = self._clock()

        def build(current: Card) -> tuple[Card, SubmissionRecord]:
            scheduled = self._scheduler.schedule(current, grade, review_time)
            result = SubmissionResult(
                accuracy=output.accuracy,
                sub_scores=output.sub_scores.model_dump(),
                feedback=output.feedback,
                schedule=ScheduleInfo(
                    grade=int(grade),
                    next_review_date=scheduled.next_due,
                    interval_days=scheduled.interval_days,
                    message=schedule_message(grade, scheduled.interval_days),
                ),
            ).model_dump(mode="json")
            record = SubmissionRecord(
                id=submission_id,
                idempotency_token=idempotency_token,
                user_id=user_id,
                item_id=item_id,
                fingerprint=fingerprint,
                candidate_text=candidate_text,
                accuracy_score=output.accuracy,
                sub_scores=output.sub_scores.model_dump(),
                feedback_text=output.feedback,
                grade=int(grade),
                result=result,
                created_at=review_time,
            )
            return scheduled.card, record

        # runs to completion even if the request is cancelled meanwhile
        try:
            committed = await anyio.to_thread.run_sync(
                partial(
                    self._store.commit_submission,
                    user_id=user_id,
                    item_id=item_id,
                    idempotency_token=idempotency_token,
                    fingerprint=fingerprint,
                    window_start=review_time - self._window,
                    build=build,
                )
            )
        except PersistenceError:
            logger.error("submission_commit_failed", exc_info=True, **log_ctx)
            registry.record_outcome("persistence_failed")
            raise

        if not committed.committed:
            return self._replay(committed.submission, idempotency_token, fingerprint, log_ctx)

        registry.record_outcome("committed")
        logger.info(
            "submission_committed",
            submission_id=submission_id,
            grade=grade.label,
            accuracy=output.accuracy,
            interval_days=committed.submission.result["schedule"]["interval_days"],
            state=committed.card.state.value if committed.card else None,
            **log_ctx,
        )

        try:
            consumed = self._quota.check_and_consume(quota_key)
        except Exception:
            logger.warning("quota_consume_failed", quota_key=quota_key, exc_info=True, **log_ctx)
        else:
            if not consumed:
                logger.info("quota_consume_over_limit", quota_key=quota_key, **log_ctx)

        return SubmissionOutcome(
            result=committed.submission.result,
            submission_id=submission_id,
            replayed=False,
            card=committed.card,
        )


def build_coordinator() -> SubmissionCoordinator:
    """設定値からアプリ共有の SubmissionCoordinator を構築する。"""

    from ..providers.grader import get_grader
    from ..quota import quota
    from ..scheduler import SchedulerParameters
    from ..store import store

    return SubmissionCoordinator(
        store=store,
        grader=get_grader,
        quota=quota,
        scheduler=RetentionScheduler(SchedulerParameters.from_settings(settings)),
        retry_policy=RetryPolicy(
            max_attempts=settings.grader_max_attempts,
            base_delay_seconds=settings.grader_backoff_base_seconds,
        ),
        idempotency_window=timedelta(seconds=settings.idempotency_window_seconds),
        max_text_chars=settings.candidate_text_max_chars,
    )


__all__ = [
    "SubmissionCoordinator",
    "SubmissionOutcome",
    "build_coordinator",
    "schedule_message",
]
