from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import UTC, datetime
from functools import partial

import anyio  # オフロード用
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response

from ..auth import get_current_user_id
from ..config import StudyMode, settings
from ..errors import Cancelled
from ..flows.submission import SubmissionCoordinator, build_coordinator
from ..logging import logger
from ..models.training import (
    HistoryEntry,
    HistoryResponse,
    NextItemResponse,
    StatsResponse,
    StudySettings,
    SubmitRequest,
)
from ..retry import CancelToken
from ..selector import DueItemSelector, Selection
from ..store import store

router = APIRouter(tags=["train"])

_DISCONNECT_POLL_SECONDS = 0.25
_COORDINATOR: SubmissionCoordinator | None = None

_TERMINAL_MESSAGES = {
    "caught_up": "You're all caught up. Come back when your next review is due.",
    "exhausted": "There is nothing left to study here yet.",
    "all_attempted": "You have attempted every item in this collection.",
}


def get_coordinator() -> SubmissionCoordinator:
    """アプリ共有の SubmissionCoordinator を返す（初回呼び出し時に構築）。"""

    global _COORDINATOR
    if _COORDINATOR is None:
        _COORDINATOR = build_coordinator()
    return _COORDINATOR


def set_coordinator(coordinator: SubmissionCoordinator | None) -> None:
    """テスト用に SubmissionCoordinator を差し替える。"""

    global _COORDINATOR
    _COORDINATOR = coordinator


def _study_mode(user_id: str) -> StudyMode:
    stored = store.get_study_mode(user_id)
    if stored in ("spaced", "linear"):
        return stored  # type: ignore[return-value]
    return settings.default_study_mode


async def _watch_disconnect(request: Request, cancel: CancelToken) -> None:
    while not cancel.cancelled:
        if await request.is_disconnected():
            cancel.cancel("client_disconnected")
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post(
    "/submit",
    summary="模写テキストを採点し、次回の復習日を確定する",
    response_description="採点結果とスケジュール（重複送信時は初回の結果）",
    responses={204: {"description": "Cancelled before commit; nothing was saved"}},
)
async def submit_attempt(
    req: SubmitRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
) -> Response:
    """Grade one imitation attempt and commit the resulting schedule exactly once.

    同じ idempotency_token（または60秒以内の同一テキスト）の再送は再採点せず、
    初回の結果をそのまま返す（`Idempotent-Replayed: true`）。
    クライアントが切断した場合はコミット前に中断し、204 を返す。
    """

    cancel = CancelToken()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        outcome = await coordinator.submit(
            user_id,
            req.item_id,
            req.candidate_text,
            req.idempotency_token,
            cancel,
            quota_key=user_id or _client_ip(request),
        )
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher

    if isinstance(outcome, Cancelled):
        return Response(status_code=204)
    headers = {"Idempotent-Replayed": "true"} if outcome.replayed else {}
    return JSONResponse(content=outcome.result, headers=headers)


def _selection_response(selection: Selection) -> NextItemResponse:
    if selection.is_terminal:
        return NextItemResponse(
            status=selection.status,
            message=_TERMINAL_MESSAGES.get(selection.status),
        )
    return NextItemResponse(
        status="item",
        is_new=selection.is_new,
        item=selection.item.to_public_dict() if selection.item else None,
        card=selection.card.to_public_dict() if selection.card else None,
    )


@router.get("/next", response_model=NextItemResponse, summary="次に学習するアイテムを選ぶ")
async def next_item(
    exclude_item_id: str | None = Query(default=None, max_length=128),
    collection: str | None = Query(default=None, max_length=256),
    user_id: str = Depends(get_current_user_id),
) -> NextItemResponse:
    """期日到来の復習を優先し、なければ未学習アイテムから選ぶ。

    exclude_item_id には直前に完了したアイテムを渡す（同一セッション内での即時再出題を防ぐ）。
    """

    mode = await anyio.to_thread.run_sync(_study_mode, user_id)
    selector = DueItemSelector(
        store,
        due_batch_size=settings.selector_due_batch_size,
        new_window_size=settings.selector_new_window_size,
    )
    selection = await anyio.to_thread.run_sync(
        partial(
            selector.select,
            user_id,
            mode=mode,
            exclude_item_id=exclude_item_id,
            collection=collection,
        )
    )
    logger.info(
        "next_item_selected",
        user_id=user_id,
        mode=mode,
        status=selection.status,
        item_id=selection.item.id if selection.item else None,
        is_new=selection.is_new,
    )
    return _selection_response(selection)


@router.get("/settings", response_model=StudySettings)
async def get_settings(user_id: str = Depends(get_current_user_id)) -> StudySettings:
    mode = await anyio.to_thread.run_sync(_study_mode, user_id)
    return StudySettings(study_mode=mode)


@router.put("/settings", response_model=StudySettings)
async def update_settings(
    body: StudySettings, user_id: str = Depends(get_current_user_id)
) -> StudySettings:
    await anyio.to_thread.run_sync(store.set_study_mode, user_id, body.study_mode)
    logger.info("study_mode_updated", user_id=user_id, study_mode=body.study_mode)
    return body


@router.get("/stats", response_model=StatsResponse, summary="学習進捗の集計")
async def stats(user_id: str = Depends(get_current_user_id)) -> StatsResponse:
    data = await anyio.to_thread.run_sync(store.get_stats, user_id, datetime.now(UTC))
    return StatsResponse(**data)


@router.get("/history", response_model=HistoryResponse, summary="直近の提出履歴")
async def history(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
) -> HistoryResponse:
    records = await anyio.to_thread.run_sync(store.list_recent_submissions, user_id, limit)
    return HistoryResponse(
        items=[
            HistoryEntry(
                submission_id=record.id,
                item_id=record.item_id,
                created_at=record.created_at,
                result=record.result,
            )
            for record in records
        ]
    )
