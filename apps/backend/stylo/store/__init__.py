from __future__ import annotations

from ..config import settings
from .sqlite_store import AppSQLiteStore, CommitResult


def _create_store() -> AppSQLiteStore:
    """アプリ全体で共有する SQLite ベースのストアを初期化する。"""

    return AppSQLiteStore(settings.stylo_db_path)


store = _create_store()

__all__ = [
    "AppSQLiteStore",
    "CommitResult",
    "store",
]
