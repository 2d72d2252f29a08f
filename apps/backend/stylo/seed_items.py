"""JSONL ファイルから学習用アイテム（原文パッセージ）を SQLite へ登録するユーティリティ。

1 行 1 アイテム:
    {"id": "...", "title": "...", "content": "...", "collection": "...",
     "precomputed_metrics": {"sentence_length_avg": 21.4, ...}}
`metrics` キーも `precomputed_metrics` の別名として受け付ける。
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, Field, ValidationError, field_validator

from .logging import logger
from .store.sqlite_store import AppSQLiteStore


class SeedItem(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    collection: str | None = None
    precomputed_metrics: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "title")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned


def iter_seed_items(path: Path) -> Iterator[SeedItem]:
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
                if isinstance(raw, dict) and "metrics" in raw and "precomputed_metrics" not in raw:
                    raw["precomputed_metrics"] = raw.pop("metrics")
                yield SeedItem.model_validate(raw)
            except (json.JSONDecodeError, ValidationError) as exc:
                raise ValueError(f"{path}:{lineno}: invalid item ({exc})") from exc


def seed_items_from_jsonl(path: Path, store: AppSQLiteStore) -> int:
    """Register every item in `path`; existing ids are updated in place."""

    count = 0
    for item in iter_seed_items(path):
        store.add_item(
            item.id,
            item.title,
            item.content,
            collection=item.collection,
            metrics=item.precomputed_metrics,
        )
        count += 1
    logger.info("seed_items_completed", path=str(path), items=count)
    return count


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("jsonl_path", type=Path, help="登録するアイテムの JSONL ファイル")
    parser.add_argument(
        "--db-path",
        default=None,
        help="登録先 SQLite DB のパス（既定: 設定値 STYLO_DB_PATH）",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    if args.db_path:
        store = AppSQLiteStore(str(args.db_path))
    else:
        from .store import store
    count = seed_items_from_jsonl(args.jsonl_path, store)
    print(f"Seeded {count} items into {store.db_path}.")


if __name__ == "__main__":
    main()
