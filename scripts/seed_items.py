#!/usr/bin/env python
"""デモ用アイテム（data/demo_items.jsonl など）を SQLite へ流し込むラッパー。"""

from __future__ import annotations

import sys
from pathlib import Path


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    backend_root = repo_root / "apps" / "backend"
    sys.path.insert(0, str(backend_root))

    from stylo.seed_items import main as seed_main

    seed_main(sys.argv[1:])


if __name__ == "__main__":
    main()
