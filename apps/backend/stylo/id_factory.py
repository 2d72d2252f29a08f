"""ID 生成ユーティリティ。

提出ログの ID はトークンやフィンガープリントと独立した UUID とし、
prefix "sub:" で他の ID と見分けられるようにする。
"""

from __future__ import annotations

import uuid


def generate_submission_id() -> str:
    """提出ログの新規 ID を生成する。"""

    return f"sub:{uuid.uuid4().hex}"
