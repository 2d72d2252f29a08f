"""採点プロバイダの共有ステートと公開APIを管理するパッケージ。"""

from __future__ import annotations

from typing import Any

# 採点クライアントのシングルトン。テストでは set_grader で差し替える。
_GRADER_INSTANCE: Any | None = None


def _get_grader_instance() -> Any | None:
    """採点シングルトンの現在値を返す。"""

    return _GRADER_INSTANCE


def _set_grader_instance(instance: Any | None) -> None:
    """採点シングルトンを更新する。None を渡すと次回呼び出しで再初期化される。"""

    global _GRADER_INSTANCE
    _GRADER_INSTANCE = instance


from .grader import (  # noqa: E402
    Grader,
    GradingRequest,
    LocalGrader,
    OpenAIGrader,
    get_grader,
    parse_grader_output,
    set_grader,
    shutdown_providers,
)

__all__ = [
    "Grader",
    "GradingRequest",
    "LocalGrader",
    "OpenAIGrader",
    "get_grader",
    "parse_grader_output",
    "set_grader",
    "shutdown_providers",
]
