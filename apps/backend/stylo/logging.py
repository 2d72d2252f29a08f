"""Structured logging setup and event sanitisation.

構造化ログの初期化と、ログイベントの安全化を行う。
- シークレットらしいキー（api_key / secret / cookie など）の値はマスクする
- 学習者の提出テキストや原文パッセージは本文を残さず `<N chars>` に置き換える
"""

from typing import Any

import logging
import structlog
from structlog import contextvars as structlog_contextvars
from .config import settings


_SECRET_KEYWORDS = ("api_key", "secret", "authorization", "password", "cookie", "token")
# opaque client ids, safe to log as-is
_PUBLIC_KEYS = frozenset({"idempotency_token", "request_id", "submission_id", "user_id"})
_TEXT_KEYS = frozenset({"candidate_text", "original_text", "content", "prompt"})
_MASK_PLACEHOLDER = "***"


def _mask_secret(raw: object) -> str:
    """短い値は `***`、長い値は先頭と末尾の4文字だけを残す。"""

    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return _MASK_PLACEHOLDER
    return f"{text[:4]}…{text[-4:]}"


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in _PUBLIC_KEYS:
        return False
    return any(keyword in lowered for keyword in _SECRET_KEYWORDS)


def _known_secrets() -> tuple[str, ...]:
    return tuple(
        secret for secret in (settings.openai_api_key, settings.session_secret_key) if secret
    )


def _sanitize(value: Any, key: str | None, known: tuple[str, ...]) -> Any:
    if isinstance(value, dict):
        return {k: _sanitize(v, str(k), known) for k, v in value.items()}
    if key is not None and key.lower() in _TEXT_KEYS and isinstance(value, str):
        return f"<{len(value)} chars>"
    if key is not None and _is_secret_key(key):
        return _mask_secret(value)
    if isinstance(value, str):
        for secret in known:
            value = value.replace(secret, _mask_secret(secret))
    return value


def _sanitize_event_dict(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog processor: mask secrets and collapse free text before rendering."""

    known = _known_secrets()
    for key, value in list(event_dict.items()):
        event_dict[key] = _sanitize(value, str(key), known)
    return event_dict


def configure_logging() -> None:
    """Configure structlog for application-wide logging.

    標準 logging を INFO レベルで初期化し、structlog で ISO タイムスタンプと
    JSON 形式の出力を有効化する。
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog_contextvars.merge_contextvars,
            _sanitize_event_dict,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger()
