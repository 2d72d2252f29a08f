from __future__ import annotations

import uuid
from datetime import UTC, datetime

from fastapi import Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import settings
from .errors import AuthError
from .logging import logger

_SESSION_SALT = "stylo.session"


def _build_serializer() -> URLSafeTimedSerializer:
    """Construct a serializer for signing and verifying session tokens."""

    secret = settings.session_secret_key.strip()
    if not secret:
        raise RuntimeError("SESSION_SECRET_KEY is not configured")
    return URLSafeTimedSerializer(secret, salt=_SESSION_SALT)


def _session_max_age() -> int:
    """Return the configured session lifetime in seconds."""

    return max(60, int(settings.session_max_age_seconds or 60 * 60 * 24 * 14))


def issue_session_token(user_id: str) -> str:
    """Generate a signed session token carrying the user id in `sub`."""

    serializer = _build_serializer()
    payload = {
        "sid": uuid.uuid4().hex,
        "sub": user_id,
        "issued_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
    }
    return serializer.dumps(payload)


def verify_session_token(token: str) -> dict:
    """Decode a signed session token and return the embedded payload."""

    serializer = _build_serializer()
    return serializer.loads(token, max_age=_session_max_age())


def _session_log_context(request: Request, *, reason: str) -> dict[str, object]:
    """AccessLog と同じキーでセッション検証失敗の理由を記録する。"""

    client_ip = request.client.host if request.client else "unknown"
    return {
        "reason": reason,
        "path": request.url.path,
        "client_ip": client_ip,
        "request_id": getattr(request.state, "request_id", None),
    }


def _user_from_header(request: Request) -> str:
    header_name = settings.user_id_header or "X-User-Id"
    user_id = (request.headers.get(header_name) or "").strip()
    if not user_id:
        logger.warning(
            "session_validation_failed",
            **_session_log_context(request, reason="missing_user_header"),
        )
        raise AuthError()
    return user_id


def _user_from_cookie(request: Request) -> str:
    cookie_name = settings.session_cookie_name or "stylo_session"
    raw_token = request.cookies.get(cookie_name)
    if not raw_token:
        logger.warning(
            "session_validation_failed",
            **_session_log_context(request, reason="missing_cookie"),
        )
        raise AuthError()

    try:
        payload = verify_session_token(raw_token)
    except SignatureExpired as exc:
        logger.warning(
            "session_validation_failed",
            **_session_log_context(request, reason="expired"),
        )
        raise AuthError("Session expired") from exc
    except BadSignature as exc:
        logger.warning(
            "session_validation_failed",
            **_session_log_context(request, reason="bad_signature"),
        )
        raise AuthError("Invalid session token") from exc

    sub = payload.get("sub") if isinstance(payload, dict) else None
    if not isinstance(sub, str) or not sub:
        logger.warning(
            "session_validation_failed",
            **_session_log_context(request, reason="missing_sub"),
        )
        raise AuthError("Invalid session payload")
    return sub


async def get_current_user_id(request: Request) -> str:
    """Resolve the authenticated user id for this request.

    署名付きセッションクッキーの `sub` をユーザーIDとする。
    DISABLE_SESSION_AUTH=true のときは X-User-Id ヘッダを信頼する（開発・テスト用）。
    """

    if settings.disable_session_auth:
        user_id = _user_from_header(request)
    else:
        user_id = _user_from_cookie(request)
    request.state.user_id = user_id
    return user_id
