"""Подписанная сессия с id пользователя, выданным внешним провайдером идентификации."""

import base64
import hashlib
import hmac
import json

from fastapi import Request

from imaginarena.core.config import settings
from imaginarena.core.errors import Unauthorized

SESSION_COOKIE = "arena_session"
SESSION_MAX_AGE = 60 * 60 * 24 * 7


def _b64_encode(value: str) -> str:
    encoded = base64.urlsafe_b64encode(value.encode("utf-8")).decode("utf-8")
    return encoded.rstrip("=")


def _b64_decode(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8")


def _sign(payload: str) -> str:
    digest = hmac.new(settings.secret_key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def create_session_cookie(user_id: int) -> str:
    payload = _b64_encode(json.dumps({"user_id": user_id}, separators=(",", ":")))
    signature = _sign(payload)
    return f"{payload}.{signature}"


def read_session_user_id(cookie_value: str | None) -> int | None:
    if not cookie_value or "." not in cookie_value:
        return None

    payload, signature = cookie_value.rsplit(".", 1)
    expected_signature = _sign(payload)
    if not hmac.compare_digest(signature, expected_signature):
        return None

    try:
        data = json.loads(_b64_decode(payload))
    except (ValueError, json.JSONDecodeError):
        return None
    user_id = data.get("user_id") if isinstance(data, dict) else None
    return user_id if isinstance(user_id, int) and not isinstance(user_id, bool) else None


def current_user_id(request: Request) -> int:
    # Зависимость FastAPI: id текущего пользователя из cookie.
    user_id = read_session_user_id(request.cookies.get(SESSION_COOKIE))
    if user_id is None:
        error = Unauthorized("Sign in required")
        error.status_code = 401
        raise error
    return user_id
