"""
Session cookie verification for WebSocket attach.

Sessions are issued by the account service; this module only checks the
signature and pulls the username out.
"""

import asyncio
from datetime import timedelta
from typing import Optional

import orjson as json
from itsdangerous import TimestampSigner, SignatureExpired, BadSignature

from coinduel.config import settings

SESSION_COOKIE = "session"


def _signer() -> TimestampSigner:
    return TimestampSigner(settings.security.secret_key)


def sign_session(username: str) -> str:
    """Produce a cookie value for `username`. Used by scripts and tests."""
    return _signer().sign(json.dumps({"username": username})).decode("utf-8")


def read_session(cookie: Optional[str]) -> Optional[str]:
    """Return the username inside a valid session cookie, else None."""
    if not cookie:
        return None

    max_age_seconds = int(timedelta(days=settings.security.session_max_age_days).total_seconds())
    try:
        data = _signer().unsign(cookie.encode("utf-8"), max_age=max_age_seconds)
        session_data = json.loads(data)
    except (SignatureExpired, BadSignature, json.JSONDecodeError):
        return None

    username = session_data.get("username") if isinstance(session_data, dict) else None
    if not isinstance(username, str) or not username:
        return None
    return username


async def get_session_user(websocket) -> Optional[str]:
    """Verify the session cookie on an incoming WebSocket."""
    cookie = websocket.cookies.get(SESSION_COOKIE)
    # Move CPU-bound crypto to a thread to avoid blocking event loop
    return await asyncio.to_thread(read_session, cookie)
