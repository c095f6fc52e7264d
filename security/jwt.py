from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from core.config import settings


def create_access_token(sub: str, extra: Dict[str, Any] | None = None, minutes: int | None = None) -> str:
    """Issue an access token; used by tests and tooling, production tokens come from the auth provider."""
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"sub": sub, "type": "access", "iat": int(now.timestamp()), "exp": int(exp.timestamp())}
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
