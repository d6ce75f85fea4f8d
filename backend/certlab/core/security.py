from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from certlab.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: str | Any, expires_delta: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject)}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a bearer token issued by the auth service."""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
