from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.hash import pbkdf2_sha256

RESET_ALGORITHM = "HS256"
RESET_PURPOSE = "password-reset"


def _secret() -> str:
    return os.environ.get("SECRET_KEY", "dev-secret-change-me")


def _reset_minutes() -> int:
    try:
        return int(os.environ.get("RESET_TOKEN_MINUTES", "60"))
    except ValueError:
        return 60


def hash_password(pw: str) -> str:
    return pbkdf2_sha256.hash(pw)


def verify_password(pw: str, hashed: Optional[str]) -> bool:
    if not pw or not hashed:
        return False
    try:
        return pbkdf2_sha256.verify(pw, hashed)
    except ValueError:
        # Not a pbkdf2 hash (e.g. empty or legacy value)
        return False


def create_reset_token(email: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    claims = {
        "sub": email.lower(),
        "purpose": RESET_PURPOSE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=_reset_minutes())).timestamp()),
    }
    return jwt.encode(claims, _secret(), algorithm=RESET_ALGORITHM)


def read_reset_token(token: str) -> Optional[str]:
    """Return the e-mail a reset token was issued for, or None if invalid/expired."""
    try:
        claims = jwt.decode(token, _secret(), algorithms=[RESET_ALGORITHM])
    except JWTError:
        return None
    if claims.get("purpose") != RESET_PURPOSE:
        return None
    return claims.get("sub")
