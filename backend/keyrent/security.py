from __future__ import annotations

import datetime as dt

import bcrypt
import jwt

from keyrent.config import access_token_ttl_minutes, jwt_secret
from keyrent.errors import Unauthorized


def hash_password(password: str) -> str:
    # bcrypt stores algorithm + cost + salt in the resulting hash string.
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    # Accounts without a usable hash can never log in.
    if not isinstance(password, str) or not isinstance(password_hash, str) or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except (ValueError, TypeError):
        # Invalid hash format.
        return False


def create_access_token(*, user_id: int, role: str) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(minutes=access_token_ttl_minutes())).timestamp()),
    }
    return jwt.encode(payload, jwt_secret(), algorithm="HS256")


def user_id_from_token(token: str) -> int:
    """Returns the subject of a valid token; raises `Unauthorized` otherwise."""
    try:
        payload = jwt.decode(token, jwt_secret(), algorithms=["HS256"])
        user_id = int(payload.get("sub") or 0)
    except (jwt.PyJWTError, ValueError):
        raise Unauthorized("Invalid token")
    if user_id <= 0:
        raise Unauthorized("Invalid token")
    return user_id
