from __future__ import annotations
import time
from datetime import timedelta
from typing import Any, Dict
import jwt  # PyJWT

from ..config import get_settings

S = get_settings()

ALGO = "HS256"


def _now() -> int:
    return int(time.time())


def create_jwt(payload: Dict[str, Any], expires_in: timedelta | None = None) -> str:
    iat = _now()
    ttl = expires_in or timedelta(minutes=S.JWT_EXPIRE_MINUTES)
    to_encode = {
        "iss": S.APP_NAME,
        "aud": S.APP_NAME,
        "iat": iat,
        "exp": iat + int(ttl.total_seconds()),
        **payload,
    }
    return jwt.encode(to_encode, S.JWT_SECRET, algorithm=ALGO)


def create_operator_token(user_id: str, organization_id: str | None = None) -> str:
    return create_jwt({"sub": user_id, "role": "operator", "org": organization_id})


def verify_jwt(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        S.JWT_SECRET,
        algorithms=[ALGO],
        audience=S.APP_NAME,
        issuer=S.APP_NAME,
    )
