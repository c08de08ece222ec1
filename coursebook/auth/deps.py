from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from .jwt import verify_jwt


@dataclass(frozen=True)
class Caller:
    user_id: Optional[uuid.UUID]
    role: str


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def _caller_from_token(token: str) -> Caller:
    try:
        claims = verify_jwt(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    sub = claims.get("sub")
    try:
        user_id = uuid.UUID(sub) if sub else None
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Caller(user_id=user_id, role=claims.get("role", "participant"))


async def get_optional_caller(authorization: Optional[str] = Header(default=None)) -> Optional[Caller]:
    token = _bearer(authorization)
    return _caller_from_token(token) if token else None


async def require_operator(authorization: Optional[str] = Header(default=None)) -> Caller:
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    caller = _caller_from_token(token)
    if caller.role != "operator":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator only")
    return caller
