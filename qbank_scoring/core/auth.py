from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from qbank_scoring.core.config import settings


class TokenData(BaseModel):
    sub: str
    roles: List[str]

    @property
    def student_id(self) -> int:
        return int(self.sub)


bearer = HTTPBearer()


def create_token(user_id: str, roles: List[str], ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes if ttl_minutes is not None else settings.ACCESS_TOKEN_TTL_MINUTES
    payload = {"sub": str(user_id), "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm="HS256")


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET.get_secret_value(), algorithms=["HS256"])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")


def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        if not set(user.roles).intersection(required):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker


def current_student_id(user: TokenData = Depends(require_roles("student", "admin"))) -> int:
    try:
        return user.student_id
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token subject is not a student id")
