# auth.py
import datetime
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from config import Settings
from errors import Forbidden, Unauthorized

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    user_type: str
    username: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.user_type == "admin"

    @property
    def is_passenger(self) -> bool:
        return self.user_type == "passenger"


# ---------------------------------------------------------
# PASSWORDS
# ---------------------------------------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


# ---------------------------------------------------------
# TOKENS
# ---------------------------------------------------------
def create_access_token(settings: Settings, user_id: int, user_type: str, username: str,
                        role: Optional[str] = None) -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    claims = {
        "sub": str(user_id),
        "user_type": user_type,
        "username": username,
        "iat": now,
        "exp": now + datetime.timedelta(hours=settings.jwt_expires_hours),
    }
    if role:
        claims["role"] = role
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(settings: Settings, token: str) -> CurrentUser:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

    if claims.get("user_type") not in ("passenger", "admin"):
        raise Unauthorized("Invalid token")

    return CurrentUser(
        user_id=int(claims["sub"]),
        user_type=claims["user_type"],
        username=claims.get("username", ""),
        role=claims.get("role"),
    )


# ---------------------------------------------------------
# FASTAPI DEPENDENCIES
# ---------------------------------------------------------
def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None:
        raise Unauthorized()
    return decode_access_token(request.app.state.settings, credentials.credentials)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user


def require_passenger(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_passenger:
        raise Forbidden("Passenger access required")
    return user
