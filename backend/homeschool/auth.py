"""Authentication helpers and FastAPI security dependencies.

Tokens are HS256 JWTs carrying the user id and role. They are accepted
either as an `Authorization: Bearer` header or from the HTTP-only
session cookie set at login. `get_current_user` always re-reads the user
from the database so deactivated accounts lose access immediately.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return PWD_CTX.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return PWD_CTX.verify(password, password_hash)
    except ValueError:
        # malformed hash stored for this account
        return False


def create_token(user: models.User) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
    payload = {"user_id": user.id, "role": user.role.value, "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="invalid token")


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    session: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated, active user."""
    token = _extract_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="not authenticated")
    payload = decode_token(token)
    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="invalid token payload")
    user = repositories.UserRepository(session).get(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="user not found or inactive")
    return user


def require_roles(*roles: models.Role):
    """Build a dependency that admits only users holding one of `roles`."""
    def _dependency(user: models.User = Depends(get_current_user)) -> models.User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="forbidden")
        return user
    return _dependency


CREATOR_ROLES = (models.Role.TEACHER, models.Role.PARENT, models.Role.ADMIN)
require_creator = require_roles(*CREATOR_ROLES)
require_admin = require_roles(models.Role.ADMIN)
require_student = require_roles(models.Role.STUDENT)
