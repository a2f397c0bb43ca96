"""Account registration, login/logout and the current user profile."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..config import settings
from ..database import get_session
from ..schemas import LoginIn, RegisterIn
from ..utils.rate_limit import limiter

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger("homeschool.api")


@router.post("/register", status_code=201)
def register(payload: RegisterIn, session: Session = Depends(get_session)):
    user = services.AuthService(session).register(
        payload.email, payload.password, payload.name, payload.role, payload.username
    )
    return {"user": serializers.user_out(user)}


@router.post("/login")
def login(payload: LoginIn, request: Request, response: Response, session: Session = Depends(get_session)):
    limiter.check(request, "login", settings.LOGIN_RATE_LIMIT_PER_MIN)
    result = services.AuthService(session).authenticate(payload.email, payload.password)
    if not result:
        logger.info("login_failed login=%s", payload.email)
        raise HTTPException(status_code=401, detail="invalid credentials")
    user, token = result
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        token,
        max_age=settings.JWT_EXPIRE_HOURS * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.ENV != "dev",
    )
    return {"access_token": token, "token_type": "bearer", "user": serializers.user_out(user)}


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return {"ok": True}


@router.get("/me")
def me(user: models.User = Depends(get_current_user)):
    return {"user": serializers.user_out(user)}
