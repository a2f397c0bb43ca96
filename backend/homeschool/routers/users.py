"""Student accounts, parent children and admin user management."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user, require_admin, require_creator
from ..database import get_session
from ..schemas import AdminUserUpdateIn, StudentCreateIn

router = APIRouter(prefix="/api", tags=["users"])


@router.get("/students")
def list_students(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    students = services.UserService(session).list_students(user)
    return {"students": [serializers.user_out(s) for s in students]}


@router.post("/students", status_code=201)
def create_student(payload: StudentCreateIn, user: models.User = Depends(require_creator), session: Session = Depends(get_session)):
    student = services.UserService(session).create_student(user, payload.name, payload.email, payload.password, payload.username)
    return {"student": serializers.user_out(student)}


@router.get("/users/children")
def list_children(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    children = services.UserService(session).list_children(user)
    return {"children": [serializers.user_out(c) for c in children]}


@router.get("/admin/users")
def admin_list_users(role: Optional[models.Role] = None, admin: models.User = Depends(require_admin), session: Session = Depends(get_session)):
    users = services.UserService(session).admin_list(role)
    return {"users": [serializers.user_out(u) for u in users]}


@router.patch("/admin/users/{user_id}")
def admin_update_user(user_id: int, payload: AdminUserUpdateIn, admin: models.User = Depends(require_admin), session: Session = Depends(get_session)):
    target = services.UserService(session).admin_update(admin, user_id, payload.role, payload.is_active)
    return {"user": serializers.user_out(target)}
