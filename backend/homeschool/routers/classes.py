"""Class CRUD and roster management."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session
from ..schemas import ClassIn, ClassStudentsIn, ClassUpdateIn

router = APIRouter(prefix="/api/classes", tags=["classes"])


@router.get("")
def list_classes(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    svc = services.ClassService(session)
    return {"classes": [serializers.class_out(c, svc.roster(c)) for c in svc.list_for(user)]}


@router.post("", status_code=201)
def create_class(payload: ClassIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    classroom = services.ClassService(session).create(user, payload.model_dump())
    return {"class": serializers.class_out(classroom, [])}


@router.get("/{class_id}")
def get_class(class_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    svc = services.ClassService(session)
    classroom = svc.get_owned(user, class_id)
    return {"class": serializers.class_out(classroom, svc.roster(classroom))}


@router.put("/{class_id}")
def update_class(class_id: int, payload: ClassUpdateIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    svc = services.ClassService(session)
    classroom = svc.update(user, class_id, payload.model_dump(exclude_unset=True))
    return {"class": serializers.class_out(classroom, svc.roster(classroom))}


@router.delete("/{class_id}")
def delete_class(class_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    services.ClassService(session).delete(user, class_id)
    return {"ok": True}


@router.post("/{class_id}/students")
def add_students(class_id: int, payload: ClassStudentsIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return services.ClassService(session).add_students(user, class_id, payload.student_ids)


@router.delete("/{class_id}/students/{student_id}")
def remove_student(class_id: int, student_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    services.ClassService(session).remove_student(user, class_id, student_id)
    return {"ok": True}
