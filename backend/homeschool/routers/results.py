"""Results listing, detail, manual grading and publishing."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models, serializers, services
from ..auth import get_current_user
from ..database import get_session
from ..schemas import ManualGradeIn

router = APIRouter(prefix="/api/results", tags=["results"])


@router.get("")
def list_results(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return services.ResultService(session).list_results(user)


@router.get("/{attempt_id}")
def result_detail(attempt_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return services.ResultService(session).detail(user, attempt_id)


@router.get("/{attempt_id}/grade")
def grading_view(attempt_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return services.ResultService(session).grading_view(user, attempt_id)


@router.post("/{attempt_id}/grade")
def grade_attempt(attempt_id: int, payload: ManualGradeIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    grade = services.ResultService(session).manual_grade(user, attempt_id, payload)
    return {"grade": serializers.grade_out(grade)}


@router.post("/{attempt_id}/publish")
def publish_result(attempt_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    grade = services.ResultService(session).set_published(user, attempt_id, True)
    return {"grade": serializers.grade_out(grade)}


@router.delete("/{attempt_id}/publish")
def unpublish_result(attempt_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    grade = services.ResultService(session).set_published(user, attempt_id, False)
    return {"grade": serializers.grade_out(grade)}
