"""Exam authoring, assignment and the student attempt workflow."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from .. import models, serializers, services
from ..ai import AIClient, get_ai_client
from ..auth import get_current_user, require_creator, require_student
from ..config import settings
from ..database import get_session
from ..schemas import AdaptiveExamIn, AssignIn, ExamCreateIn, ExamGenerateIn, ExamStatusIn, ExamUpdateIn, SubmitIn
from ..utils.rate_limit import limiter

router = APIRouter(prefix="/api", tags=["exams"])


@router.get("/exams")
def list_exams(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    exams = services.ExamService(session).list_for(user)
    return {"exams": [serializers.exam_summary(e) for e in exams]}


@router.post("/exams", status_code=201)
def create_exam(payload: ExamCreateIn, user: models.User = Depends(require_creator), session: Session = Depends(get_session)):
    exam = services.ExamService(session).create(user, payload)
    return {"exam": serializers.exam_out(exam)}


@router.post("/exams/generate", status_code=201)
def generate_exam(
    payload: ExamGenerateIn,
    request: Request,
    user: models.User = Depends(require_creator),
    session: Session = Depends(get_session),
    ai: Optional[AIClient] = Depends(get_ai_client),
):
    limiter.check(request, "ai", settings.AI_RATE_LIMIT_PER_MIN)
    exam = services.ExamService(session).generate(user, payload, ai)
    return {"exam": serializers.exam_out(exam)}


@router.post("/exams/generate-adaptive", status_code=201)
def generate_adaptive_exam(
    payload: AdaptiveExamIn,
    request: Request,
    user: models.User = Depends(require_creator),
    session: Session = Depends(get_session),
    ai: Optional[AIClient] = Depends(get_ai_client),
):
    limiter.check(request, "ai", settings.AI_RATE_LIMIT_PER_MIN)
    exam, analysis = services.ExamService(session).generate_adaptive(user, payload, ai)
    return {"exam": serializers.exam_out(exam), "analysis": analysis}


@router.get("/students/assigned-exams")
def assigned_exams(user: models.User = Depends(require_student), session: Session = Depends(get_session)):
    return {"assignments": services.ExamService(session).assigned_exams(user)}


@router.get("/exams/{exam_id}")
def get_exam(exam_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    exam, include_answers = services.ExamService(session).get_for_view(user, exam_id)
    return {"exam": serializers.exam_out(exam, include_answers)}


@router.put("/exams/{exam_id}")
def update_exam(exam_id: int, payload: ExamUpdateIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    exam = services.ExamService(session).update(user, exam_id, payload)
    return {"exam": serializers.exam_out(exam)}


@router.delete("/exams/{exam_id}")
def delete_exam(exam_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    services.ExamService(session).delete(user, exam_id)
    return {"ok": True}


@router.post("/exams/{exam_id}/publish")
def publish_exam(exam_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    exam = services.ExamService(session).publish(user, exam_id)
    return {"exam": serializers.exam_summary(exam)}


@router.post("/exams/{exam_id}/status")
def change_status(exam_id: int, payload: ExamStatusIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    exam = services.ExamService(session).set_status(user, exam_id, payload.status)
    return {"exam": serializers.exam_summary(exam)}


@router.post("/exams/{exam_id}/assign", status_code=201)
def assign_exam(exam_id: int, payload: AssignIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    result = services.ExamService(session).assign(user, exam_id, payload.assignments)
    result["assignments"] = [serializers.assignment_out(a) for a in result["assignments"]]
    return result


@router.get("/exams/{exam_id}/assign")
def list_assignments(exam_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    assignments = services.ExamService(session).list_assignments(user, exam_id)
    return {"assignments": [serializers.assignment_out(a) for a in assignments]}


@router.post("/exams/{exam_id}/attempt", status_code=201)
def start_attempt(exam_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    attempt, exam = services.AttemptService(session).start(user, exam_id)
    return {"attempt": serializers.attempt_out(attempt), "exam": serializers.exam_out(exam, include_answers=False)}


@router.post("/exams/{exam_id}/submit")
def submit_attempt(
    exam_id: int,
    payload: SubmitIn,
    user: models.User = Depends(get_current_user),
    session: Session = Depends(get_session),
    ai: Optional[AIClient] = Depends(get_ai_client),
):
    return services.AttemptService(session).submit(user, exam_id, payload, ai)
