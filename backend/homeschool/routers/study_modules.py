"""Study module endpoints: authoring, assignment, access and progress."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from .. import models, serializers
from ..ai import AIClient, get_ai_client
from ..auth import get_current_user, require_creator
from ..config import settings
from ..database import get_session
from ..schemas import ProgressIn, StudyAssignIn, StudyGenerateIn, StudyModuleCreateIn
from ..study import StudyModuleService
from ..utils.rate_limit import limiter

router = APIRouter(prefix="/api/study-modules", tags=["study-modules"])


@router.get("")
def list_modules(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return StudyModuleService(session).list_for(user)


@router.post("", status_code=201)
def create_module(payload: StudyModuleCreateIn, user: models.User = Depends(require_creator), session: Session = Depends(get_session)):
    module = StudyModuleService(session).create(user, payload)
    return {"module": serializers.module_out(module)}


@router.get("/progress")
def progress_overview(user: models.User = Depends(require_creator), session: Session = Depends(get_session)):
    return StudyModuleService(session).overview(user)


@router.post("/generate", status_code=201)
def generate_module(
    payload: StudyGenerateIn,
    request: Request,
    user: models.User = Depends(require_creator),
    session: Session = Depends(get_session),
    ai: Optional[AIClient] = Depends(get_ai_client),
):
    limiter.check(request, "ai", settings.AI_RATE_LIMIT_PER_MIN)
    return StudyModuleService(session).generate(user, payload, ai)


@router.get("/{module_id}")
def get_module(module_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return {"module": StudyModuleService(session).get_for_view(user, module_id)}


@router.delete("/{module_id}")
def delete_module(module_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    StudyModuleService(session).delete(user, module_id)
    return {"ok": True}


@router.post("/{module_id}/assign")
def assign_module(module_id: int, payload: StudyAssignIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    result = StudyModuleService(session).assign(user, module_id, payload.student_ids, payload.due_date, payload.instructions)
    result["assignments"] = [serializers.study_assignment_out(a) for a in result["assignments"]]
    return result


@router.get("/{module_id}/assignments")
def module_assignments(module_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    assignments = StudyModuleService(session).list_assignments(user, module_id)
    return {"assignments": [serializers.study_assignment_out(a) for a in assignments]}


@router.get("/{module_id}/progress")
def get_progress(module_id: int, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return {"progress": StudyModuleService(session).get_progress(user, module_id)}


@router.post("/{module_id}/progress")
def update_progress(module_id: int, payload: ProgressIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    assignment = StudyModuleService(session).update_progress(user, module_id, payload)
    return {"progress": serializers.study_assignment_out(assignment)}
