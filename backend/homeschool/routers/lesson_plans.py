"""AI lesson plan generation."""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from .. import models
from ..ai import AIClient, AIError, get_ai_client
from ..auth import require_creator
from ..config import settings
from ..errors import ServiceUnavailableError
from ..schemas import LessonPlanIn
from ..utils.rate_limit import limiter

router = APIRouter(prefix="/api/lesson-plans", tags=["lesson-plans"])


@router.post("/generate")
def generate_lesson_plan(
    payload: LessonPlanIn,
    request: Request,
    user: models.User = Depends(require_creator),
    ai: Optional[AIClient] = Depends(get_ai_client),
):
    if ai is None:
        raise ServiceUnavailableError("AI generation is not configured")
    limiter.check(request, "ai", settings.AI_RATE_LIMIT_PER_MIN)
    try:
        plan = ai.generate_lesson_plan(
            payload.subject, payload.topic, payload.grade_level, payload.duration, payload.objectives, payload.notes
        )
    except AIError as exc:
        raise ServiceUnavailableError("AI generation failed, please try again") from exc
    return {"lesson_plan": plan}
