"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for the
routers; a failed validation is reported as HTTP 400 by `main.py`.
Responses are plain dicts built in `serializers.py`.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import BillingInterval, ExamStatus, GradeStatus, QuestionType, Role, StepType


def _normalize_email(value: str) -> str:
    value = value.strip().lower()
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError("invalid email address")
    return value


def _reject_nulls(model: BaseModel, fields: tuple) -> None:
    """Partial updates may omit a required column but never send it as null."""
    nulls = [f for f in fields if f in model.model_fields_set and getattr(model, f) is None]
    if nulls:
        raise ValueError(f"{', '.join(nulls)} cannot be null")


class RegisterIn(BaseModel):
    """Payload for self registration. ADMIN accounts cannot be created here."""
    email: str
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    role: Role = Role.PARENT
    username: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        return _normalize_email(v)


class LoginIn(BaseModel):
    """`email` also accepts a username."""
    email: str
    password: str


class StudentCreateIn(BaseModel):
    name: str = Field(min_length=1)
    email: str
    password: str = Field(min_length=6)
    username: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        return _normalize_email(v)


class AdminUserUpdateIn(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class ClassIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    grade_level: Optional[int] = Field(default=None, ge=1, le=12)
    subject: Optional[str] = None
    teacher_id: Optional[int] = None


class ClassUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    grade_level: Optional[int] = Field(default=None, ge=1, le=12)
    subject: Optional[str] = None

    @model_validator(mode="after")
    def _required(self):
        _reject_nulls(self, ("name",))
        return self


class ClassStudentsIn(BaseModel):
    student_ids: List[int] = Field(min_length=1)


class QuestionIn(BaseModel):
    """One exam question as sent by the authoring UI."""
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    question_text: str = Field(min_length=1)
    options: Optional[List[str]] = None
    correct_answer: Optional[str] = None
    marks: float = Field(default=5, gt=0)
    difficulty: Optional[str] = None
    topic: Optional[str] = None
    grading_rubric: Optional[Dict[str, Any]] = None
    sample_answer: Optional[str] = None


class ExamCreateIn(BaseModel):
    title: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    description: Optional[str] = None
    grade_level: int = Field(default=1, ge=1, le=12)
    duration: int = Field(default=60, gt=0)
    total_marks: Optional[float] = Field(default=None, gt=0)
    passing_marks: float = Field(default=50, ge=0)
    questions: List[QuestionIn] = []


class ExamUpdateIn(BaseModel):
    """Partial update; `questions`, when present, replaces the whole list."""
    title: Optional[str] = Field(default=None, min_length=1)
    subject: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    grade_level: Optional[int] = Field(default=None, ge=1, le=12)
    duration: Optional[int] = Field(default=None, gt=0)
    total_marks: Optional[float] = Field(default=None, gt=0)
    passing_marks: Optional[float] = Field(default=None, ge=0)
    questions: Optional[List[QuestionIn]] = None

    @model_validator(mode="after")
    def _required(self):
        _reject_nulls(self, ("title", "subject", "grade_level", "duration", "total_marks", "passing_marks"))
        return self


class ExamStatusIn(BaseModel):
    status: ExamStatus


class AssignmentItemIn(BaseModel):
    student_id: Optional[int] = None
    class_id: Optional[int] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    allow_late_submission: bool = False
    max_attempts: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _one_target(self):
        if (self.student_id is None) == (self.class_id is None):
            raise ValueError("exactly one of student_id or class_id is required")
        if self.start_date and self.due_date and self.due_date < self.start_date:
            raise ValueError("due_date must be after start_date")
        return self


class AssignIn(BaseModel):
    assignments: List[AssignmentItemIn]


class ExamGenerateIn(BaseModel):
    """Parameters for AI exam generation.

    `question_types` maps a question type to how many questions of that
    type to generate; the total must be between 1 and 100.
    """
    title: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    grade_level: int = Field(ge=1, le=12)
    topics: List[str] = Field(min_length=1)
    duration: int = Field(default=60, ge=10, le=180)
    difficulty: str = "medium"
    question_types: Dict[QuestionType, int] = {QuestionType.MULTIPLE_CHOICE: 10}
    instructions: Optional[str] = None

    @field_validator("difficulty")
    @classmethod
    def _difficulty(cls, v: str) -> str:
        v = v.lower()
        if v not in ("easy", "medium", "hard", "mixed"):
            raise ValueError("difficulty must be easy, medium, hard or mixed")
        return v

    @field_validator("question_types")
    @classmethod
    def _counts(cls, v: Dict[QuestionType, int]) -> Dict[QuestionType, int]:
        if any(n < 0 for n in v.values()):
            raise ValueError("question counts cannot be negative")
        total = sum(v.values())
        if total < 1 or total > 100:
            raise ValueError("total number of questions must be between 1 and 100")
        return {k: n for k, n in v.items() if n > 0}


class AdaptiveExamIn(BaseModel):
    """AI exam tuned to one student's recent results in a subject."""
    title: str = Field(min_length=3)
    subject: str = Field(min_length=1)
    grade_level: int = Field(ge=1, le=12)
    student_id: int
    number_of_questions: int = Field(default=20, ge=5, le=50)
    target_difficulty: str = "auto"
    focus_areas: Optional[List[str]] = None
    duration: int = Field(default=60, ge=10, le=120)

    @field_validator("target_difficulty")
    @classmethod
    def _difficulty(cls, v: str) -> str:
        v = v.lower()
        if v not in ("auto", "easy", "medium", "hard"):
            raise ValueError("target_difficulty must be auto, easy, medium or hard")
        return v


class AnswerIn(BaseModel):
    question_id: int
    answer: Optional[str] = None


class SubmitIn(BaseModel):
    attempt_id: Optional[int] = None
    answers: List[AnswerIn] = []
    time_spent: Optional[int] = Field(default=None, ge=0)


class ManualScoreIn(BaseModel):
    question_id: int
    score: float = Field(ge=0)
    feedback: Optional[str] = None


class ManualGradeIn(BaseModel):
    scores: List[ManualScoreIn] = []
    total_score: Optional[float] = Field(default=None, ge=0)
    status: Optional[GradeStatus] = None
    feedback: Optional[str] = None
    publish: bool = True


class StudyStepIn(BaseModel):
    type: StepType = StepType.THEORY
    title: str = Field(min_length=1)
    content: Dict[str, Any] = {}
    passing_score: Optional[int] = Field(default=None, ge=0, le=100)


class StudyLessonIn(BaseModel):
    title: str = Field(min_length=1)
    content: Dict[str, Any] = {}
    min_score: int = Field(default=80, ge=0, le=100)
    max_attempts: int = Field(default=3, ge=1)
    xp_reward: int = Field(default=50, ge=0)
    steps: List[StudyStepIn] = Field(min_length=1)


class StudyModuleCreateIn(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    topic: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[int] = Field(default=None, ge=1, le=12)
    passing_score: int = Field(default=95, ge=0, le=100)
    lives_enabled: bool = True
    max_lives: int = Field(default=3, ge=1)
    lessons: List[StudyLessonIn] = Field(min_length=1)


class StudyAssignIn(BaseModel):
    student_ids: List[int] = Field(min_length=1)
    due_date: Optional[datetime] = None
    instructions: Optional[str] = None


class ProgressIn(BaseModel):
    """Progress cursor update; lesson and step indexes are 0-based."""
    current_lesson: int = Field(ge=0)
    current_step: int = Field(default=0, ge=0)
    total_xp: Optional[int] = None
    lives: Optional[int] = None
    streak: Optional[int] = None
    completed: bool = False


class StudyGenerateIn(BaseModel):
    topic: str
    title: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[int] = Field(default=None, ge=1, le=12)
    notes: Optional[str] = None
    number_of_lessons: int = Field(default=10, ge=1, le=25)
    country: str = "US"

    @field_validator("topic")
    @classmethod
    def _topic(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("topic must be at least 2 characters")
        return v


class TierIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price_cents: int = Field(default=0, ge=0)
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTH
    billing_days: int = Field(default=30, ge=1)
    exam_limit_per_period: int = Field(default=0, ge=0)
    study_module_limit_per_period: int = Field(default=0, ge=0)
    max_attempts_per_exam: int = Field(default=0, ge=0)
    creator_exam_create_limit_per_period: int = Field(default=0, ge=0)
    creator_module_create_limit_per_period: int = Field(default=0, ge=0)
    is_active: bool = True


class TierUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None
    interval: Optional[BillingInterval] = None
    billing_days: Optional[int] = Field(default=None, ge=1)
    exam_limit_per_period: Optional[int] = Field(default=None, ge=0)
    study_module_limit_per_period: Optional[int] = Field(default=None, ge=0)
    max_attempts_per_exam: Optional[int] = Field(default=None, ge=0)
    creator_exam_create_limit_per_period: Optional[int] = Field(default=None, ge=0)
    creator_module_create_limit_per_period: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def _required(self):
        _reject_nulls(self, tuple(f for f in type(self).model_fields if f != "description"))
        return self


class SubscriptionAssignIn(BaseModel):
    tier_id: int
    user_id: Optional[int] = None
    email: Optional[str] = None
    months: int = Field(default=1, ge=1, le=36)

    @model_validator(mode="after")
    def _target(self):
        if self.user_id is None and not self.email:
            raise ValueError("user_id or email is required")
        return self


class PaymentInitiateIn(BaseModel):
    tier_id: int


class LessonPlanIn(BaseModel):
    subject: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    grade_level: int = Field(ge=1, le=12)
    duration: int = Field(default=45, ge=10, le=240)
    objectives: List[str] = []
    notes: Optional[str] = None
