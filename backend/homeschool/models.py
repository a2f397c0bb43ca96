"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table; content trees (exam -> questions, module ->
lessons -> steps) use relationships, everything else is joined by id in
the repositories.
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship

from .utils.dates import utcnow


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    PARENT = "PARENT"
    STUDENT = "STUDENT"


class ExamStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"
    SHORT_ANSWER = "SHORT_ANSWER"
    LONG_ANSWER = "LONG_ANSWER"
    FILL_BLANKS = "FILL_BLANKS"
    MATH_PROBLEM = "MATH_PROBLEM"


class GradeStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class StepType(str, enum.Enum):
    THEORY = "THEORY"
    PRACTICE_EASY = "PRACTICE_EASY"
    PRACTICE_MEDIUM = "PRACTICE_MEDIUM"
    PRACTICE_HARD = "PRACTICE_HARD"
    REVIEW = "REVIEW"


class ModuleProgressStatus(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class BillingInterval(str, enum.Enum):
    MONTH = "MONTH"
    YEAR = "YEAR"
    CUSTOM_DAYS = "CUSTOM_DAYS"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class User(SQLModel, table=True):
    """A registered account.

    Fields:
    - `email`: unique login identifier
    - `username`: optional alternative login name (students often use one)
    - `password_hash`: hashed password string (never store plaintext)
    - `parent_id`: for students, the parent account that owns them
    - `created_by_id`: the teacher/parent/admin who created the account
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    username: Optional[str] = Field(default=None, index=True, unique=True)
    name: str
    password_hash: str
    role: Role = Field(default=Role.PARENT, index=True)
    parent_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    created_by_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Classroom(SQLModel, table=True):
    """A class owned by a teacher (or parent) with a student roster."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    grade_level: Optional[int] = None
    subject: Optional[str] = None
    teacher_id: int = Field(foreign_key="user.id", index=True)
    created_by_id: int = Field(foreign_key="user.id")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class ClassStudent(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("class_id", "student_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    class_id: int = Field(foreign_key="classroom.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    joined_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Exam(SQLModel, table=True):
    """Exam metadata. Questions are kept ordered by `Question.order`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    subject: str = Field(index=True)
    grade_level: int = 1
    duration: int = 60
    total_marks: float = 100
    passing_marks: float = 50
    status: ExamStatus = Field(default=ExamStatus.DRAFT, index=True)
    ai_generated: bool = False
    ai_config: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    creator_id: int = Field(foreign_key="user.id", index=True)
    scheduled_for: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    questions: List["Question"] = Relationship(
        back_populates="exam",
        sa_relationship_kwargs={"order_by": "Question.order", "cascade": "all, delete-orphan"},
    )


class Question(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    question_text: str
    options: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    correct_answer: Optional[str] = None
    marks: float = 5
    difficulty: Optional[str] = None
    topic: Optional[str] = None
    ai_generated: bool = False
    grading_rubric: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    sample_answer: Optional[str] = None
    order: int = 0
    exam: Optional[Exam] = Relationship(back_populates="questions")


class ExamAssignment(SQLModel, table=True):
    """Grants a student, or every student of a class, access to an exam.

    Class assignments produce one row carrying `class_id` only, plus one
    row per rostered student carrying both ids.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    student_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    class_id: Optional[int] = Field(default=None, foreign_key="classroom.id", index=True)
    assigned_by: int = Field(foreign_key="user.id")
    start_date: Optional[datetime] = Field(default=None, sa_type=DateTime)
    due_date: Optional[datetime] = Field(default=None, sa_type=DateTime)
    allow_late_submission: bool = False
    max_attempts: int = 1
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class ExamAttempt(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    submitted_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    is_completed: bool = False
    time_spent: Optional[int] = None


class AttemptAnswer(SQLModel, table=True):
    """A student's answer to one question inside an attempt."""
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="examattempt.id", index=True)
    question_id: int = Field(foreign_key="question.id")
    answer: str = ""
    ai_score: Optional[float] = None
    ai_feedback: Optional[str] = None
    manual_score: Optional[float] = None
    manual_feedback: Optional[str] = None
    final_score: Optional[float] = None


class Grade(SQLModel, table=True):
    """Scored outcome of one attempt; hidden from students until published."""
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="examattempt.id", unique=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    total_score: float = 0
    percentage: float = 0
    grade: Optional[str] = None
    status: GradeStatus = GradeStatus.PENDING
    overall_feedback: Optional[str] = None
    ai_analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    is_published: bool = False
    published_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    published_by: Optional[int] = Field(default=None, foreign_key="user.id")
    graded_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class StudyModule(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    topic: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[int] = None
    ai_generated: bool = False
    total_lessons: int = 0
    passing_score: int = 95
    lives_enabled: bool = True
    max_lives: int = 3
    xp_reward: int = 0
    created_by: int = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    lessons: List["StudyLesson"] = Relationship(
        back_populates="module",
        sa_relationship_kwargs={"order_by": "StudyLesson.order", "cascade": "all, delete-orphan"},
    )


class StudyLesson(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    module_id: int = Field(foreign_key="studymodule.id", index=True)
    lesson_number: int
    title: str
    content: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    min_score: int = 80
    max_attempts: int = 3
    xp_reward: int = 50
    order: int = 0
    module: Optional[StudyModule] = Relationship(back_populates="lessons")
    steps: List["LessonStep"] = Relationship(
        back_populates="lesson",
        sa_relationship_kwargs={"order_by": "LessonStep.order", "cascade": "all, delete-orphan"},
    )


class LessonStep(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    lesson_id: int = Field(foreign_key="studylesson.id", index=True)
    step_number: int
    type: StepType = StepType.THEORY
    title: str
    content: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    passing_score: int = 70
    order: int = 0
    lesson: Optional[StudyLesson] = Relationship(back_populates="steps")


class StudyModuleAssignment(SQLModel, table=True):
    """Per-student progress cursor over a study module.

    `current_lesson` and `current_step` are 1-based.
    """
    __table_args__ = (UniqueConstraint("module_id", "student_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    module_id: int = Field(foreign_key="studymodule.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    assigned_by: int = Field(foreign_key="user.id")
    due_date: Optional[datetime] = Field(default=None, sa_type=DateTime)
    instructions: Optional[str] = None
    current_lesson: int = 1
    current_step: int = 1
    overall_progress: int = 0
    total_xp: int = 0
    lives: int = 3
    streak: int = 0
    status: ModuleProgressStatus = ModuleProgressStatus.NOT_STARTED
    last_active_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class SubscriptionTier(SQLModel, table=True):
    """A plan and its quotas. A limit of 0 means unlimited."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    description: Optional[str] = None
    price_cents: int = 0
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTH
    billing_days: int = 30
    exam_limit_per_period: int = 0
    study_module_limit_per_period: int = 0
    max_attempts_per_exam: int = 0
    creator_exam_create_limit_per_period: int = 0
    creator_module_create_limit_per_period: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Subscription(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    tier_id: int = Field(foreign_key="subscriptiontier.id")
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)
    auto_renew: bool = False
    last_reset_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class SubscriptionModuleAccess(SQLModel, table=True):
    """A study module opened under a subscription in the current period."""
    __table_args__ = (UniqueConstraint("subscription_id", "module_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    subscription_id: int = Field(foreign_key="subscription.id", index=True)
    module_id: int = Field(foreign_key="studymodule.id")
    accessed_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Payment(SQLModel, table=True):
    """Gateway transaction record keyed by our own `tx_ref`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    amount_cents: int
    currency: str = "USD"
    tx_ref: str = Field(unique=True, index=True)
    flw_ref: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    meta: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    raw: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
