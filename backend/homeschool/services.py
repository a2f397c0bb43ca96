"""Business logic services used by HTTP routers.

This module holds small service classes that coordinate repositories
and auxiliary logic. Services perform validation, authorization by
role/ownership and domain logic, then persist aggregates via
repositories. They raise `errors.ServiceError` subclasses; the API layer
turns those into HTTP responses.
"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from . import models, repositories, serializers
from .ai import AIClient, AIError
from .auth import create_token, hash_password, verify_password
from .billing import SubscriptionService
from .errors import ForbiddenError, NotFoundError, PaymentRequiredError, ServiceUnavailableError, ValidationError
from .schemas import AdaptiveExamIn, AssignmentItemIn, ExamCreateIn, ExamGenerateIn, ExamUpdateIn, ManualGradeIn, QuestionIn, SubmitIn
from .utils.dates import minutes_between, to_naive_utc, utcnow

logger = logging.getLogger("homeschool.services")

Role = models.Role
OBJECTIVE_TYPES = (models.QuestionType.MULTIPLE_CHOICE, models.QuestionType.TRUE_FALSE)

# Allowed explicit exam status moves; publishing uses DRAFT -> ACTIVE.
EXAM_TRANSITIONS = {
    models.ExamStatus.DRAFT: {models.ExamStatus.ACTIVE, models.ExamStatus.ARCHIVED},
    models.ExamStatus.ACTIVE: {models.ExamStatus.COMPLETED, models.ExamStatus.ARCHIVED},
    models.ExamStatus.COMPLETED: {models.ExamStatus.ARCHIVED},
    models.ExamStatus.ARCHIVED: set(),
}


def letter_grade(percentage: float) -> str:
    if percentage >= 90:
        return "A"
    if percentage >= 80:
        return "B"
    if percentage >= 70:
        return "C"
    if percentage >= 60:
        return "D"
    return "F"


def normalize_answer(value: Optional[str]) -> str:
    """Lower-case and collapse whitespace for objective answer comparison."""
    return " ".join(str(value or "").split()).lower()


def score_trend(percentages: List[float]) -> str:
    """Compare the latest five results against the five before them.

    `percentages` must be ordered newest first.
    """
    latest, previous = percentages[:5], percentages[5:10]
    if not latest or not previous:
        return "stable"
    diff = sum(latest) / len(latest) - sum(previous) / len(previous)
    if diff > 5:
        return "up"
    if diff < -5:
        return "down"
    return "stable"


def performance_profile(
    percentages: List[float],
    answers: List[Tuple[models.AttemptAnswer, models.Question]],
) -> Dict[str, Any]:
    """Estimate a student's level from recent results, newest first.

    An answer counts as correct when it earned at least 70% of the
    question's marks. Topics need two answers and question types three
    before they are called a strength, weakness or preference.
    """
    profile: Dict[str, Any] = {
        "attempts_analyzed": len(percentages),
        "average_score": 0.0,
        "skill_level": 5,
        "recommended_difficulty": "medium",
        "strengths": [],
        "weaknesses": [],
        "recommended_topics": [],
        "preferred_question_types": [],
        "trend": "STABLE",
    }
    if not percentages:
        return profile
    average = sum(percentages) / len(percentages)
    profile["average_score"] = round(average, 2)
    for floor, level in ((90, 7), (80, 6), (70, 5), (60, 4)):
        if average >= floor:
            profile["skill_level"] = level
            break
    else:
        profile["skill_level"] = 3

    by_type: Dict[str, List[int]] = {}
    by_topic: Dict[str, List[int]] = {}
    for answer, question in answers:
        correct = int((answer.final_score or 0) >= question.marks * 0.7)
        for bucket, key in ((by_type, question.type.value), (by_topic, question.topic or "general")):
            hits = bucket.setdefault(key, [0, 0])
            hits[0] += correct
            hits[1] += 1
    profile["preferred_question_types"] = sorted(t for t, (ok, n) in by_type.items() if n >= 3 and ok / n >= 0.8)
    for topic, (ok, n) in sorted(by_topic.items()):
        if n < 2:
            continue
        if ok / n >= 0.8:
            profile["strengths"].append(topic)
        elif ok / n < 0.6:
            profile["weaknesses"].append(topic)
    profile["recommended_topics"] = list(profile["weaknesses"])

    if average >= 85:
        profile["recommended_difficulty"] = "hard"
    elif average < 70:
        profile["recommended_difficulty"] = "easy"
    if len(percentages) >= 3:
        recent = sum(percentages[:2]) / 2
        older = sum(percentages[-2:]) / 2
        if recent > older + 10:
            profile["trend"] = "IMPROVING"
        elif recent < older - 10:
            profile["trend"] = "DECLINING"
    return profile


def is_creator(user: models.User) -> bool:
    return user.role in (Role.TEACHER, Role.PARENT, Role.ADMIN)


class AuthService:
    """Registration and credential checks."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, email: str, password: str, name: str, role: Role = Role.PARENT, username: Optional[str] = None) -> models.User:
        """Create a new account with a hashed password."""
        if role == Role.ADMIN:
            raise ForbiddenError("admin accounts cannot be self-registered")
        self._ensure_unique(email, username)
        user = models.User(email=email, username=username or None, name=name.strip(), role=role, password_hash=hash_password(password))
        user = self.user_repo.create(user)
        logger.info("user_registered user_id=%s role=%s", user.id, user.role.value)
        return user

    def _ensure_unique(self, email: str, username: Optional[str]) -> None:
        if self.user_repo.get_by_email(email):
            raise ValidationError("a user with this email already exists")
        if username and self.user_repo.get_by_username(username):
            raise ValidationError("this username is taken")

    def authenticate(self, login: str, password: str) -> Optional[Tuple[models.User, str]]:
        """Verify credentials and return `(user, token)`, or `None` on failure.

        Inactive accounts fail the same way as a wrong password.
        """
        user = self.user_repo.get_by_login(login.strip())
        if not user or not user.is_active:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user, create_token(user)


class UserService:
    """Student accounts, parent/child links and admin user management."""
    def __init__(self, session: Session):
        self.session = session
        self.users = repositories.UserRepository(session)
        self.classes = repositories.ClassRepository(session)

    def list_students(self, user: models.User) -> List[models.User]:
        if user.role in (Role.TEACHER, Role.ADMIN):
            return self.users.list_students()
        if user.role == Role.PARENT:
            return self.users.list_children(user.id)
        raise ForbiddenError("students cannot list students")

    def create_student(self, creator: models.User, name: str, email: str, password: str, username: Optional[str] = None) -> models.User:
        if not is_creator(creator):
            raise ForbiddenError("only teachers, parents and admins can create students")
        AuthService(self.session)._ensure_unique(email, username)
        student = models.User(
            email=email,
            username=username or None,
            name=name.strip(),
            role=Role.STUDENT,
            password_hash=hash_password(password),
            created_by_id=creator.id,
            parent_id=creator.id if creator.role == Role.PARENT else None,
        )
        student = self.users.create(student)
        logger.info("student_created student_id=%s creator_id=%s", student.id, creator.id)
        return student

    def list_children(self, parent: models.User) -> List[models.User]:
        if parent.role != Role.PARENT:
            raise ForbiddenError("only parents have children accounts")
        return self.users.list_children(parent.id)

    def admin_list(self, role: Optional[Role] = None) -> List[models.User]:
        return self.users.list_all(role)

    def admin_update(self, admin: models.User, user_id: int, role: Optional[Role] = None, is_active: Optional[bool] = None) -> models.User:
        target = self.users.get(user_id)
        if not target:
            raise NotFoundError("user not found")
        if target.id == admin.id and (is_active is False or (role is not None and role != Role.ADMIN)):
            raise ValidationError("admins cannot demote or deactivate themselves")
        if role is not None:
            target.role = role
        if is_active is not None:
            target.is_active = is_active
        logger.info("user_updated user_id=%s by=%s role=%s active=%s", target.id, admin.id, target.role.value, target.is_active)
        return self.users.save(target)

    def student_ids_for(self, user: models.User) -> List[int]:
        """Students a teacher created or teaches; a parent's children."""
        if user.role == Role.PARENT:
            return [c.id for c in self.users.list_children(user.id)]
        created = [s.id for s in self.users.list_created_students(user.id, active_only=False)]
        return sorted(set(created) | set(self.classes.student_ids_for_teacher(user.id)))


class ClassService:
    def __init__(self, session: Session):
        self.session = session
        self.classes = repositories.ClassRepository(session)
        self.users = repositories.UserRepository(session)

    def list_for(self, user: models.User) -> List[models.Classroom]:
        if user.role == Role.ADMIN:
            return self.classes.list_active()
        if user.role in (Role.TEACHER, Role.PARENT):
            return self.classes.list_for_owner(user.id)
        raise ForbiddenError("students cannot manage classes")

    def create(self, user: models.User, data: Dict[str, Any]) -> models.Classroom:
        if not is_creator(user):
            raise ForbiddenError("only teachers, parents and admins can create classes")
        teacher_id = data.pop("teacher_id", None) if user.role == Role.ADMIN else None
        data.pop("teacher_id", None)
        if teacher_id is not None:
            teacher = self.users.get(teacher_id)
            if not teacher or not is_creator(teacher):
                raise ValidationError("teacher not found")
        classroom = models.Classroom(**data, teacher_id=teacher_id or user.id, created_by_id=user.id)
        return self.classes.create(classroom)

    def get_owned(self, user: models.User, class_id: int) -> models.Classroom:
        classroom = self.classes.get(class_id)
        if not classroom or not classroom.is_active:
            raise NotFoundError("class not found")
        if user.role != Role.ADMIN and user.id not in (classroom.teacher_id, classroom.created_by_id):
            raise ForbiddenError("you do not manage this class")
        return classroom

    def roster(self, classroom: models.Classroom) -> List[models.User]:
        return self.classes.roster(classroom.id)

    def update(self, user: models.User, class_id: int, changes: Dict[str, Any]) -> models.Classroom:
        classroom = self.get_owned(user, class_id)
        for key, value in changes.items():
            setattr(classroom, key, value)
        return self.classes.save(classroom)

    def delete(self, user: models.User, class_id: int) -> None:
        classroom = self.get_owned(user, class_id)
        classroom.is_active = False
        self.classes.save(classroom)

    def add_students(self, user: models.User, class_id: int, student_ids: List[int]) -> Dict[str, Any]:
        """Add students to a roster; duplicates and non-students are skipped."""
        classroom = self.get_owned(user, class_id)
        added = 0
        for student in self.users.get_many(set(student_ids)):
            if student.role != Role.STUDENT:
                continue
            if self.classes.add_student(classroom.id, student.id):
                added += 1
        return {"added_count": added, "skipped_count": len(student_ids) - added}

    def remove_student(self, user: models.User, class_id: int, student_id: int) -> None:
        classroom = self.get_owned(user, class_id)
        if not self.classes.remove_student(classroom.id, student_id):
            raise NotFoundError("student is not in this class")


class ExamService:
    """Exam authoring, publishing, status changes and assignment."""
    def __init__(self, session: Session):
        self.session = session
        self.exams = repositories.ExamRepository(session)
        self.assignments = repositories.AssignmentRepository(session)
        self.attempts = repositories.AttemptRepository(session)
        self.users = repositories.UserRepository(session)
        self.classes = repositories.ClassRepository(session)
        self.subscriptions = SubscriptionService(session)

    @staticmethod
    def _build_questions(items: List[QuestionIn]) -> List[models.Question]:
        return [models.Question(**q.model_dump()) for q in items]

    def list_for(self, user: models.User) -> List[models.Exam]:
        if user.role == Role.ADMIN:
            return self.exams.list_all()
        if not is_creator(user):
            raise ForbiddenError("students see exams through their assignments")
        return self.exams.list_for_creator(user.id)

    def create(
        self,
        user: models.User,
        data: ExamCreateIn,
        ai_generated: bool = False,
        ai_config: Optional[Dict[str, Any]] = None,
        questions: Optional[List[models.Question]] = None,
    ) -> models.Exam:
        """Create a DRAFT exam with its questions in one transaction."""
        if not is_creator(user):
            raise ForbiddenError("only teachers, parents and admins can create exams")
        self.subscriptions.enforce_creator_quota(user, "exam")
        if questions is None:
            questions = self._build_questions(data.questions)
        marks_sum = sum(q.marks for q in questions)
        exam = models.Exam(
            title=data.title.strip(),
            description=data.description,
            subject=data.subject.strip(),
            grade_level=data.grade_level,
            duration=data.duration,
            total_marks=data.total_marks or marks_sum or 100,
            passing_marks=data.passing_marks,
            ai_generated=ai_generated,
            ai_config=ai_config,
            creator_id=user.id,
        )
        exam = self.exams.create(exam, questions)
        logger.info("exam_created exam_id=%s creator_id=%s questions=%d", exam.id, user.id, len(questions))
        return exam

    def get_owned(self, user: models.User, exam_id: int) -> models.Exam:
        exam = self.exams.get(exam_id)
        if not exam:
            raise NotFoundError("exam not found")
        if exam.creator_id != user.id:
            raise ForbiddenError("only the exam creator can do this")
        return exam

    def get_for_view(self, user: models.User, exam_id: int) -> Tuple[models.Exam, bool]:
        """Return the exam and whether answers may be shown to `user`."""
        exam = self.exams.get(exam_id)
        if not exam:
            raise NotFoundError("exam not found")
        if user.role == Role.ADMIN or exam.creator_id == user.id:
            return exam, True
        if user.role == Role.STUDENT and self.assignments.find_for_student(exam.id, user.id):
            return exam, False
        raise ForbiddenError("you do not have access to this exam")

    def update(self, user: models.User, exam_id: int, data: ExamUpdateIn) -> models.Exam:
        exam = self.get_owned(user, exam_id)
        changes = data.model_dump(exclude_unset=True, exclude={"questions"})
        for key, value in changes.items():
            setattr(exam, key, value)
        exam.updated_at = utcnow()
        if data.questions is not None:
            return self.exams.replace_questions(exam, self._build_questions(data.questions))
        return self.exams.save(exam)

    def delete(self, user: models.User, exam_id: int) -> None:
        exam = self.get_owned(user, exam_id)
        self.exams.delete(exam)
        logger.info("exam_deleted exam_id=%s by=%s", exam_id, user.id)

    def publish(self, user: models.User, exam_id: int) -> models.Exam:
        exam = self.get_owned(user, exam_id)
        if not exam.questions:
            raise ValidationError("cannot publish an exam without questions")
        if exam.status not in (models.ExamStatus.DRAFT, models.ExamStatus.ACTIVE):
            raise ValidationError(f"cannot publish a {exam.status.value} exam")
        now = utcnow()
        exam.status = models.ExamStatus.ACTIVE
        exam.scheduled_for = now
        exam.updated_at = now
        return self.exams.save(exam)

    def set_status(self, user: models.User, exam_id: int, status: models.ExamStatus) -> models.Exam:
        exam = self.get_owned(user, exam_id)
        if status not in EXAM_TRANSITIONS[exam.status]:
            raise ValidationError(f"cannot move exam from {exam.status.value} to {status.value}")
        if status == models.ExamStatus.ACTIVE and not exam.questions:
            raise ValidationError("cannot activate an exam without questions")
        exam.status = status
        exam.updated_at = utcnow()
        if status == models.ExamStatus.ACTIVE and exam.scheduled_for is None:
            exam.scheduled_for = exam.updated_at
        return self.exams.save(exam)

    def assign(self, user: models.User, exam_id: int, items: List[AssignmentItemIn]) -> Dict[str, Any]:
        """Create assignments for students and classes.

        A class assignment adds one class row plus a row for every rostered
        student who has no active assignment to the exam yet.
        """
        exam = self.get_owned(user, exam_id)
        if not items:
            raise ValidationError("at least one assignment is required")
        created: List[models.ExamAssignment] = []
        skipped = 0
        for item in items:
            common = dict(
                exam_id=exam.id,
                assigned_by=user.id,
                start_date=to_naive_utc(item.start_date),
                due_date=to_naive_utc(item.due_date),
                allow_late_submission=item.allow_late_submission,
                max_attempts=item.max_attempts,
            )
            if item.student_id is not None:
                student = self.users.get(item.student_id)
                if not student or student.role != Role.STUDENT:
                    logger.warning("assign_skipped exam_id=%s student_id=%s reason=not_a_student", exam.id, item.student_id)
                    skipped += 1
                    continue
                if self.assignments.find_active_student_row(exam.id, student.id):
                    skipped += 1
                    continue
                created.append(self.assignments.create(models.ExamAssignment(student_id=student.id, **common)))
                continue
            classroom = self.classes.get(item.class_id)
            if not classroom or not classroom.is_active:
                logger.warning("assign_skipped exam_id=%s class_id=%s reason=class_not_found", exam.id, item.class_id)
                skipped += 1
                continue
            created.append(self.assignments.create(models.ExamAssignment(class_id=classroom.id, **common)))
            for student in self.classes.roster(classroom.id):
                if self.assignments.find_active_student_row(exam.id, student.id):
                    continue
                created.append(self.assignments.create(
                    models.ExamAssignment(class_id=classroom.id, student_id=student.id, **common)
                ))
        logger.info("exam_assigned exam_id=%s created=%d skipped=%d", exam.id, len(created), skipped)
        return {"assignments": created, "created_count": len(created), "skipped_count": skipped}

    def list_assignments(self, user: models.User, exam_id: int) -> List[models.ExamAssignment]:
        exam = self.get_owned(user, exam_id)
        return self.assignments.list_active_for_exam(exam.id)

    def generate(self, user: models.User, data: ExamGenerateIn, ai: Optional[AIClient]) -> models.Exam:
        """Create an AI-generated DRAFT exam."""
        if not is_creator(user):
            raise ForbiddenError("only teachers, parents and admins can generate exams")
        if ai is None:
            raise ServiceUnavailableError("AI generation is not configured")
        self.subscriptions.enforce_creator_quota(user, "exam")
        try:
            raw = ai.generate_exam_questions(
                data.subject,
                data.grade_level,
                data.topics,
                data.difficulty,
                {t.value: n for t, n in data.question_types.items()},
                data.instructions,
            )
        except AIError as exc:
            logger.warning("exam_generation_failed user_id=%s error=%s", user.id, exc)
            raise ServiceUnavailableError("AI generation failed, please try again") from exc
        questions = [q for q in (self._question_from_ai(item, data.difficulty) for item in raw) if q is not None]
        if not questions:
            raise ServiceUnavailableError("AI generation returned no usable questions")
        create = ExamCreateIn(
            title=data.title,
            subject=data.subject,
            description=f"AI-generated exam on {', '.join(data.topics)}",
            grade_level=data.grade_level,
            duration=data.duration,
        )
        config = data.model_dump(mode="json")
        return self.create(user, create, ai_generated=True, ai_config=config, questions=questions)

    def generate_adaptive(self, user: models.User, data: AdaptiveExamIn, ai: Optional[AIClient]) -> Tuple[models.Exam, Dict[str, Any]]:
        """Generate a DRAFT exam from one student's last five graded attempts in the subject.

        `auto` difficulty follows the recommended difficulty; focus areas
        default to the weak topics, then to the subject itself.
        """
        if not is_creator(user):
            raise ForbiddenError("only teachers, parents and admins can generate exams")
        student = self.users.get(data.student_id)
        if not student or student.role != Role.STUDENT:
            raise NotFoundError("student not found")
        if user.role != Role.ADMIN and student.id not in UserService(self.session).student_ids_for(user):
            raise ForbiddenError("you cannot generate exams for this student")
        if ai is None:
            raise ServiceUnavailableError("AI generation is not configured")
        self.subscriptions.enforce_creator_quota(user, "exam")

        recent = self.attempts.recent_graded(student.id, data.subject, data.grade_level)
        answers = self.attempts.answers_with_questions([attempt.id for attempt, _ in recent])
        profile = performance_profile([grade.percentage for _, grade in recent], answers)
        difficulty = profile["recommended_difficulty"] if data.target_difficulty == "auto" else data.target_difficulty
        focus = data.focus_areas or profile["recommended_topics"] or [data.subject]
        instructions = (
            f"Focus on weak areas: {', '.join(profile['weaknesses']) or 'balanced coverage'}. "
            f"Reinforce strengths: {', '.join(profile['strengths']) or 'general skills'}. "
            f"Target skill level {profile['skill_level']}/10."
        )
        n = data.number_of_questions
        try:
            raw = ai.generate_exam_questions(
                data.subject,
                data.grade_level,
                focus,
                difficulty,
                {models.QuestionType.MULTIPLE_CHOICE.value: n - n // 4, models.QuestionType.SHORT_ANSWER.value: n // 4},
                instructions,
            )
        except AIError as exc:
            logger.warning("adaptive_generation_failed user_id=%s student_id=%s error=%s", user.id, student.id, exc)
            raise ServiceUnavailableError("AI generation failed, please try again") from exc
        questions = [q for q in (self._question_from_ai(item, difficulty) for item in raw) if q is not None]
        if not questions:
            raise ServiceUnavailableError("AI generation returned no usable questions")
        create = ExamCreateIn(
            title=f"{data.title} (Adaptive)",
            subject=data.subject,
            description=f"Adaptive exam for {student.name} on {', '.join(focus)}",
            grade_level=data.grade_level,
            duration=data.duration,
        )
        config = {
            "adaptive": True,
            "student_id": student.id,
            "target_difficulty": difficulty,
            "focus_areas": focus,
            "based_on_performance": profile,
        }
        exam = self.create(user, create, ai_generated=True, ai_config=config, questions=questions)
        return exam, profile

    @staticmethod
    def _question_from_ai(item: Any, difficulty: str) -> Optional[models.Question]:
        if not isinstance(item, dict) or not str(item.get("question_text") or "").strip():
            return None
        try:
            qtype = models.QuestionType(str(item.get("type", "")).upper())
        except ValueError:
            qtype = models.QuestionType.MULTIPLE_CHOICE
        try:
            marks = float(item.get("marks") or 5)
        except (TypeError, ValueError):
            marks = 5.0
        options = item.get("options")
        rubric = item.get("grading_rubric")
        return models.Question(
            type=qtype,
            question_text=str(item["question_text"]).strip(),
            options=[str(o) for o in options] if isinstance(options, list) else None,
            correct_answer=str(item["correct_answer"]) if item.get("correct_answer") is not None else None,
            marks=marks if marks > 0 else 5.0,
            difficulty=item.get("difficulty") or difficulty,
            topic=item.get("topic"),
            ai_generated=True,
            grading_rubric=rubric if isinstance(rubric, dict) else None,
            sample_answer=item.get("sample_answer"),
        )

    def assigned_exams(self, student: models.User) -> List[Dict[str, Any]]:
        """A student's active assignments with attempt usage."""
        if student.role != Role.STUDENT:
            raise ForbiddenError("only students have assigned exams")
        now = utcnow()
        out = []
        for assignment in self.assignments.list_active_for_student(student.id):
            exam = self.exams.get(assignment.exam_id)
            if not exam:
                continue
            used = self.attempts.count_for(exam.id, student.id)
            summary = serializers.exam_summary(exam)
            summary.pop("ai_config", None)
            out.append({
                "assignment": serializers.assignment_out(assignment),
                "exam": summary,
                "attempts_used": used,
                "attempts_remaining": max(0, assignment.max_attempts - used),
                "is_overdue": bool(assignment.due_date and assignment.due_date < now),
            })
        return out


class AttemptService:
    """Attempt gating, submission and automatic scoring."""
    def __init__(self, session: Session):
        self.session = session
        self.exams = repositories.ExamRepository(session)
        self.assignments = repositories.AssignmentRepository(session)
        self.attempts = repositories.AttemptRepository(session)
        self.subscriptions = SubscriptionService(session)

    def check_can_attempt(self, user: models.User, exam_id: int) -> Tuple[models.Exam, models.ExamAssignment]:
        """Run every precondition for a new attempt, in a fixed order."""
        if user.role != Role.STUDENT:
            raise ForbiddenError("only students can take exams")
        exam = self.exams.get(exam_id)
        if not exam:
            raise NotFoundError("exam not found")
        if exam.status in (models.ExamStatus.COMPLETED, models.ExamStatus.ARCHIVED):
            raise ForbiddenError("this exam is no longer available")
        assignment = self.assignments.find_for_student(exam.id, user.id)
        if not assignment:
            raise ForbiddenError("you are not assigned to this exam")
        sub, tier = self.subscriptions.require_active(user.id, "an active subscription is required to take exams")

        if tier.exam_limit_per_period > 0:
            attempted = set(self.attempts.exam_ids_attempted_since(user.id, self.subscriptions.period_start(sub)))
            would_use = len(attempted) + (0 if exam.id in attempted else 1)
            if would_use > tier.exam_limit_per_period:
                raise PaymentRequiredError(
                    "exam limit reached for your plan this period",
                    {"limit": tier.exam_limit_per_period, "used": len(attempted)},
                )

        used = self.attempts.count_for(exam.id, user.id)
        if tier.max_attempts_per_exam > 0 and used >= tier.max_attempts_per_exam:
            raise ForbiddenError("your plan's attempt limit for this exam is reached")
        if used >= assignment.max_attempts:
            raise ForbiddenError("maximum attempts reached for this exam")

        now = utcnow()
        if assignment.start_date and assignment.start_date > now:
            raise ForbiddenError("this exam has not started yet")
        if assignment.due_date and assignment.due_date < now and not assignment.allow_late_submission:
            raise ForbiddenError("the due date for this exam has passed")
        return exam, assignment

    def start(self, user: models.User, exam_id: int) -> Tuple[models.ExamAttempt, models.Exam]:
        exam, _ = self.check_can_attempt(user, exam_id)
        attempt = self.attempts.create(models.ExamAttempt(exam_id=exam.id, student_id=user.id))
        logger.info("attempt_started attempt_id=%s exam_id=%s student_id=%s", attempt.id, exam.id, user.id)
        return attempt, exam

    def submit(self, user: models.User, exam_id: int, data: SubmitIn, ai: Optional[AIClient]) -> Dict[str, Any]:
        """Score and complete an attempt, creating an unpublished grade.

        Without `attempt_id` the gating of `check_can_attempt` runs and a
        new attempt is created first.
        """
        if user.role != Role.STUDENT:
            raise ForbiddenError("only students can submit exams")
        if data.attempt_id is not None:
            attempt = self.attempts.get(data.attempt_id)
            if not attempt or attempt.student_id != user.id or attempt.exam_id != exam_id:
                raise ForbiddenError("invalid attempt")
            if attempt.is_completed:
                raise ValidationError("this attempt was already submitted")
            exam = self.exams.get(exam_id)
            if not exam:
                raise NotFoundError("exam not found")
        else:
            attempt, exam = self.start(user, exam_id)

        given = {a.question_id: (a.answer or "").strip() for a in data.answers}
        records: List[models.AttemptAnswer] = []
        total = 0.0
        max_score = 0.0
        pending = 0
        for question in exam.questions:
            max_score += question.marks
            record, needs_review = self._score(question, given.get(question.id, ""), ai)
            pending += int(needs_review)
            total += record.final_score or 0
            records.append(record)

        now = utcnow()
        percentage = round(total / max_score * 100, 2) if max_score else 0.0
        attempt.submitted_at = now
        attempt.is_completed = True
        attempt.time_spent = data.time_spent if data.time_spent is not None else minutes_between(attempt.started_at, now)

        analysis = None
        if ai is not None and not pending:
            items = [
                {"question": q.question_text, "topic": q.topic, "marks": q.marks, "score": r.final_score}
                for q, r in zip(exam.questions, records)
            ]
            try:
                analysis = ai.analyze_performance(exam.title, exam.subject, items, percentage)
            except AIError as exc:
                logger.warning("analysis_failed attempt_id=%s error=%s", attempt.id, exc)

        grade = models.Grade(
            attempt_id=attempt.id,
            student_id=user.id,
            total_score=round(total, 2),
            percentage=percentage,
            grade=letter_grade(percentage),
            status=models.GradeStatus.PENDING if pending else models.GradeStatus.COMPLETED,
            ai_analysis=analysis,
            graded_at=now,
        )
        self.attempts.complete(attempt, records, grade)
        logger.info("attempt_submitted attempt_id=%s exam_id=%s pending=%d", attempt.id, exam.id, pending)
        return {
            "attempt": serializers.attempt_out(attempt),
            "status": "submitted",
            "pending_review_count": pending,
            "is_published": False,
        }

    @staticmethod
    def _score(question: models.Question, answer: str, ai: Optional[AIClient]) -> Tuple[models.AttemptAnswer, bool]:
        """Score one answer; returns the record and whether it awaits review."""
        record = models.AttemptAnswer(question_id=question.id, answer=answer)
        if not answer:
            record.final_score = 0
            record.ai_feedback = "No answer provided."
            return record, False
        if question.type in OBJECTIVE_TYPES:
            if question.correct_answer is None:
                record.ai_feedback = "Answer recorded. Pending manual grading."
                return record, True
            correct = normalize_answer(answer) == normalize_answer(question.correct_answer)
            record.ai_score = question.marks if correct else 0
            record.final_score = record.ai_score
            record.ai_feedback = "Correct answer!" if correct else f"Incorrect. The correct answer is: {question.correct_answer}"
            return record, False
        if ai is None:
            record.ai_feedback = "Answer recorded. Pending manual grading."
            return record, True
        try:
            result = ai.grade_answer(question.question_text, answer, question.marks, question.grading_rubric, question.sample_answer or question.correct_answer)
        except AIError as exc:
            logger.warning("ai_grading_failed question_id=%s error=%s", question.id, exc)
            record.ai_feedback = "Pending manual review."
            return record, True
        score = min(max(result["score"], 0.0), question.marks)
        record.ai_score = score
        record.final_score = score
        record.ai_feedback = result["feedback"] or "Answer evaluated."
        return record, False


class ResultService:
    """Role-scoped results, manual grading and publish gating."""
    def __init__(self, session: Session):
        self.session = session
        self.users = repositories.UserRepository(session)
        self.classes = repositories.ClassRepository(session)
        self.exams = repositories.ExamRepository(session)
        self.attempts = repositories.AttemptRepository(session)
        self.grades = repositories.GradeRepository(session)

    def _load(self, attempt_id: int) -> Tuple[models.ExamAttempt, models.Exam, models.User]:
        attempt = self.attempts.get(attempt_id)
        if not attempt:
            raise NotFoundError("attempt not found")
        exam = self.exams.get(attempt.exam_id)
        student = self.users.get(attempt.student_id)
        if not exam or not student:
            raise NotFoundError("attempt not found")
        return attempt, exam, student

    def _can_view(self, user: models.User, exam: models.Exam, student: models.User) -> bool:
        if user.role == Role.ADMIN or exam.creator_id == user.id:
            return True
        if user.role == Role.STUDENT:
            return student.id == user.id
        if user.role == Role.PARENT:
            return student.parent_id == user.id
        return student.created_by_id == user.id or self.classes.teaches_student(user.id, student.id)

    def _can_grade(self, user: models.User, exam: models.Exam, student: models.User) -> bool:
        if user.role == Role.ADMIN or exam.creator_id == user.id:
            return True
        return user.role == Role.PARENT and student.parent_id == user.id

    def _can_publish(self, user: models.User, exam: models.Exam, student: models.User) -> bool:
        if user.role == Role.ADMIN or exam.creator_id == user.id:
            return True
        return user.role == Role.TEACHER and self.classes.teaches_student(user.id, student.id)

    def list_results(self, user: models.User) -> Dict[str, Any]:
        if user.role == Role.STUDENT:
            rows = self.grades.list_for_students([user.id])
        elif user.role == Role.PARENT:
            rows = self.grades.list_for_students([c.id for c in self.users.list_children(user.id)])
        elif user.role == Role.TEACHER:
            rows = self.grades.list_for_teacher(user.id, UserService(self.session).student_ids_for(user))
        else:
            rows = self.grades.list_all()
        students = {u.id: u for u in self.users.get_many({g.student_id for g, _, _ in rows})}
        results = []
        for grade, attempt, exam in rows:
            student = students.get(grade.student_id)
            results.append({
                "attempt_id": attempt.id,
                "submitted_at": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
                "exam": {"id": exam.id, "title": exam.title, "subject": exam.subject},
                "student": {"id": grade.student_id, "name": student.name if student else None},
                "grade": serializers.grade_out(grade),
            })
        return {"results": results, "statistics": self._statistics([g.percentage for g, _, _ in rows])}

    @staticmethod
    def _statistics(percentages: List[float]) -> Dict[str, Any]:
        if not percentages:
            return {"count": 0, "average": 0, "highest": 0, "lowest": 0, "trend": "stable"}
        return {
            "count": len(percentages),
            "average": round(sum(percentages) / len(percentages), 2),
            "highest": max(percentages),
            "lowest": min(percentages),
            "trend": score_trend(percentages),
        }

    def _answers_detail(self, exam: models.Exam, attempt: models.ExamAttempt) -> List[Dict[str, Any]]:
        by_question = {a.question_id: a for a in self.attempts.list_answers(attempt.id)}
        out = []
        for question in exam.questions:
            answer = by_question.get(question.id)
            item = serializers.answer_out(answer) if answer else {"question_id": question.id, "answer": None}
            item["question"] = serializers.question_out(question)
            out.append(item)
        return out

    def detail(self, user: models.User, attempt_id: int) -> Dict[str, Any]:
        """Result detail; students and parents only see published grades."""
        attempt, exam, student = self._load(attempt_id)
        if not self._can_view(user, exam, student):
            raise ForbiddenError("you do not have access to this result")
        grade = self.grades.get_by_attempt(attempt.id)
        viewer_is_family = user.role in (Role.STUDENT, Role.PARENT) and exam.creator_id != user.id
        if viewer_is_family and (not grade or not grade.is_published):
            return {
                "status": "pending_review",
                "attempt_id": attempt.id,
                "exam": {"id": exam.id, "title": exam.title, "subject": exam.subject},
                "submitted_at": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
                "message": "Results will be available once they are reviewed and published.",
            }
        return {
            "status": "published" if grade and grade.is_published else "unpublished",
            "attempt": serializers.attempt_out(attempt),
            "exam": serializers.exam_summary(exam),
            "student": serializers.user_out(student),
            "answers": self._answers_detail(exam, attempt),
            "grade": serializers.grade_out(grade) if grade else None,
        }

    def grading_view(self, user: models.User, attempt_id: int) -> Dict[str, Any]:
        """Everything a grader needs; creates a PENDING grade when missing."""
        if not is_creator(user):
            raise ForbiddenError("only teachers, parents and admins can grade")
        attempt, exam, student = self._load(attempt_id)
        if not self._can_grade(user, exam, student):
            raise ForbiddenError("you cannot grade this attempt")
        if not attempt.is_completed:
            raise ValidationError("attempt has not been submitted yet")
        grade = self.grades.get_by_attempt(attempt.id)
        if not grade:
            answers = self.attempts.list_answers(attempt.id)
            total = sum(a.final_score or 0 for a in answers)
            marks = sum(q.marks for q in exam.questions)
            percentage = round(total / marks * 100, 2) if marks else 0.0
            grade = self.grades.save(models.Grade(
                attempt_id=attempt.id,
                student_id=student.id,
                total_score=total,
                percentage=percentage,
                grade=letter_grade(percentage),
                status=models.GradeStatus.PENDING,
            ))
        return {
            "attempt": serializers.attempt_out(attempt),
            "exam": serializers.exam_out(exam),
            "student": serializers.user_out(student),
            "answers": self._answers_detail(exam, attempt),
            "grade": serializers.grade_out(grade),
        }

    def manual_grade(self, user: models.User, attempt_id: int, data: ManualGradeIn) -> models.Grade:
        if not is_creator(user):
            raise ForbiddenError("only teachers, parents and admins can grade")
        attempt, exam, student = self._load(attempt_id)
        if not self._can_grade(user, exam, student):
            raise ForbiddenError("you cannot grade this attempt")
        if not attempt.is_completed:
            raise ValidationError("attempt has not been submitted yet")
        questions = {q.id: q for q in exam.questions}
        answers = {a.question_id: a for a in self.attempts.list_answers(attempt.id)}
        for item in data.scores:
            question = questions.get(item.question_id)
            if not question:
                raise ValidationError(f"question {item.question_id} is not part of this exam")
            answer = answers.get(item.question_id)
            if answer is None:
                answer = models.AttemptAnswer(attempt_id=attempt.id, question_id=question.id)
                answers[question.id] = answer
            answer.manual_score = min(item.score, question.marks)
            answer.manual_feedback = item.feedback
            answer.final_score = answer.manual_score

        marks = sum(q.marks for q in exam.questions)
        total = data.total_score if data.total_score is not None else sum(a.final_score or 0 for a in answers.values())
        if marks:
            total = min(total, marks)
        percentage = round(total / marks * 100, 2) if marks else 0.0
        now = utcnow()
        grade = self.grades.get_by_attempt(attempt.id) or models.Grade(attempt_id=attempt.id, student_id=student.id)
        grade.total_score = round(total, 2)
        grade.percentage = percentage
        grade.grade = letter_grade(percentage)
        grade.status = data.status or models.GradeStatus.COMPLETED
        if data.feedback is not None:
            grade.overall_feedback = data.feedback
        grade.graded_at = now
        if data.publish:
            grade.is_published = True
            grade.published_at = now
            grade.published_by = user.id
        grade = self.grades.save_with_answers(grade, list(answers.values()))
        logger.info("attempt_graded attempt_id=%s by=%s published=%s", attempt.id, user.id, grade.is_published)
        return grade

    def set_published(self, user: models.User, attempt_id: int, published: bool) -> models.Grade:
        attempt, exam, student = self._load(attempt_id)
        if not self._can_publish(user, exam, student):
            raise ForbiddenError("you cannot publish this result")
        grade = self.grades.get_by_attempt(attempt.id)
        if not grade:
            raise NotFoundError("this attempt has not been graded yet")
        grade.is_published = published
        grade.published_at = utcnow() if published else None
        grade.published_by = user.id if published else None
        return self.grades.save(grade)


class DashboardService:
    def __init__(self, session: Session):
        self.session = session
        self.users = repositories.UserRepository(session)
        self.classes = repositories.ClassRepository(session)
        self.exams = repositories.ExamRepository(session)
        self.attempts = repositories.AttemptRepository(session)
        self.grades = repositories.GradeRepository(session)
        self.assignments = repositories.AssignmentRepository(session)
        self.study = repositories.StudyAssignmentRepository(session)

    def stats(self, user: models.User) -> Dict[str, Any]:
        if user.role == Role.STUDENT:
            published = [g.percentage for g, _, _ in self.grades.list_for_students([user.id])]
            return {
                "role": user.role.value,
                "assigned_exams": len(self.assignments.list_active_for_student(user.id)),
                "completed_exams": len(published),
                "average_score": round(sum(published) / len(published), 2) if published else 0,
                "study_modules": len(self.study.list_for_student(user.id)),
            }
        if user.role == Role.ADMIN:
            rows = self.grades.list_all()
            return {
                "role": user.role.value,
                "users": len(self.users.list_all()),
                "students": len(self.users.list_students()),
                "exams": len(self.exams.list_all()),
                "classes": len(self.classes.list_active()),
                "pending_grading": sum(1 for g, _, _ in rows if g.status == models.GradeStatus.PENDING),
            }
        students = UserService(self.session).student_ids_for(user)
        return {
            "role": user.role.value,
            "exams": len(self.exams.list_for_creator(user.id)),
            "students": len(students),
            "classes": len(self.classes.list_for_owner(user.id)),
            "pending_grading": self.grades.count_pending_for_creator(user.id),
        }

    def family(self, user: models.User) -> Dict[str, Any]:
        """Last 30 days of activity for each student a parent, teacher or admin looks after.

        Parents only see published grades in the averages.
        """
        if not is_creator(user):
            raise ForbiddenError("only parents, teachers and admins have a family dashboard")
        now = utcnow()
        student_ids = UserService(self.session).student_ids_for(user)
        rows = self.attempts.completed_since(student_ids, now - timedelta(days=30))

        def visible(grade: Optional[models.Grade]) -> bool:
            return grade is not None and (grade.is_published or user.role != Role.PARENT)

        def average(items) -> float:
            scores = [g.percentage for _, g in items if visible(g)]
            return sum(scores) / len(scores) if scores else 0.0

        by_student = defaultdict(list)
        for attempt, grade in rows:
            by_student[attempt.student_id].append((attempt, grade))

        children = []
        child_averages = []
        for student in sorted(self.users.get_many(student_ids), key=lambda s: s.id):
            recent = by_student.get(student.id, [])
            child_average = average(recent)
            child_averages.append(child_average)
            upcoming = [a for a in self.assignments.list_active_for_student(student.id) if a.due_date and a.due_date >= now]
            children.append({
                "id": student.id,
                "name": student.name,
                "recent_activity": {
                    "exams_completed": len(recent),
                    "average_score": round(child_average, 1),
                    "time_spent": sum(a.time_spent or 0 for a, _ in recent),
                    "last_activity": recent[0][0].submitted_at.isoformat() if recent else None,
                },
                "current_assignments": len(upcoming),
                "upcoming_deadlines": sum(1 for a in upcoming if a.due_date <= now + timedelta(days=3)),
            })

        weekly = []
        for weeks_ago in range(3, -1, -1):
            start = now - timedelta(days=7 * (weeks_ago + 1))
            end = now - timedelta(days=7 * weeks_ago)
            week = [(a, g) for a, g in rows if start < a.submitted_at <= end]
            weekly.append({"week": f"Week {4 - weeks_ago}", "completed": len(week), "average": round(average(week), 1)})

        return {
            "children": children,
            "family_stats": {
                "total_children": len(children),
                "total_exams_completed": len(rows),
                "average_family_score": round(sum(child_averages) / len(child_averages), 1) if child_averages else 0,
                "total_study_time": sum(a.time_spent or 0 for a, _ in rows),
                "weekly_progress": weekly,
            },
        }
