"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
classes, exams, attempts, grades, study modules, billing). Repositories
return SQLModel objects and perform commits/refreshes where appropriate.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, or_
from sqlmodel import Session, select

from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(func.lower(models.User.email) == email.strip().lower())
        return self.session.exec(stmt).first()

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get_by_login(self, login: str) -> Optional[models.User]:
        """Resolve a login identifier that may be an email or a username."""
        if "@" in login:
            return self.get_by_email(login)
        return self.get_by_username(login) or self.get_by_email(login)

    def list_all(self, role: Optional[models.Role] = None) -> List[models.User]:
        stmt = select(models.User)
        if role is not None:
            stmt = stmt.where(models.User.role == role)
        return self.session.exec(stmt.order_by(models.User.name)).all()

    def list_students(self) -> List[models.User]:
        return self.list_all(models.Role.STUDENT)

    def list_children(self, parent_id: int) -> List[models.User]:
        stmt = select(models.User).where(
            models.User.parent_id == parent_id,
            models.User.role == models.Role.STUDENT,
        ).order_by(models.User.name)
        return self.session.exec(stmt).all()

    def list_created_students(self, creator_id: int, active_only: bool = True) -> List[models.User]:
        stmt = select(models.User).where(
            models.User.created_by_id == creator_id,
            models.User.role == models.Role.STUDENT,
        )
        if active_only:
            stmt = stmt.where(models.User.is_active == True)  # noqa: E712
        return self.session.exec(stmt).all()

    def get_many(self, user_ids: Iterable[int]) -> List[models.User]:
        ids = list(user_ids)
        if not ids:
            return []
        return self.session.exec(select(models.User).where(models.User.id.in_(ids))).all()


class ClassRepository:
    """Classes and their rosters."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, classroom: models.Classroom) -> models.Classroom:
        self.session.add(classroom)
        self.session.commit()
        self.session.refresh(classroom)
        return classroom

    def save(self, classroom: models.Classroom) -> models.Classroom:
        return self.create(classroom)

    def get(self, class_id: int) -> Optional[models.Classroom]:
        return self.session.get(models.Classroom, class_id)

    def list_active(self) -> List[models.Classroom]:
        stmt = select(models.Classroom).where(models.Classroom.is_active == True)  # noqa: E712
        return self.session.exec(stmt.order_by(models.Classroom.name)).all()

    def list_for_owner(self, user_id: int) -> List[models.Classroom]:
        """Active classes the user teaches or created."""
        stmt = select(models.Classroom).where(
            models.Classroom.is_active == True,  # noqa: E712
            or_(models.Classroom.teacher_id == user_id, models.Classroom.created_by_id == user_id),
        ).order_by(models.Classroom.name)
        return self.session.exec(stmt).all()

    def roster(self, class_id: int) -> List[models.User]:
        stmt = select(models.User).join(
            models.ClassStudent, models.ClassStudent.student_id == models.User.id
        ).where(models.ClassStudent.class_id == class_id).order_by(models.User.name)
        return self.session.exec(stmt).all()

    def is_member(self, class_id: int, student_id: int) -> bool:
        stmt = select(models.ClassStudent.id).where(
            models.ClassStudent.class_id == class_id,
            models.ClassStudent.student_id == student_id,
        )
        return self.session.exec(stmt).first() is not None

    def add_student(self, class_id: int, student_id: int) -> bool:
        """Add a student to the roster. Returns False if already present."""
        if self.is_member(class_id, student_id):
            return False
        self.session.add(models.ClassStudent(class_id=class_id, student_id=student_id))
        self.session.commit()
        return True

    def remove_student(self, class_id: int, student_id: int) -> bool:
        stmt = select(models.ClassStudent).where(
            models.ClassStudent.class_id == class_id,
            models.ClassStudent.student_id == student_id,
        )
        row = self.session.exec(stmt).first()
        if not row:
            return False
        self.session.delete(row)
        self.session.commit()
        return True

    def student_ids_for_teacher(self, teacher_id: int) -> List[int]:
        stmt = select(models.ClassStudent.student_id).join(
            models.Classroom, models.Classroom.id == models.ClassStudent.class_id
        ).where(models.Classroom.teacher_id == teacher_id)
        return list(set(self.session.exec(stmt).all()))

    def teaches_student(self, teacher_id: int, student_id: int) -> bool:
        """Return True if `teacher_id` teaches a class containing `student_id`."""
        stmt = select(models.ClassStudent.id).join(
            models.Classroom, models.Classroom.id == models.ClassStudent.class_id
        ).where(
            models.Classroom.teacher_id == teacher_id,
            models.ClassStudent.student_id == student_id,
        )
        return self.session.exec(stmt).first() is not None


class ExamRepository:
    """Exams and their ordered questions."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, exam: models.Exam, questions: List[models.Question]) -> models.Exam:
        """Create an exam and its questions in a single transaction.

        The exam is flushed first to obtain an id, then questions are
        attached; nothing is committed if any insert fails.
        """
        try:
            self.session.add(exam)
            self.session.flush()
            for idx, q in enumerate(questions):
                q.exam_id = exam.id
                q.order = idx
                self.session.add(q)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(exam)
        return exam

    def save(self, exam: models.Exam) -> models.Exam:
        self.session.add(exam)
        self.session.commit()
        self.session.refresh(exam)
        return exam

    def get(self, exam_id: int) -> Optional[models.Exam]:
        return self.session.get(models.Exam, exam_id)

    def list_for_creator(self, creator_id: int) -> List[models.Exam]:
        stmt = select(models.Exam).where(models.Exam.creator_id == creator_id).order_by(models.Exam.updated_at.desc())
        return self.session.exec(stmt).all()

    def list_all(self) -> List[models.Exam]:
        return self.session.exec(select(models.Exam).order_by(models.Exam.updated_at.desc())).all()

    def replace_questions(self, exam: models.Exam, questions: List[models.Question]) -> models.Exam:
        """Swap the exam's question list atomically."""
        try:
            self.session.exec(delete(models.Question).where(models.Question.exam_id == exam.id))
            for idx, q in enumerate(questions):
                q.exam_id = exam.id
                q.order = idx
                self.session.add(q)
            self.session.add(exam)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(exam)
        return exam

    def delete(self, exam: models.Exam) -> None:
        """Delete an exam with its questions, assignments, attempts and grades."""
        attempt_ids = select(models.ExamAttempt.id).where(models.ExamAttempt.exam_id == exam.id)
        self.session.exec(delete(models.Grade).where(models.Grade.attempt_id.in_(attempt_ids)))
        self.session.exec(delete(models.AttemptAnswer).where(models.AttemptAnswer.attempt_id.in_(attempt_ids)))
        self.session.exec(delete(models.ExamAttempt).where(models.ExamAttempt.exam_id == exam.id))
        self.session.exec(delete(models.ExamAssignment).where(models.ExamAssignment.exam_id == exam.id))
        self.session.delete(exam)
        self.session.commit()

    def count_created_since(self, creator_id: int, since: datetime) -> int:
        stmt = select(func.count(models.Exam.id)).where(
            models.Exam.creator_id == creator_id,
            models.Exam.created_at >= since,
        )
        return self.session.exec(stmt).one()


class AssignmentRepository:
    """Exam assignments for students and classes."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, assignment: models.ExamAssignment) -> models.ExamAssignment:
        self.session.add(assignment)
        self.session.commit()
        self.session.refresh(assignment)
        return assignment

    def find_active_student_row(self, exam_id: int, student_id: int) -> Optional[models.ExamAssignment]:
        stmt = select(models.ExamAssignment).where(
            models.ExamAssignment.exam_id == exam_id,
            models.ExamAssignment.student_id == student_id,
            models.ExamAssignment.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).first()

    def find_for_student(self, exam_id: int, student_id: int) -> Optional[models.ExamAssignment]:
        """Return the active assignment covering a student, directly or via a class.

        A direct row wins over a class-only row.
        """
        direct = self.find_active_student_row(exam_id, student_id)
        if direct:
            return direct
        class_ids = select(models.ClassStudent.class_id).where(models.ClassStudent.student_id == student_id)
        stmt = select(models.ExamAssignment).where(
            models.ExamAssignment.exam_id == exam_id,
            models.ExamAssignment.class_id.in_(class_ids),
            models.ExamAssignment.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).first()

    def list_active_for_exam(self, exam_id: int) -> List[models.ExamAssignment]:
        stmt = select(models.ExamAssignment).where(
            models.ExamAssignment.exam_id == exam_id,
            models.ExamAssignment.is_active == True,  # noqa: E712
        ).order_by(models.ExamAssignment.created_at.desc(), models.ExamAssignment.id.desc())
        return self.session.exec(stmt).all()

    def list_active_for_student(self, student_id: int) -> List[models.ExamAssignment]:
        """Active assignments reaching the student, one per exam."""
        class_ids = select(models.ClassStudent.class_id).where(models.ClassStudent.student_id == student_id)
        stmt = select(models.ExamAssignment).where(
            models.ExamAssignment.is_active == True,  # noqa: E712
            or_(
                models.ExamAssignment.student_id == student_id,
                models.ExamAssignment.class_id.in_(class_ids),
            ),
        ).order_by(models.ExamAssignment.created_at.desc())
        by_exam = {}
        for a in self.session.exec(stmt).all():
            current = by_exam.get(a.exam_id)
            if current is None or (current.student_id is None and a.student_id == student_id):
                by_exam[a.exam_id] = a
        return list(by_exam.values())


class AttemptRepository:
    """Exam attempts and the answers recorded against them."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: models.ExamAttempt) -> models.ExamAttempt:
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    def get(self, attempt_id: int) -> Optional[models.ExamAttempt]:
        return self.session.get(models.ExamAttempt, attempt_id)

    def count_for(self, exam_id: int, student_id: int) -> int:
        stmt = select(func.count(models.ExamAttempt.id)).where(
            models.ExamAttempt.exam_id == exam_id,
            models.ExamAttempt.student_id == student_id,
        )
        return self.session.exec(stmt).one()

    def exam_ids_attempted_since(self, student_id: int, since: datetime) -> List[int]:
        stmt = select(models.ExamAttempt.exam_id).where(
            models.ExamAttempt.student_id == student_id,
            models.ExamAttempt.started_at >= since,
        ).distinct()
        return list(self.session.exec(stmt).all())

    def list_answers(self, attempt_id: int) -> List[models.AttemptAnswer]:
        stmt = select(models.AttemptAnswer).where(models.AttemptAnswer.attempt_id == attempt_id).order_by(models.AttemptAnswer.id)
        return self.session.exec(stmt).all()

    def recent_graded(self, student_id: int, subject: str, grade_level: int, limit: int = 5):
        """Latest completed attempts with their grades for one subject and grade level."""
        stmt = select(models.ExamAttempt, models.Grade).join(
            models.Grade, models.Grade.attempt_id == models.ExamAttempt.id
        ).join(models.Exam, models.Exam.id == models.ExamAttempt.exam_id).where(
            models.ExamAttempt.student_id == student_id,
            models.ExamAttempt.is_completed == True,  # noqa: E712
            models.Exam.subject == subject,
            models.Exam.grade_level == grade_level,
        ).order_by(models.ExamAttempt.submitted_at.desc(), models.ExamAttempt.id.desc()).limit(limit)
        return self.session.exec(stmt).all()

    def answers_with_questions(self, attempt_ids: List[int]):
        if not attempt_ids:
            return []
        stmt = select(models.AttemptAnswer, models.Question).join(
            models.Question, models.Question.id == models.AttemptAnswer.question_id
        ).where(models.AttemptAnswer.attempt_id.in_(attempt_ids))
        return self.session.exec(stmt).all()

    def completed_since(self, student_ids: List[int], since: datetime):
        """Completed attempts of the given students since `since`, each with its grade or None."""
        if not student_ids:
            return []
        stmt = select(models.ExamAttempt, models.Grade).outerjoin(
            models.Grade, models.Grade.attempt_id == models.ExamAttempt.id
        ).where(
            models.ExamAttempt.student_id.in_(student_ids),
            models.ExamAttempt.is_completed == True,  # noqa: E712
            models.ExamAttempt.submitted_at >= since,
        ).order_by(models.ExamAttempt.submitted_at.desc())
        return self.session.exec(stmt).all()

    def complete(self, attempt: models.ExamAttempt, answers: List[models.AttemptAnswer], grade: models.Grade) -> models.ExamAttempt:
        """Persist answers, the completed attempt and its grade together."""
        try:
            for a in answers:
                a.attempt_id = attempt.id
                self.session.add(a)
            self.session.add(attempt)
            self.session.add(grade)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(attempt)
        self.session.refresh(grade)
        return attempt


class GradeRepository:
    """Grade lookups and role-scoped listings."""
    def __init__(self, session: Session):
        self.session = session

    def save(self, grade: models.Grade) -> models.Grade:
        self.session.add(grade)
        self.session.commit()
        self.session.refresh(grade)
        return grade

    def save_with_answers(self, grade: models.Grade, answers: List[models.AttemptAnswer]) -> models.Grade:
        for a in answers:
            self.session.add(a)
        return self.save(grade)

    def get_by_attempt(self, attempt_id: int) -> Optional[models.Grade]:
        stmt = select(models.Grade).where(models.Grade.attempt_id == attempt_id)
        return self.session.exec(stmt).first()

    def _base(self):
        return select(models.Grade, models.ExamAttempt, models.Exam).join(
            models.ExamAttempt, models.ExamAttempt.id == models.Grade.attempt_id
        ).join(models.Exam, models.Exam.id == models.ExamAttempt.exam_id)

    def list_for_students(self, student_ids: List[int], published_only: bool = True):
        if not student_ids:
            return []
        stmt = self._base().where(models.Grade.student_id.in_(student_ids))
        if published_only:
            stmt = stmt.where(models.Grade.is_published == True)  # noqa: E712
        return self.session.exec(stmt.order_by(models.Grade.graded_at.desc(), models.Grade.id.desc())).all()

    def list_for_teacher(self, teacher_id: int, student_ids: List[int]):
        """Grades for exams the teacher created or students they created or teach."""
        conditions = [models.Exam.creator_id == teacher_id]
        if student_ids:
            conditions.append(models.Grade.student_id.in_(student_ids))
        stmt = self._base().where(or_(*conditions))
        return self.session.exec(stmt.order_by(models.Grade.graded_at.desc(), models.Grade.id.desc())).all()

    def list_all(self):
        return self.session.exec(self._base().order_by(models.Grade.graded_at.desc(), models.Grade.id.desc())).all()

    def count_pending_for_creator(self, creator_id: int) -> int:
        stmt = select(func.count(models.Grade.id)).join(
            models.ExamAttempt, models.ExamAttempt.id == models.Grade.attempt_id
        ).join(models.Exam, models.Exam.id == models.ExamAttempt.exam_id).where(
            models.Exam.creator_id == creator_id,
            models.Grade.status == models.GradeStatus.PENDING,
        )
        return self.session.exec(stmt).one()


class StudyModuleRepository:
    """Study modules with their lessons and steps."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, module: models.StudyModule, lessons: List[models.StudyLesson]) -> models.StudyModule:
        """Create a module tree in one transaction.

        `lessons` carry their steps through the `steps` relationship.
        """
        try:
            module.lessons = lessons
            self.session.add(module)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(module)
        return module

    def get(self, module_id: int) -> Optional[models.StudyModule]:
        return self.session.get(models.StudyModule, module_id)

    def list_for_creator(self, creator_id: int) -> List[models.StudyModule]:
        stmt = select(models.StudyModule).where(models.StudyModule.created_by == creator_id).order_by(models.StudyModule.created_at.desc())
        return self.session.exec(stmt).all()

    def count_created_since(self, creator_id: int, since: datetime) -> int:
        stmt = select(func.count(models.StudyModule.id)).where(
            models.StudyModule.created_by == creator_id,
            models.StudyModule.created_at >= since,
        )
        return self.session.exec(stmt).one()

    def delete(self, module: models.StudyModule) -> None:
        self.session.exec(delete(models.StudyModuleAssignment).where(models.StudyModuleAssignment.module_id == module.id))
        self.session.exec(delete(models.SubscriptionModuleAccess).where(models.SubscriptionModuleAccess.module_id == module.id))
        self.session.delete(module)
        self.session.commit()


class StudyAssignmentRepository:
    """Per-student study module assignments (progress cursors)."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, module_id: int, student_id: int) -> Optional[models.StudyModuleAssignment]:
        stmt = select(models.StudyModuleAssignment).where(
            models.StudyModuleAssignment.module_id == module_id,
            models.StudyModuleAssignment.student_id == student_id,
        )
        return self.session.exec(stmt).first()

    def save(self, assignment: models.StudyModuleAssignment) -> models.StudyModuleAssignment:
        self.session.add(assignment)
        self.session.commit()
        self.session.refresh(assignment)
        return assignment

    def create_many(self, assignments: List[models.StudyModuleAssignment]) -> List[models.StudyModuleAssignment]:
        for a in assignments:
            self.session.add(a)
        self.session.commit()
        for a in assignments:
            self.session.refresh(a)
        return assignments

    def list_for_student(self, student_id: int) -> List[models.StudyModuleAssignment]:
        stmt = select(models.StudyModuleAssignment).where(models.StudyModuleAssignment.student_id == student_id)
        return self.session.exec(stmt).all()

    def list_for_module(self, module_id: int, student_id: Optional[int] = None, assigned_by: Optional[int] = None) -> List[models.StudyModuleAssignment]:
        stmt = select(models.StudyModuleAssignment).where(models.StudyModuleAssignment.module_id == module_id)
        if student_id is not None:
            stmt = stmt.where(models.StudyModuleAssignment.student_id == student_id)
        if assigned_by is not None:
            stmt = stmt.where(models.StudyModuleAssignment.assigned_by == assigned_by)
        return self.session.exec(stmt).all()

    def list_for_modules(self, module_ids: List[int]) -> List[models.StudyModuleAssignment]:
        if not module_ids:
            return []
        stmt = select(models.StudyModuleAssignment).where(models.StudyModuleAssignment.module_id.in_(module_ids))
        return self.session.exec(stmt).all()


class TierRepository:
    """Subscription tier CRUD."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, tier_id: int) -> Optional[models.SubscriptionTier]:
        return self.session.get(models.SubscriptionTier, tier_id)

    def get_by_name(self, name: str) -> Optional[models.SubscriptionTier]:
        return self.session.exec(select(models.SubscriptionTier).where(models.SubscriptionTier.name == name)).first()

    def list_active(self) -> List[models.SubscriptionTier]:
        stmt = select(models.SubscriptionTier).where(models.SubscriptionTier.is_active == True)  # noqa: E712
        return self.session.exec(stmt.order_by(models.SubscriptionTier.price_cents)).all()

    def save(self, tier: models.SubscriptionTier) -> models.SubscriptionTier:
        self.session.add(tier)
        self.session.commit()
        self.session.refresh(tier)
        return tier

    def delete(self, tier: models.SubscriptionTier) -> None:
        self.session.delete(tier)
        self.session.commit()

    def in_use(self, tier_id: int) -> bool:
        stmt = select(models.Subscription.id).where(models.Subscription.tier_id == tier_id)
        return self.session.exec(stmt).first() is not None


class SubscriptionRepository:
    """Subscriptions and per-period module access records."""
    def __init__(self, session: Session):
        self.session = session

    def get_active(self, user_id: int, now: datetime) -> Optional[models.Subscription]:
        """Return the active subscription with the latest expiry, if any."""
        stmt = select(models.Subscription).where(
            models.Subscription.user_id == user_id,
            models.Subscription.status == models.SubscriptionStatus.ACTIVE,
            models.Subscription.expires_at > now,
        ).order_by(models.Subscription.expires_at.desc())
        return self.session.exec(stmt).first()

    def save(self, subscription: models.Subscription) -> models.Subscription:
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def list_overdue_active(self, now: datetime) -> List[models.Subscription]:
        stmt = select(models.Subscription).where(
            models.Subscription.status == models.SubscriptionStatus.ACTIVE,
            models.Subscription.expires_at <= now,
        )
        return self.session.exec(stmt).all()

    def has_module_access(self, subscription_id: int, module_id: int) -> bool:
        stmt = select(models.SubscriptionModuleAccess.id).where(
            models.SubscriptionModuleAccess.subscription_id == subscription_id,
            models.SubscriptionModuleAccess.module_id == module_id,
        )
        return self.session.exec(stmt).first() is not None

    def count_module_access(self, subscription_id: int) -> int:
        stmt = select(func.count(models.SubscriptionModuleAccess.id)).where(
            models.SubscriptionModuleAccess.subscription_id == subscription_id
        )
        return self.session.exec(stmt).one()

    def record_module_access(self, subscription_id: int, module_id: int) -> None:
        self.session.add(models.SubscriptionModuleAccess(subscription_id=subscription_id, module_id=module_id))
        self.session.commit()

    def clear_module_access(self, subscription_id: int) -> None:
        self.session.exec(delete(models.SubscriptionModuleAccess).where(
            models.SubscriptionModuleAccess.subscription_id == subscription_id
        ))


class PaymentRepository:
    """Payment records keyed by `tx_ref`."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, payment: models.Payment) -> models.Payment:
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def save(self, payment: models.Payment) -> models.Payment:
        return self.create(payment)

    def get_by_tx_ref(self, tx_ref: str) -> Optional[models.Payment]:
        return self.session.exec(select(models.Payment).where(models.Payment.tx_ref == tx_ref)).first()
