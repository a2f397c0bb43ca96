"""Study modules: authoring, assignment, gated access and progress.

A module is a tree of lessons and steps. Each assigned student has one
`StudyModuleAssignment` holding a 1-based lesson/step cursor; the API
speaks 0-based indexes and converts at this boundary.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from . import models, repositories, serializers
from .ai import AIClient, AIError
from .billing import SubscriptionService
from .config import settings
from .errors import ForbiddenError, NotFoundError, PaymentRequiredError, ValidationError
from .schemas import ProgressIn, StudyGenerateIn, StudyModuleCreateIn
from .utils.dates import to_naive_utc, utcnow

logger = logging.getLogger("homeschool.study")

Role = models.Role

STEP_PASSING_SCORES = {
    models.StepType.PRACTICE_EASY: 80,
    models.StepType.PRACTICE_MEDIUM: 85,
    models.StepType.PRACTICE_HARD: 95,
}


def step_passing_score(step_type: models.StepType) -> int:
    return STEP_PASSING_SCORES.get(step_type, 70)


def compute_progress(lessons: List[models.StudyLesson], lesson_index: int, step_index: int) -> int:
    """Percentage of steps before the 0-based cursor position."""
    total = sum(len(lesson.steps) for lesson in lessons)
    if not total:
        return 0
    if lesson_index >= len(lessons):
        return 100
    done = sum(len(lesson.steps) for lesson in lessons[:lesson_index])
    done += min(step_index, len(lessons[lesson_index].steps))
    return min(100, round(done * 100 / total))


def template_module(topic: str, number_of_lessons: int, title: Optional[str] = None) -> Dict[str, Any]:
    """Module content used when AI generation is unavailable or fails."""
    return {
        "title": title or f"{topic} Learning Journey",
        "description": f"Interactive study module for {topic}",
        "learningObjectives": [
            f"Understand core concepts of {topic}",
            "Apply knowledge through practice",
            f"Master {topic} skills through repetition",
        ],
        "lessons": [
            {
                "lessonNumber": i + 1,
                "title": f"{topic} - Lesson {i + 1}",
                "objective": f"Learn key concepts in {topic}",
                "steps": [
                    {
                        "stepNumber": 1,
                        "type": "THEORY",
                        "title": "Introduction",
                        "content": {
                            "explanation": f"Let's learn about {topic}. This lesson covers the important ideas you need to know.",
                            "keyPoints": [f"Understanding {topic} is important", "Practice makes perfect"],
                        },
                    },
                    {
                        "stepNumber": 2,
                        "type": "PRACTICE_EASY",
                        "title": "Easy Practice",
                        "content": {
                            "instructions": "Choose the correct answer",
                            "questions": [{
                                "question": f"What is the main concept of {topic}?",
                                "type": "multipleChoice",
                                "options": ["Option A", "Option B", "Option C", "Option D"],
                                "correctAnswer": "Option A",
                            }],
                        },
                    },
                ],
            }
            for i in range(number_of_lessons)
        ],
    }


def lessons_from_content(content: Dict[str, Any]) -> List[models.StudyLesson]:
    """Build lesson/step rows from generated module JSON, skipping junk."""
    objectives = content.get("learningObjectives") or []
    lessons = []
    for raw in content.get("lessons") or []:
        if not isinstance(raw, dict):
            continue
        steps = []
        for raw_step in raw.get("steps") or []:
            if not isinstance(raw_step, dict):
                continue
            try:
                step_type = models.StepType(str(raw_step.get("type", "")).upper())
            except ValueError:
                step_type = models.StepType.THEORY
            steps.append(models.LessonStep(
                step_number=len(steps) + 1,
                type=step_type,
                title=str(raw_step.get("title") or f"Step {len(steps) + 1}"),
                content=raw_step.get("content") if isinstance(raw_step.get("content"), dict) else {"text": raw_step.get("content")},
                passing_score=step_passing_score(step_type),
                order=len(steps),
            ))
        if not steps:
            continue
        lessons.append(models.StudyLesson(
            lesson_number=len(lessons) + 1,
            title=str(raw.get("title") or f"Lesson {len(lessons) + 1}"),
            content={"objective": raw.get("objective"), "learningObjectives": objectives},
            order=len(lessons),
            steps=steps,
        ))
    return lessons


class StudyModuleService:
    def __init__(self, session: Session):
        self.session = session
        self.modules = repositories.StudyModuleRepository(session)
        self.progress = repositories.StudyAssignmentRepository(session)
        self.users = repositories.UserRepository(session)
        self.subs = repositories.SubscriptionRepository(session)
        self.subscriptions = SubscriptionService(session)

    def _get(self, module_id: int) -> models.StudyModule:
        module = self.modules.get(module_id)
        if not module:
            raise NotFoundError("study module not found")
        return module

    def _get_owned(self, user: models.User, module_id: int) -> models.StudyModule:
        module = self._get(module_id)
        if user.role != Role.ADMIN and module.created_by != user.id:
            raise ForbiddenError("you do not own this study module")
        return module

    def list_for(self, user: models.User) -> Dict[str, Any]:
        """Students get assigned modules with progress; creators their own."""
        if user.role != Role.STUDENT:
            modules = self.modules.list_for_creator(user.id)
            counts: Dict[int, int] = {}
            for a in self.progress.list_for_modules([m.id for m in modules]):
                counts[a.module_id] = counts.get(a.module_id, 0) + 1
            items = []
            for module in modules:
                data = serializers.module_out(module, include_lessons=False)
                data["assigned_count"] = counts.get(module.id, 0)
                items.append(data)
            return {"modules": items}
        assignments = self.progress.list_for_student(user.id)
        items = []
        for assignment in assignments:
            module = self.modules.get(assignment.module_id)
            if not module:
                continue
            data = serializers.module_out(module, include_lessons=False)
            data["progress"] = serializers.study_assignment_out(assignment)
            items.append(data)
        return {
            "modules": items,
            "stats": {
                "total_xp": sum(a.total_xp for a in assignments),
                "best_streak": max((a.streak for a in assignments), default=0),
                "completed": sum(1 for a in assignments if a.status == models.ModuleProgressStatus.COMPLETED),
            },
        }

    def create(self, user: models.User, data: StudyModuleCreateIn) -> models.StudyModule:
        if user.role == Role.STUDENT:
            raise ForbiddenError("students cannot create study modules")
        self.subscriptions.enforce_creator_quota(user, "module")
        lessons = []
        for li, lesson_in in enumerate(data.lessons):
            steps = [
                models.LessonStep(
                    step_number=si + 1,
                    type=step_in.type,
                    title=step_in.title,
                    content=step_in.content,
                    passing_score=step_in.passing_score if step_in.passing_score is not None else step_passing_score(step_in.type),
                    order=si,
                )
                for si, step_in in enumerate(lesson_in.steps)
            ]
            lessons.append(models.StudyLesson(
                lesson_number=li + 1,
                title=lesson_in.title,
                content=lesson_in.content,
                min_score=lesson_in.min_score,
                max_attempts=lesson_in.max_attempts,
                xp_reward=lesson_in.xp_reward,
                order=li,
                steps=steps,
            ))
        module = models.StudyModule(
            title=data.title,
            description=data.description,
            topic=data.topic,
            subject=data.subject,
            grade_level=data.grade_level,
            total_lessons=len(lessons),
            passing_score=data.passing_score,
            lives_enabled=data.lives_enabled,
            max_lives=data.max_lives,
            xp_reward=100 * len(lessons),
            created_by=user.id,
        )
        module = self.modules.create(module, lessons)
        logger.info("study_module_created module_id=%s creator_id=%s lessons=%d", module.id, user.id, len(lessons))
        return module

    def get_for_view(self, user: models.User, module_id: int) -> Dict[str, Any]:
        """Module content; students need an assignment and a subscription.

        With a per-period module limit each newly opened module is recorded
        against the subscription, and opening one past the limit is refused.
        Re-opening a recorded module is always allowed.
        """
        module = self._get(module_id)
        if user.role != Role.STUDENT:
            if user.role != Role.ADMIN and module.created_by != user.id:
                raise ForbiddenError("you do not own this study module")
            return serializers.module_out(module)

        assignment = self.progress.get(module.id, user.id)
        if not assignment:
            raise ForbiddenError("this study module is not assigned to you")
        sub, tier = self.subscriptions.require_active(user.id, "an active subscription is required to study")
        limit = tier.study_module_limit_per_period
        if limit > 0 and not self.subs.has_module_access(sub.id, module.id):
            used = self.subs.count_module_access(sub.id)
            if used >= limit:
                raise PaymentRequiredError(
                    "study module limit reached for your plan this period",
                    {"limit": limit, "used": used},
                )
            self.subs.record_module_access(sub.id, module.id)
        data = serializers.module_out(module)
        data["progress"] = serializers.study_assignment_out(assignment)
        return data

    def delete(self, user: models.User, module_id: int) -> None:
        module = self._get_owned(user, module_id)
        self.modules.delete(module)
        logger.info("study_module_deleted module_id=%s by=%s", module_id, user.id)

    def assign(
        self,
        user: models.User,
        module_id: int,
        student_ids: List[int],
        due_date=None,
        instructions: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Assign a module; students already assigned keep their progress."""
        if user.role == Role.STUDENT:
            raise ForbiddenError("students cannot assign study modules")
        module = self._get_owned(user, module_id)
        students = [s for s in self.users.get_many(set(student_ids)) if s.role == Role.STUDENT]
        if not students:
            raise ValidationError("no valid students to assign")
        existing, new = [], []
        for student in students:
            current = self.progress.get(module.id, student.id)
            if current:
                existing.append(current)
                continue
            new.append(models.StudyModuleAssignment(
                module_id=module.id,
                student_id=student.id,
                assigned_by=user.id,
                due_date=to_naive_utc(due_date),
                instructions=instructions,
                lives=module.max_lives,
            ))
        created = self.progress.create_many(new) if new else []
        logger.info("study_module_assigned module_id=%s created=%d existing=%d", module.id, len(created), len(existing))
        return {"assignments": created + existing, "created_count": len(created), "existing_count": len(existing)}

    def list_assignments(self, user: models.User, module_id: int) -> List[models.StudyModuleAssignment]:
        module = self._get(module_id)
        if user.role == Role.STUDENT:
            return self.progress.list_for_module(module.id, student_id=user.id)
        if user.role == Role.ADMIN:
            return self.progress.list_for_module(module.id)
        return self.progress.list_for_module(module.id, assigned_by=user.id)

    def get_progress(self, user: models.User, module_id: int) -> Dict[str, Any]:
        if user.role != Role.STUDENT:
            raise ForbiddenError("only students track study progress")
        module = self._get(module_id)
        assignment = self.progress.get(module.id, user.id)
        if not assignment:
            return {
                "module_id": module.id,
                "assigned": False,
                "current_lesson": 0,
                "current_step": 0,
                "overall_progress": 0,
                "total_xp": 0,
                "lives": module.max_lives,
                "streak": 0,
                "status": models.ModuleProgressStatus.NOT_STARTED.value,
            }
        data = serializers.study_assignment_out(assignment)
        data["assigned"] = True
        return data

    def update_progress(self, user: models.User, module_id: int, data: ProgressIn) -> models.StudyModuleAssignment:
        """Move the cursor and recompute progress.

        Lives are clamped to `[0, max_lives]`; XP and streak never go
        negative. A completed module stays completed.
        """
        if user.role != Role.STUDENT:
            raise ForbiddenError("only students track study progress")
        module = self._get(module_id)
        assignment = self.progress.get(module.id, user.id)
        if not assignment:
            raise ForbiddenError("this study module is not assigned to you")
        lessons = module.lessons
        if lessons and data.current_lesson > len(lessons):
            raise ValidationError("current_lesson is out of range")
        if lessons and data.current_step > len(lessons[min(data.current_lesson, len(lessons) - 1)].steps):
            raise ValidationError("current_step is out of range")

        progress = compute_progress(lessons, data.current_lesson, data.current_step)
        if data.completed:
            progress = 100
        assignment.current_lesson = min(data.current_lesson, max(len(lessons) - 1, 0)) + 1
        assignment.current_step = data.current_step + 1
        if data.total_xp is not None:
            assignment.total_xp = max(0, data.total_xp)
        if data.streak is not None:
            assignment.streak = max(0, data.streak)
        if data.lives is not None:
            assignment.lives = min(max(0, data.lives), module.max_lives)
        if assignment.status == models.ModuleProgressStatus.COMPLETED or progress >= 100:
            assignment.status = models.ModuleProgressStatus.COMPLETED
            assignment.overall_progress = 100
        else:
            assignment.status = models.ModuleProgressStatus.IN_PROGRESS
            assignment.overall_progress = progress
        assignment.last_active_at = utcnow()
        return self.progress.save(assignment)

    def overview(self, user: models.User) -> Dict[str, Any]:
        """Creator view of every assignment of their modules."""
        if user.role == Role.STUDENT:
            raise ForbiddenError("students cannot view the progress overview")
        modules = {m.id: m for m in self.modules.list_for_creator(user.id)}
        assignments = self.progress.list_for_modules(list(modules))
        students = {s.id: s for s in self.users.get_many({a.student_id for a in assignments})}
        now = utcnow()
        rows = []
        summary = {"NOT_STARTED": 0, "IN_PROGRESS": 0, "OVERDUE": 0, "COMPLETED": 0}
        for a in assignments:
            if a.status == models.ModuleProgressStatus.COMPLETED:
                status = "COMPLETED"
            elif a.due_date and a.due_date < now:
                status = "OVERDUE"
            else:
                status = a.status.value
            summary[status] += 1
            student = students.get(a.student_id)
            rows.append({
                "assignment": serializers.study_assignment_out(a),
                "module": {"id": a.module_id, "title": modules[a.module_id].title},
                "student": {"id": a.student_id, "name": student.name if student else None},
                "status": status,
            })
        return {"assignments": rows, "summary": summary}

    def _generate_content(self, ai: Optional[AIClient], data: StudyGenerateIn) -> Tuple[Dict[str, Any], str]:
        if ai is not None:
            attempts = max(1, settings.AI_MAX_ATTEMPTS)
            for attempt in range(1, attempts + 1):
                try:
                    content = ai.generate_study_module(
                        data.topic, data.subject, data.grade_level, data.number_of_lessons, data.country, data.notes
                    )
                    if lessons_from_content(content):
                        return content, "ai"
                    logger.warning("study_generation_unusable attempt=%d", attempt)
                except AIError as exc:
                    logger.warning("study_generation_failed attempt=%d error=%s", attempt, exc)
                if attempt < attempts and settings.AI_RETRY_BACKOFF_SECONDS > 0:
                    time.sleep(settings.AI_RETRY_BACKOFF_SECONDS * attempt)
        logger.info("study_generation_template topic=%s", data.topic)
        return template_module(data.topic, data.number_of_lessons, data.title), "template"

    def generate(self, user: models.User, data: StudyGenerateIn, ai: Optional[AIClient]) -> Dict[str, Any]:
        """Generate a module (AI first, template fallback) and auto-assign it
        to the creator's active students."""
        if user.role == Role.STUDENT:
            raise ForbiddenError("students cannot create study modules")
        self.subscriptions.enforce_creator_quota(user, "module")
        content, source = self._generate_content(ai, data)
        lessons = lessons_from_content(content)
        module = models.StudyModule(
            title=str(data.title or content.get("title") or f"{data.topic} Learning Journey"),
            description=content.get("description"),
            topic=data.topic,
            subject=data.subject,
            grade_level=data.grade_level,
            ai_generated=source == "ai",
            total_lessons=len(lessons),
            xp_reward=100 * len(lessons),
            created_by=user.id,
        )
        module = self.modules.create(module, lessons)
        students = self.users.list_created_students(user.id)
        created = self.progress.create_many([
            models.StudyModuleAssignment(
                module_id=module.id,
                student_id=s.id,
                assigned_by=user.id,
                lives=module.max_lives,
            )
            for s in students
        ]) if students else []
        logger.info("study_module_generated module_id=%s source=%s assigned=%d", module.id, source, len(created))
        return {
            "module": serializers.module_out(module),
            "source": source,
            "assigned_count": len(created),
            "message": f"Created study module. Auto-assigned to {len(created)} students.",
        }
