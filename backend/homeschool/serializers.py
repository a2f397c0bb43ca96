"""Conversion of models into JSON-ready dicts for responses."""

from typing import Any, Dict, Iterable, Optional

from . import models

HIDDEN_QUESTION_FIELDS = ("correct_answer", "grading_rubric", "sample_answer")


def user_out(user: models.User) -> Dict[str, Any]:
    return user.model_dump(mode="json", exclude={"password_hash"})


def class_out(classroom: models.Classroom, students: Optional[Iterable[models.User]] = None) -> Dict[str, Any]:
    data = classroom.model_dump(mode="json")
    if students is not None:
        data["students"] = [user_out(s) for s in students]
        data["student_count"] = len(data["students"])
    return data


def question_out(question: models.Question, include_answers: bool = True) -> Dict[str, Any]:
    exclude = set() if include_answers else set(HIDDEN_QUESTION_FIELDS)
    return question.model_dump(mode="json", exclude=exclude)


def exam_summary(exam: models.Exam) -> Dict[str, Any]:
    data = exam.model_dump(mode="json")
    data["question_count"] = len(exam.questions)
    data["marks_sum"] = sum(q.marks for q in exam.questions)
    return data


def exam_out(exam: models.Exam, include_answers: bool = True) -> Dict[str, Any]:
    """Full exam with questions; students get the answer-free view."""
    data = exam_summary(exam)
    if not include_answers:
        data.pop("ai_config", None)
    data["questions"] = [question_out(q, include_answers) for q in exam.questions]
    return data


def assignment_out(assignment: models.ExamAssignment) -> Dict[str, Any]:
    return assignment.model_dump(mode="json")


def attempt_out(attempt: models.ExamAttempt) -> Dict[str, Any]:
    return attempt.model_dump(mode="json")


def answer_out(answer: models.AttemptAnswer) -> Dict[str, Any]:
    return answer.model_dump(mode="json")


def grade_out(grade: models.Grade) -> Dict[str, Any]:
    return grade.model_dump(mode="json")


def step_out(step: models.LessonStep) -> Dict[str, Any]:
    return step.model_dump(mode="json")


def lesson_out(lesson: models.StudyLesson) -> Dict[str, Any]:
    data = lesson.model_dump(mode="json")
    data["steps"] = [step_out(s) for s in lesson.steps]
    return data


def module_out(module: models.StudyModule, include_lessons: bool = True) -> Dict[str, Any]:
    data = module.model_dump(mode="json")
    if include_lessons:
        data["lessons"] = [lesson_out(lesson) for lesson in module.lessons]
    return data


def study_assignment_out(assignment: models.StudyModuleAssignment) -> Dict[str, Any]:
    """Expose the progress cursor 0-based, the way clients index lessons."""
    data = assignment.model_dump(mode="json")
    data["current_lesson"] = max(0, assignment.current_lesson - 1)
    data["current_step"] = max(0, assignment.current_step - 1)
    return data


def tier_out(tier: models.SubscriptionTier) -> Dict[str, Any]:
    return tier.model_dump(mode="json")


def subscription_out(subscription: models.Subscription, tier: Optional[models.SubscriptionTier] = None) -> Dict[str, Any]:
    data = subscription.model_dump(mode="json")
    if tier is not None:
        data["tier"] = tier_out(tier)
    return data
