"""LLM client used for content generation and subjective grading.

A thin wrapper over the OpenAI chat completions API that always asks for
a JSON object and parses it. Routers obtain the client through the
`get_ai_client` dependency, which yields `None` when no API key is
configured; tests replace it via `app.dependency_overrides`.
"""

import json
import logging
import math
import time
from typing import Any, Dict, List, Optional

from openai import OpenAI

from .config import settings

logger = logging.getLogger("homeschool.ai")


class AIError(Exception):
    """The model call failed or returned something unusable."""


class AIClient:
    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 90.0):
        self.model = model
        self._client = OpenAI(api_key=api_key, timeout=timeout)

    def complete_json(self, system: str, prompt: str, temperature: float = 0.7, max_tokens: int = 4000) -> Dict[str, Any]:
        """Send one chat completion and return the decoded JSON object."""
        started = time.time()
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise AIError(f"model call failed: {exc}") from exc
        if not response.choices:
            raise AIError("empty model response")
        content = response.choices[0].message.content or ""
        logger.info("ai_completion model=%s latency_ms=%d", self.model, int((time.time() - started) * 1000))
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise AIError("model returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise AIError("model returned a non-object JSON value")
        return data

    def generate_exam_questions(
        self,
        subject: str,
        grade_level: int,
        topics: List[str],
        difficulty: str,
        question_types: Dict[str, int],
        instructions: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        counts = ", ".join(f"{n} {t}" for t, n in question_types.items())
        prompt = (
            f"Create exam questions for grade {grade_level} {subject}.\n"
            f"Topics: {', '.join(topics)}\nDifficulty: {difficulty}\n"
            f"Question counts by type: {counts}\n"
            + (f"Extra instructions: {instructions}\n" if instructions else "")
            + 'Respond with {"questions": [{"type", "question_text", "options", "correct_answer", '
            '"marks", "difficulty", "topic", "sample_answer", "grading_rubric"}]}. '
            "Multiple choice questions need 4 options and correct_answer equal to one option; "
            'true/false questions use "True" or "False".'
        )
        data = self.complete_json("You are an experienced teacher writing age-appropriate exams.", prompt)
        questions = data.get("questions")
        if not isinstance(questions, list) or not questions:
            raise AIError("model returned no questions")
        return questions

    def grade_answer(
        self,
        question_text: str,
        answer: str,
        marks: float,
        rubric: Optional[Dict[str, Any]] = None,
        sample_answer: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Score a subjective answer. Returns `{"score": float, "feedback": str}`."""
        prompt = (
            f"Question: {question_text}\nMaximum marks: {marks}\n"
            + (f"Rubric: {json.dumps(rubric)}\n" if rubric else "")
            + (f"Model answer: {sample_answer}\n" if sample_answer else "")
            + f"Student answer: {answer}\n"
            'Respond with {"score": number, "feedback": string}.'
        )
        data = self.complete_json("You grade student answers fairly and encouragingly.", prompt, temperature=0.2, max_tokens=600)
        try:
            score = float(data.get("score", 0))
        except (TypeError, ValueError) as exc:
            raise AIError("model returned a non-numeric score") from exc
        if not math.isfinite(score):
            raise AIError("model returned a non-finite score")
        return {"score": score, "feedback": str(data.get("feedback") or "")}

    def analyze_performance(self, exam_title: str, subject: str, items: List[Dict[str, Any]], percentage: float) -> Dict[str, Any]:
        prompt = (
            f"Exam: {exam_title} ({subject}). Overall score: {percentage:.1f}%.\n"
            f"Per-question results: {json.dumps(items)}\n"
            'Respond with {"strengths": [...], "weaknesses": [...], "recommendations": [...], "summary": string}.'
        )
        return self.complete_json("You analyse student exam performance for parents and teachers.", prompt, temperature=0.3, max_tokens=1200)

    def generate_study_module(
        self,
        topic: str,
        subject: Optional[str],
        grade_level: Optional[int],
        number_of_lessons: int,
        country: str = "US",
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        prompt = (
            "Create an interactive, bite-sized learning module.\n"
            f"Topic: {topic}\nSubject: {subject or 'General'}\nGrade level: {grade_level or 'any'}\n"
            f"Number of lessons: {number_of_lessons}\nCurriculum standards: {country}\n"
            + (f"Notes: {notes}\n" if notes else "")
            + 'Respond with {"module": {"title", "description", "learningObjectives": [...], '
            '"lessons": [{"lessonNumber", "title", "objective", "steps": [{"stepNumber", '
            '"type": THEORY|PRACTICE_EASY|PRACTICE_MEDIUM|PRACTICE_HARD|REVIEW, "title", "content"}]}]}}.'
        )
        data = self.complete_json("You design engaging study modules for homeschool students.", prompt, max_tokens=8000)
        module = data.get("module")
        if not isinstance(module, dict) or not isinstance(module.get("lessons"), list) or not module["lessons"]:
            raise AIError("model returned a module without lessons")
        return module

    def generate_lesson_plan(
        self,
        subject: str,
        topic: str,
        grade_level: int,
        duration: int,
        objectives: List[str],
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        prompt = (
            f"Write a {duration}-minute lesson plan on {topic} for grade {grade_level} {subject}.\n"
            + (f"Objectives: {'; '.join(objectives)}\n" if objectives else "")
            + (f"Notes: {notes}\n" if notes else "")
            + 'Respond with {"title", "objectives": [...], "materials": [...], '
            '"activities": [{"name", "duration", "description"}], "assessment", "homework"}.'
        )
        return self.complete_json("You are a curriculum planner for homeschool families.", prompt)


def get_ai_client() -> Optional[AIClient]:
    """FastAPI dependency: the configured client, or `None` without an API key."""
    if not settings.OPENAI_API_KEY:
        return None
    return AIClient(settings.OPENAI_API_KEY, settings.OPENAI_MODEL, settings.OPENAI_TIMEOUT_SECONDS)
