import os
import tempfile
from datetime import timedelta
from pathlib import Path

# Settings are read at import time, so the environment is prepared first.
_TMP_DIR = Path(tempfile.mkdtemp(prefix='homeschool-tests-'))
os.environ['DATABASE_URL'] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ['ENV'] = 'dev'
os.environ['LOGIN_RATE_LIMIT_PER_MIN'] = '1000'
os.environ['AI_RATE_LIMIT_PER_MIN'] = '1000'
os.environ['AI_RETRY_BACKOFF_SECONDS'] = '0'
os.environ['FLW_SECRET_HASH'] = 'test-secret-hash'
os.environ.pop('OPENAI_API_KEY', None)

import pytest
from sqlmodel import Session

from homeschool import models, repositories
from homeschool.auth import create_token, hash_password
from homeschool.database import engine, create_db_and_tables, drop_db_and_tables
from homeschool.main import app
from homeschool.utils.dates import utcnow
from homeschool.utils.rate_limit import limiter

DEFAULT_QUESTIONS = [
    {'type': models.QuestionType.MULTIPLE_CHOICE, 'question_text': '2 + 2 = ?', 'options': ['3', '4', '5', '6'], 'correct_answer': '4', 'marks': 5},
    {'type': models.QuestionType.TRUE_FALSE, 'question_text': 'The sky is blue.', 'options': ['True', 'False'], 'correct_answer': 'True', 'marks': 5},
]


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test an empty database and fresh limiter state."""
    drop_db_and_tables()
    create_db_and_tables()
    limiter.reset()
    app.dependency_overrides.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def make_user():
    counter = {'n': 0}

    def _make(role=models.Role.TEACHER, password='password123', **fields):
        counter['n'] += 1
        fields.setdefault('email', f"{role.value.lower()}{counter['n']}@example.com")
        fields.setdefault('name', f"{role.value.title()} {counter['n']}")
        with Session(engine) as session:
            user = models.User(role=role, password_hash=hash_password(password), **fields)
            return repositories.UserRepository(session).create(user)
    return _make


@pytest.fixture
def auth():
    def _headers(user):
        return {'Authorization': f'Bearer {create_token(user)}'}
    return _headers


@pytest.fixture
def subscribe():
    """Give a user an active subscription on a fresh tier with `limits`."""
    counter = {'n': 0}

    def _subscribe(user, days=30, **limits):
        counter['n'] += 1
        now = utcnow()
        with Session(engine) as session:
            tier = repositories.TierRepository(session).save(
                models.SubscriptionTier(name=f"Tier {user.id}-{counter['n']}", price_cents=999, **limits)
            )
            sub = models.Subscription(user_id=user.id, tier_id=tier.id, started_at=now - timedelta(minutes=1), expires_at=now + timedelta(days=days))
            return repositories.SubscriptionRepository(session).save(sub)
    return _subscribe


@pytest.fixture
def make_exam():
    """Create an exam directly; returns `{'id', 'question_ids'}`."""
    def _make(creator, questions=None, status=models.ExamStatus.ACTIVE, **fields):
        fields.setdefault('title', 'Arithmetic check')
        fields.setdefault('subject', 'Math')
        items = DEFAULT_QUESTIONS if questions is None else questions
        with Session(engine) as session:
            exam = models.Exam(creator_id=creator.id, status=status, **fields)
            exam = repositories.ExamRepository(session).create(exam, [models.Question(**q) for q in items])
            return {'id': exam.id, 'question_ids': [q.id for q in exam.questions]}
    return _make


@pytest.fixture
def assign():
    def _assign(exam_id, student, assigned_by, **fields):
        with Session(engine) as session:
            row = models.ExamAssignment(exam_id=exam_id, student_id=student.id, assigned_by=assigned_by.id, **fields)
            return repositories.AssignmentRepository(session).create(row)
    return _assign


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def graded_attempt():
    """Store a completed attempt scoring `scores` per question, with its grade."""
    def _graded(exam_id, student, scores, days_ago=0, published=True, time_spent=10):
        submitted = utcnow() - timedelta(days=days_ago, minutes=1)
        with Session(engine) as session:
            exam = session.get(models.Exam, exam_id)
            attempt = models.ExamAttempt(
                exam_id=exam_id,
                student_id=student.id,
                started_at=submitted - timedelta(minutes=time_spent),
                submitted_at=submitted,
                is_completed=True,
                time_spent=time_spent,
            )
            session.add(attempt)
            session.commit()
            session.refresh(attempt)
            for question, score in zip(exam.questions, scores):
                session.add(models.AttemptAnswer(attempt_id=attempt.id, question_id=question.id, answer='x', final_score=score))
            marks = sum(q.marks for q in exam.questions)
            session.add(models.Grade(
                attempt_id=attempt.id,
                student_id=student.id,
                total_score=sum(scores),
                percentage=round(sum(scores) / marks * 100, 2),
                status=models.GradeStatus.COMPLETED,
                is_published=published,
                graded_at=submitted,
            ))
            session.commit()
            return attempt.id
    return _graded
