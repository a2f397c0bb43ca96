"""Seed the database with demo accounts and the standard subscription tiers.
Usage: python scripts/seed.py

Idempotent: existing users (by email) and tiers (by name) are left alone.
Every demo account uses the password `password123`.
"""
import sys
import pathlib
# Ensure `backend/` is on sys.path so `homeschool` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from homeschool import models, repositories
from homeschool.auth import hash_password
from homeschool.billing import SubscriptionService
from homeschool.database import engine, create_db_and_tables

DEMO_PASSWORD = "password123"

TIERS = [
    dict(name="Free Trial", description="Try the platform with limited features", price_cents=0,
         interval=models.BillingInterval.CUSTOM_DAYS, billing_days=7, exam_limit_per_period=2,
         study_module_limit_per_period=2, max_attempts_per_exam=1,
         creator_exam_create_limit_per_period=1, creator_module_create_limit_per_period=1),
    dict(name="Basic", description="Perfect for individual homeschool families", price_cents=999,
         exam_limit_per_period=10, study_module_limit_per_period=10, max_attempts_per_exam=2,
         creator_exam_create_limit_per_period=5, creator_module_create_limit_per_period=5),
    dict(name="Premium", description="For active families with multiple children", price_cents=1999,
         exam_limit_per_period=50, study_module_limit_per_period=30, max_attempts_per_exam=3,
         creator_exam_create_limit_per_period=20, creator_module_create_limit_per_period=20),
    dict(name="Professional", description="For co-ops and tutoring centers", price_cents=4999,
         max_attempts_per_exam=5),
    dict(name="Basic Annual", description="Basic plan billed annually", price_cents=9590,
         interval=models.BillingInterval.YEAR, billing_days=365, exam_limit_per_period=120,
         study_module_limit_per_period=120, max_attempts_per_exam=2,
         creator_exam_create_limit_per_period=60, creator_module_create_limit_per_period=60),
]

USERS = [
    ("admin@homeschool.test", "Admin User", models.Role.ADMIN),
    ("teacher@homeschool.test", "Teacher Demo", models.Role.TEACHER),
    ("parent@homeschool.test", "Parent Demo", models.Role.PARENT),
]


def seed_tiers(session: Session) -> int:
    repo = repositories.TierRepository(session)
    created = 0
    for data in TIERS:
        if repo.get_by_name(data["name"]):
            continue
        repo.save(models.SubscriptionTier(**data))
        created += 1
    return created


def seed_users(session: Session) -> dict:
    repo = repositories.UserRepository(session)
    accounts = {}
    for email, name, role in USERS:
        user = repo.get_by_email(email)
        if not user:
            user = repo.create(models.User(email=email, name=name, role=role, password_hash=hash_password(DEMO_PASSWORD)))
        accounts[role] = user
    parent = accounts[models.Role.PARENT]
    student = repo.get_by_email("student@homeschool.test")
    if not student:
        student = repo.create(models.User(
            email="student@homeschool.test",
            username="student",
            name="Student Demo",
            role=models.Role.STUDENT,
            password_hash=hash_password(DEMO_PASSWORD),
            parent_id=parent.id,
            created_by_id=parent.id,
        ))
    accounts[models.Role.STUDENT] = student
    return accounts


def main():
    create_db_and_tables()
    with Session(engine) as session:
        tiers = seed_tiers(session)
        accounts = seed_users(session)
        subs = SubscriptionService(session)
        student = accounts[models.Role.STUDENT]
        if subs.get_active(student.id)[0] is None:
            subs.assign(subs.tiers.get_by_name("Premium").id, user_id=student.id)
    print(f"Created {tiers} tiers; demo accounts use password '{DEMO_PASSWORD}':")
    for email, _, _ in USERS:
        print(f"  {email}")
    print("  student@homeschool.test (username: student)")


if __name__ == '__main__':
    main()
