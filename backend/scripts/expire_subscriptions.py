"""Mark subscriptions past their expiry date as EXPIRED.
Usage: python scripts/expire_subscriptions.py

Meant for a daily cron job; the API also runs this sweep at startup.
"""
import sys
import pathlib
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from homeschool.billing import SubscriptionService
from homeschool.database import engine, create_db_and_tables


def main() -> int:
    create_db_and_tables()
    with Session(engine) as session:
        expired = SubscriptionService(session).expire_overdue()
    print(f"Expired {expired} subscription(s)")
    return expired


if __name__ == '__main__':
    main()
