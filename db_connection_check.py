from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from shelfsync.config import get_settings
from shelfsync.db import Database
from shelfsync.models import QUEUE_STATUSES, SyncQueueItem


def main() -> None:
    settings = get_settings()
    print(f"DATABASE_URL={settings.database_url}")
    database = Database(settings.database_url)
    try:
        with database.session_scope() as db:
            db.execute(text("SELECT 1"))
            print("DB connection OK")
            rows = dict(
                db.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
                .group_by(SyncQueueItem.status)
                .all()
            )
            print(" ".join(f"{status}={rows.get(status, 0)}" for status in QUEUE_STATUSES))
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
    finally:
        database.dispose()


if __name__ == "__main__":
    main()
