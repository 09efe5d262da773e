import logging

from rq import Worker

from iquiz.core.config import settings
from iquiz.core.database import SessionLocal, close_db, init_db
from iquiz.jobs.queue import QueueDispatcher, queue, redis
from iquiz.models.orm import NotificationStatus
from iquiz.services.notifications import relay_pending

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def main() -> None:
    init_db()
    db = SessionLocal()
    try:
        # Pick up rows a web process committed but never enqueued, and rows
        # whose queue retries ran out.
        relayed = relay_pending(
            db,
            QueueDispatcher(queue),
            statuses=(NotificationStatus.PENDING.value, NotificationStatus.FAILED.value),
        )
        logger.info(f"Relayed {relayed} pending notification(s) on start")
    finally:
        db.close()
    try:
        w = Worker([queue], connection=redis)
        w.work(with_scheduler=True)
    finally:
        close_db()


if __name__ == "__main__":
    main()
