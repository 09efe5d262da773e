import logging

from rq import get_current_job
from sqlalchemy import select
from sqlalchemy.orm import Session

from iquiz.core.database import SessionLocal, init_db
from iquiz.core.timeutil import utcnow
from iquiz.models.orm import Notification, NotificationStatus
from iquiz.services.notifications import SmtpMailer, render_notification

logger = logging.getLogger(__name__)


def deliver(db: Session, notification_id: str, mailer) -> bool:
    """Send one notification. Returns False when there is nothing left to send.

    The row stays locked until the outcome is committed, so a redelivered job
    waits and then sees it as sent. A failed send is recorded and re-raised
    so the queue can retry it.
    """
    row = db.scalar(select(Notification).where(Notification.id == notification_id).with_for_update())
    if row is None:
        logger.warning(f"Notification {notification_id} no longer exists")
        db.rollback()
        return False
    if row.status == NotificationStatus.SENT.value:
        db.rollback()
        return False
    subject, body = render_notification(row)
    row.attempts = (row.attempts or 0) + 1
    try:
        mailer.send(row.recipient, subject, body)
    except Exception as e:
        row.status = NotificationStatus.FAILED.value
        row.last_error = str(e)
        db.commit()
        logger.error(f"Notification {row.id} to {row.recipient} failed (attempt {row.attempts}): {e}")
        raise
    row.status = NotificationStatus.SENT.value
    row.last_error = None
    row.sent_at = utcnow()
    db.commit()
    logger.info(f"Notification {row.id} ({row.kind}) sent to {row.recipient}")
    return True


def deliver_notification_job(notification_id: str) -> bool:
    job = get_current_job()
    if job is not None:
        job.meta.update({"notification_id": notification_id}); job.save_meta()
    init_db()
    db = SessionLocal()
    try:
        return deliver(db, notification_id, SmtpMailer())
    finally:
        db.close()
