from redis import Redis
from rq import Queue, Retry

from iquiz.core.config import settings
from iquiz.jobs.notification_job import deliver_notification_job
from iquiz.services.notifications import NotificationDispatcher

redis = Redis.from_url(settings.REDIS_URL)
queue = Queue(settings.RQ_QUEUE, connection=redis)


class QueueDispatcher(NotificationDispatcher):
    """Enqueue one delivery job per notification; the job id keeps it unique."""

    def __init__(self, q: Queue = queue):
        self.queue = q

    def dispatch(self, notification_id: str) -> None:
        self.queue.enqueue(
            deliver_notification_job,
            notification_id,
            job_id=f"notification:{notification_id}",
            retry=Retry(max=settings.NOTIFY_MAX_RETRIES, interval=settings.NOTIFY_RETRY_INTERVALS),
            job_timeout=settings.NOTIFY_JOB_TIMEOUT,
        )
