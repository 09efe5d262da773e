from typing import Any, Dict, Optional

from iquiz.jobs.queue import QueueDispatcher
from iquiz.services.notifications import NotificationDispatcher


def get_dispatcher() -> NotificationDispatcher:
    return QueueDispatcher()


def envelope(success: bool, message: str, payload: Optional[Any] = None, error: Optional[Any] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success, "message": message}
    if payload is not None:
        body["payload"] = payload
    if error is not None:
        body["error"] = error
    return body
