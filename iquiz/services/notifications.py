"""
Notification outbox.

Services record notification intents in the same transaction as the state
change that causes them. After commit, ``relay_pending`` hands the pending
rows to a dispatcher (an RQ queue in production); the worker delivers each one
independently with retries.
"""
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from iquiz.core.config import settings
from iquiz.core.database import commit
from iquiz.core.timeutil import to_iso
from iquiz.models.orm import Course, Notification, NotificationKind, NotificationStatus, Quiz, User, new_id

logger = logging.getLogger(__name__)


def _quiz_payload(course: Course, quiz: Quiz) -> Dict[str, Any]:
    return {
        "courseId": course.id,
        "courseCode": course.course_code,
        "courseName": course.course_name,
        "quizId": quiz.id,
        "quizName": quiz.quiz_name,
        "startTime": to_iso(quiz.start_time),
        "endTime": to_iso(quiz.end_time),
    }


def send_quiz_invitation(db: Session, course: Course, emails: Iterable[str], quiz: Quiz) -> List[Notification]:
    """Record one invitation per recipient."""
    payload = _quiz_payload(course, quiz)
    rows = [
        Notification(
            id=new_id(),
            kind=NotificationKind.QUIZ_INVITATION.value,
            recipient=email,
            payload=payload,
            status=NotificationStatus.PENDING.value,
            attempts=0,
        )
        for email in emails
    ]
    db.add_all(rows)
    return rows


def send_graded_quiz_email(db: Session, course: Course, student: User, quiz: Quiz, score: int, max_score: int) -> Notification:
    row = Notification(
        id=new_id(),
        kind=NotificationKind.QUIZ_GRADED.value,
        recipient=student.email,
        payload={**_quiz_payload(course, quiz), "score": score, "maxScore": max_score},
        status=NotificationStatus.PENDING.value,
        attempts=0,
    )
    db.add(row)
    return row


def send_email_verification(db: Session, user: User) -> Notification:
    row = Notification(
        id=new_id(),
        kind=NotificationKind.EMAIL_VERIFICATION.value,
        recipient=user.email,
        payload={"userId": user.id, "code": user.email_verification_code},
        status=NotificationStatus.PENDING.value,
        attempts=0,
    )
    db.add(row)
    return row


def send_password_reset_code(db: Session, user: User) -> Notification:
    row = Notification(
        id=new_id(),
        kind=NotificationKind.PASSWORD_RESET.value,
        recipient=user.email,
        payload={
            "userId": user.id,
            "code": user.password_reset_code,
            "minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES,
        },
        status=NotificationStatus.PENDING.value,
        attempts=0,
    )
    db.add(row)
    return row


class NotificationDispatcher:
    """Hands a committed notification to whatever delivers it."""

    def dispatch(self, notification_id: str) -> None:
        raise NotImplementedError


RELAYABLE = (NotificationStatus.PENDING.value,)


def claim_statement(statuses: Sequence[str] = RELAYABLE, ids: Optional[List[str]] = None) -> Select:
    """Rows to relay, locked so concurrent relays skip each other's rows."""
    stmt = select(Notification).where(Notification.status.in_(list(statuses)))
    if ids is not None:
        stmt = stmt.where(Notification.id.in_(ids))
    return stmt.order_by(Notification.created_at).with_for_update(skip_locked=True)


def relay_pending(
    db: Session,
    dispatcher: NotificationDispatcher,
    ids: Optional[List[str]] = None,
    statuses: Sequence[str] = RELAYABLE,
) -> int:
    """Dispatch claimed notifications and mark them queued.

    Rows whose dispatch fails keep their status and are picked up by the next
    relay. The worker passes ``failed`` as well to retry rows whose queue
    retries ran out.
    """
    if ids is not None and not ids:
        return 0
    rows = db.scalars(claim_statement(statuses, ids)).all()
    if not rows:
        db.rollback()
        return 0
    queued = 0
    for row in rows:
        try:
            dispatcher.dispatch(row.id)
        except Exception as e:
            logger.warning(f"Could not dispatch notification {row.id}: {e}")
            continue
        row.status = NotificationStatus.QUEUED.value
        queued += 1
    commit(db, "Failed to mark notifications queued")
    if queued:
        logger.info(f"Queued {queued} notification(s)")
    return queued


SUBJECTS = {
    NotificationKind.QUIZ_INVITATION.value: "[{courseCode}] New quiz: {quizName}",
    NotificationKind.QUIZ_GRADED.value: "[{courseCode}] Grades released: {quizName}",
    NotificationKind.EMAIL_VERIFICATION.value: "Verify your iQuiz account",
    NotificationKind.PASSWORD_RESET.value: "Your iQuiz password reset code",
}

BODIES = {
    NotificationKind.QUIZ_INVITATION.value: (
        "A new quiz, {quizName}, has been released for {courseCode} {courseName}.\n\n"
        "Opens: {startTime}\nCloses: {endTime}\n\n{link}\n"
    ),
    NotificationKind.QUIZ_GRADED.value: (
        "Your quiz {quizName} for {courseCode} {courseName} has been graded.\n\n"
        "Score: {score} / {maxScore}\n\n{link}\n"
    ),
    NotificationKind.EMAIL_VERIFICATION.value: (
        "Welcome to iQuiz. Confirm your email address to activate your account:\n\n{link}\n"
    ),
    NotificationKind.PASSWORD_RESET.value: (
        "Your password reset code is {code}. It expires in {minutes} minutes.\n\n{link}\n"
    ),
}

LINKS = {
    NotificationKind.QUIZ_INVITATION.value: "{base}/quiz-info/{quizId}",
    NotificationKind.QUIZ_GRADED.value: "{base}/quiz-info/{quizId}",
    NotificationKind.EMAIL_VERIFICATION.value: "{base}/verify/{userId}/{code}",
    NotificationKind.PASSWORD_RESET.value: "{base}/reset-password",
}


def render_notification(notification: Notification) -> Tuple[str, str]:
    """Return (subject, body) for a notification."""
    fields = dict(notification.payload or {})
    fields["link"] = LINKS[notification.kind].format(base=settings.FRONTEND_URL.rstrip("/"), **fields)
    return SUBJECTS[notification.kind].format(**fields), BODIES[notification.kind].format(**fields)


class SmtpMailer:
    def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = formataddr((settings.SMTP_FROM_NAME, settings.SMTP_FROM))
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT) as smtp:
            if settings.SMTP_TLS:
                smtp.starttls()
            if settings.SMTP_USER and settings.SMTP_PASSWORD:
                smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD.get_secret_value())
            smtp.send_message(message)
