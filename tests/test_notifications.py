import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from conftest import RecordingDispatcher, clo, window
from iquiz.jobs.notification_job import deliver
from iquiz.models.orm import Notification, NotificationStatus
from iquiz.services import quiz_lifecycle as lifecycle
from iquiz.services.notifications import (
    claim_statement,
    relay_pending,
    render_notification,
    send_email_verification,
    send_password_reset_code,
)


class FakeMailer:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, to, subject, body):
        if self.fail:
            raise OSError("smtp down")
        self.sent.append((to, subject, body))


@pytest.fixture
def invitation(db, instructor, student, course):
    start, end = window()
    lifecycle.create_quiz(db, instructor, "Quiz 1", False, start, end, course.id, [clo()])
    return db.scalars(select(Notification)).one()


def test_render_invitation(invitation):
    subject, body = render_notification(invitation)
    assert subject == "[CS101] New quiz: Quiz 1"
    assert "Intro to Computing" in body
    assert f"/quiz-info/{invitation.payload['quizId']}" in body


def test_relay_marks_rows_queued(db, invitation):
    dispatcher = RecordingDispatcher()
    assert relay_pending(db, dispatcher) == 1
    assert dispatcher.dispatched == [invitation.id]
    assert db.get(Notification, invitation.id).status == NotificationStatus.QUEUED.value
    assert relay_pending(db, dispatcher) == 0


def test_relay_failure_keeps_rows_pending(db, invitation):
    assert relay_pending(db, RecordingDispatcher(fail=True)) == 0
    assert db.get(Notification, invitation.id).status == NotificationStatus.PENDING.value
    assert relay_pending(db, RecordingDispatcher(), ids=[]) == 0


def test_deliver_sends_once(db, invitation, student):
    mailer = FakeMailer()
    assert deliver(db, invitation.id, mailer) is True
    assert deliver(db, invitation.id, mailer) is False
    assert [to for to, _, _ in mailer.sent] == [student.email]
    row = db.get(Notification, invitation.id)
    assert row.status == NotificationStatus.SENT.value
    assert row.attempts == 1 and row.sent_at is not None


def test_deliver_failure_is_recorded_and_retried(db, invitation):
    with pytest.raises(OSError):
        deliver(db, invitation.id, FakeMailer(fail=True))
    row = db.get(Notification, invitation.id)
    assert row.status == NotificationStatus.FAILED.value
    assert row.last_error == "smtp down"

    assert deliver(db, invitation.id, FakeMailer()) is True
    assert db.get(Notification, invitation.id).attempts == 2


def test_deliver_missing_row(db):
    assert deliver(db, "gone", FakeMailer()) is False


def test_worker_sweep_relays_failed_rows(db, invitation):
    with pytest.raises(OSError):
        deliver(db, invitation.id, FakeMailer(fail=True))
    dispatcher = RecordingDispatcher()
    assert relay_pending(db, dispatcher) == 0
    swept = relay_pending(db, dispatcher, statuses=(NotificationStatus.PENDING.value, NotificationStatus.FAILED.value))
    assert swept == 1 and dispatcher.dispatched == [invitation.id]
    assert db.get(Notification, invitation.id).status == NotificationStatus.QUEUED.value


def test_relay_claims_rows_with_skip_locked():
    sql = str(claim_statement().compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE SKIP LOCKED" in sql


def test_render_account_emails(db, student):
    student.email_verification_code = "abcd1234"
    verification = send_email_verification(db, student)
    subject, body = render_notification(verification)
    assert subject == "Verify your iQuiz account"
    assert f"/verify/{student.id}/abcd1234" in body

    student.password_reset_code = "feed0042"
    _, body = render_notification(send_password_reset_code(db, student))
    assert "feed0042" in body
