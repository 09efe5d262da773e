from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import NOW
from iquiz.core.errors import InvalidState, NotFound, ValidationError
from iquiz.models.orm import Notification, NotificationKind
from iquiz.services import accounts


def test_registration_queues_verification(db):
    user = accounts.register_user(db, "New@Example.com", "long-enough", "student")
    assert not user.verified and user.email_verification_code
    row = db.scalars(select(Notification)).one()
    assert row.kind == NotificationKind.EMAIL_VERIFICATION.value
    assert row.payload == {"userId": user.id, "code": user.email_verification_code}

    with pytest.raises(ValidationError, match="verify your account"):
        accounts.authenticate(db, "new@example.com", "long-enough")
    with pytest.raises(NotFound):
        accounts.verify_email(db, "missing", user.email_verification_code)

    accounts.verify_email(db, user.id, user.email_verification_code)
    assert user.verified and user.email_verification_code is None
    assert accounts.authenticate(db, "new@example.com", "long-enough").id == user.id
    with pytest.raises(InvalidState):
        accounts.verify_email(db, user.id, "whatever")


def test_registration_rejections(db):
    with pytest.raises(ValidationError, match="Invalid user type"):
        accounts.register_user(db, "a@example.com", "long-enough", "admin")
    with pytest.raises(ValidationError, match="Password must be"):
        accounts.register_user(db, "a@example.com", "short", "student")


def test_reset_code_expires(db, student):
    accounts.request_password_reset(db, student.email, now=NOW)
    code = student.password_reset_code
    with pytest.raises(ValidationError, match="Invalid or expired reset code"):
        accounts.reset_password(db, student.email, code, "brand-new-pass", now=NOW + timedelta(minutes=31))

    accounts.reset_password(db, student.email, code, "brand-new-pass", now=NOW + timedelta(minutes=5))
    assert student.password_reset_code is None
    assert accounts.authenticate(db, student.email, "brand-new-pass").id == student.id


def test_unverified_users_cannot_request_reset(db):
    user = accounts.register_user(db, "pending@example.com", "long-enough", "instructor")
    with pytest.raises(ValidationError, match="Invalid email"):
        accounts.request_password_reset(db, user.email)
