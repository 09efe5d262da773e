"""
Accounts: registration, email verification, login and password reset.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from iquiz.core.auth import hash_password, verify_password
from iquiz.core.config import settings
from iquiz.core.database import commit
from iquiz.core.errors import InvalidState, NotFound, ValidationError
from iquiz.core.timeutil import as_utc, utcnow
from iquiz.models.orm import User, UserType, new_id
from iquiz.services.notifications import send_email_verification, send_password_reset_code

logger = logging.getLogger(__name__)


def _code() -> str:
    return secrets.token_hex(4)


def _normalize(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _check_password(password: str) -> None:
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")


def register_user(db: Session, email: str, password: str, user_type: str) -> User:
    """Create an unverified user and queue the verification email."""
    email = _normalize(email)
    if not email or not password or not user_type:
        raise ValidationError("Missing fields")
    if user_type not in {t.value for t in UserType}:
        raise ValidationError("Invalid user type")
    _check_password(password)
    if db.scalar(select(User.id).where(User.email == email)) is not None:
        raise ValidationError("User already exists")
    user = User(
        id=new_id(),
        type=user_type,
        email=email,
        password_hash=hash_password(password),
        verified=False,
        email_verification_code=_code(),
        courses=[],
    )
    db.add(user)
    send_email_verification(db, user)
    commit(db, "User registration failed", conflict="User already exists")
    logger.info(f"Registered {user_type} {user.id}")
    return user


def verify_email(db: Session, user_id: str, code: str) -> User:
    user = db.get(User, user_id) if user_id else None
    if user is None:
        raise NotFound("User is not registered")
    if user.verified:
        raise InvalidState("User is already verified")
    if not code or not secrets.compare_digest(code.encode(), (user.email_verification_code or "").encode()):
        raise ValidationError("Invalid verification code")
    user.verified = True
    user.email_verification_code = None
    commit(db, "Email verification failed")
    logger.info(f"User {user.id} verified")
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = db.scalar(select(User).where(User.email == _normalize(email)))
    if user is None or not verify_password(password or "", user.password_hash):
        raise ValidationError("Invalid credentials")
    if not user.verified:
        raise ValidationError("Please verify your account first before you log in!")
    return user


def request_password_reset(db: Session, email: str, now: Optional[datetime] = None) -> User:
    """Issue a short-lived reset code to a verified user."""
    user = db.scalar(select(User).where(User.email == _normalize(email)))
    if user is None or not user.verified:
        raise ValidationError("Invalid email")
    now = now or utcnow()
    user.password_reset_code = _code()
    user.password_reset_expires = now + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
    send_password_reset_code(db, user)
    commit(db, "Password reset request failed")
    logger.info(f"Password reset code issued for user {user.id}")
    return user


def reset_password(db: Session, email: str, code: str, password: str, now: Optional[datetime] = None) -> User:
    if not email or not code or not password:
        raise ValidationError("Missing fields")
    user = db.scalar(select(User).where(User.email == _normalize(email)))
    now = now or utcnow()
    if (
        user is None
        or not user.password_reset_code
        or not secrets.compare_digest(code.encode(), user.password_reset_code.encode())
        or now > as_utc(user.password_reset_expires)
    ):
        raise ValidationError("Invalid or expired reset code")
    _check_password(password)
    user.password_hash = hash_password(password)
    user.password_reset_code = None
    user.password_reset_expires = None
    commit(db, "Password reset failed")
    logger.info(f"Password reset for user {user.id}")
    return user


def serialize_user(user: User) -> dict:
    return {"_id": user.id, "email": user.email, "type": user.type, "verified": user.verified, "courses": list(user.courses or [])}
