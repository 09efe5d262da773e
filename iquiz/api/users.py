from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from iquiz.api.deps import envelope, get_dispatcher
from iquiz.core.auth import create_token, get_current_user
from iquiz.core.database import get_db
from iquiz.models.orm import User
from iquiz.services import accounts
from iquiz.services.notifications import NotificationDispatcher, relay_pending

router = APIRouter()


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    type: Literal["student", "instructor"]


class LoginRequest(BaseModel):
    email: str
    password: str


class ResetCodeRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    email: str
    code: str
    password: str


@router.post("/register", status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db),
             dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    user = accounts.register_user(db, payload.email, payload.password, payload.type)
    relay_pending(db, dispatcher)
    return envelope(True, "User registered successfully", accounts.serialize_user(user))


@router.post("/verify-email/{user_id}/{code}")
def verify_email(user_id: str, code: str, db: Session = Depends(get_db)):
    user = accounts.verify_email(db, user_id, code)
    return envelope(True, "User has been verified!", accounts.serialize_user(user))


@router.post("/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = accounts.authenticate(db, payload.email, payload.password)
    return envelope(True, "Logged in", {
        "access_token": create_token(user),
        "token_type": "bearer",
        "user": accounts.serialize_user(user),
    })


@router.post("/reset-password-code")
def reset_password_code(payload: ResetCodeRequest, db: Session = Depends(get_db),
                        dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    accounts.request_password_reset(db, payload.email)
    relay_pending(db, dispatcher)
    return envelope(True, "Password reset code sent successfully")


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Session = Depends(get_db)):
    accounts.reset_password(db, payload.email, payload.code, payload.password)
    return envelope(True, "Password has been reset")


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return envelope(True, "User found", accounts.serialize_user(user))
