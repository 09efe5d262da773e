import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase): pass


class UserType(str, enum.Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"


class QuestionKind(str, enum.Enum):
    MCQ = "MCQ"
    MSQ = "MSQ"
    CLO = "CLO"
    OEQ = "OEQ"


class ResponseStatus(str, enum.Enum):
    WRITING = "writing"
    SUBMITTED = "submitted"


class GradedState(str, enum.Enum):
    NONE = "none"
    PARTIALLY = "partially"
    FULLY = "fully"


class NotificationKind(str, enum.Enum):
    QUIZ_INVITATION = "quiz_invitation"
    QUIZ_GRADED = "quiz_graded"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


UNGRADED = -1


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(16))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    email_verification_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    password_reset_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    password_reset_expires: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # [{"courseId": ..., "accentColor": ...}]
    courses: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_instructor(self) -> bool:
        return self.type == UserType.INSTRUCTOR.value

    @property
    def is_student(self) -> bool:
        return self.type == UserType.STUDENT.value

    def course_entry(self, course_id: str) -> Optional[Dict[str, Any]]:
        return next((c for c in self.courses or [] if c.get("courseId") == course_id), None)


class Course(Base):
    __tablename__ = "courses"
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    course_code: Mapped[str] = mapped_column(String(32))
    course_semester: Mapped[str] = mapped_column(String(32))
    course_name: Mapped[str] = mapped_column(String(255))
    instructor_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), index=True)
    accent_color: Mapped[str] = mapped_column(String(16), default="#2563eb")
    # ordered quiz ids, appended on creation
    quizzes: Mapped[List[str]] = mapped_column(JSON, default=list)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    # [{"students": [user ids]}]
    sessions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    def student_ids(self) -> List[str]:
        seen: List[str] = []
        for session in self.sessions or []:
            for student_id in session.get("students", []):
                if student_id not in seen:
                    seen.append(student_id)
        return seen


class Quiz(Base):
    __tablename__ = "quizzes"
    __table_args__ = (UniqueConstraint("course_id", "quiz_name", name="uq_quiz_name_per_course"),)
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    quiz_name: Mapped[str] = mapped_column(String(255))
    is_draft: Mapped[bool] = mapped_column(Boolean, default=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    course_id: Mapped[str] = mapped_column(String(32), ForeignKey("courses.id"), index=True)
    # [{"question": id, "type": kind, "maxScore": int}]
    questions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    is_grade_released: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def total_max_score(self) -> int:
        return sum(int(q.get("maxScore", 1)) for q in self.questions or [])


class Question(Base):
    """All four question kinds share one table, discriminated by ``kind``."""

    __tablename__ = "questions"
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    kind: Mapped[str] = mapped_column(String(8))
    prompt: Mapped[str] = mapped_column(Text)
    max_score: Mapped[int] = mapped_column(Integer, default=1)
    # MCQ/MSQ: [{"id": ..., "content": ...}]
    choices: Mapped[Optional[List[Dict[str, str]]]] = mapped_column(JSON, nullable=True)
    # MCQ/MSQ: choice ids; CLO: accepted answers
    answers: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    criteria: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __mapper_args__ = {"polymorphic_on": "kind"}


class MCQ(Question):
    __mapper_args__ = {"polymorphic_identity": QuestionKind.MCQ.value}


class MSQ(Question):
    __mapper_args__ = {"polymorphic_identity": QuestionKind.MSQ.value}


class CLO(Question):
    __mapper_args__ = {"polymorphic_identity": QuestionKind.CLO.value}


class OEQ(Question):
    __mapper_args__ = {"polymorphic_identity": QuestionKind.OEQ.value}


class QuizResponse(Base):
    __tablename__ = "quiz_responses"
    __table_args__ = (UniqueConstraint("quiz_id", "student_id", name="uq_quiz_response_student"),)
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    quiz_id: Mapped[str] = mapped_column(String(32), ForeignKey("quizzes.id", ondelete="CASCADE"), index=True)
    student_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), default=ResponseStatus.WRITING.value)
    graded: Mapped[str] = mapped_column(String(16), default=GradedState.NONE.value)
    # [{"question": id, "response": [str], "score": int}]
    question_responses: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def total_score(self) -> int:
        return sum(max(int(qr.get("score", UNGRADED)), 0) for qr in self.question_responses or [])


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("idx_notifications_status", "status"),)
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    kind: Mapped[str] = mapped_column(String(32))
    recipient: Mapped[str] = mapped_column(String(255))
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default=NotificationStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
