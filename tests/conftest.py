from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from iquiz.api.deps import get_dispatcher
from iquiz.core.auth import create_token, hash_password
from iquiz.core.database import get_db
from iquiz.main import app
from iquiz.models.orm import Base, Course, User, UserType, new_id
from iquiz.services.notifications import NotificationDispatcher

NOW = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, fail=False):
        self.dispatched = []
        self.fail = fail

    def dispatch(self, notification_id):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.dispatched.append(notification_id)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(session_factory, dispatcher):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(kind="student", email=None):
        user = User(
            id=new_id(),
            type=kind,
            email=email or f"{kind}-{new_id()[:8]}@example.com",
            password_hash=hash_password("password123"),
            verified=True,
            courses=[],
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def instructor(make_user):
    return make_user(UserType.INSTRUCTOR.value)


@pytest.fixture
def student(make_user):
    return make_user(UserType.STUDENT.value)


@pytest.fixture
def make_course(db):
    def _make(owner, students=(), code="CS101", archived=False):
        course = Course(
            id=new_id(),
            course_code=code,
            course_semester="W30",
            course_name="Intro to Computing",
            instructor_id=owner.id,
            accent_color="#123456",
            quizzes=[],
            archived=archived,
            sessions=[{"students": [s.id for s in students]}],
        )
        db.add(course)
        owner.courses = [*(owner.courses or []), {"courseId": course.id, "accentColor": "#123456"}]
        for s in students:
            s.courses = [*(s.courses or []), {"courseId": course.id, "accentColor": "#abcdef"}]
        db.commit()
        return course
    return _make


@pytest.fixture
def course(make_course, instructor, student):
    return make_course(instructor, [student])


@pytest.fixture
def auth():
    def _auth(user):
        return {"Authorization": f"Bearer {create_token(user)}"}
    return _auth


def iso(dt):
    return dt.isoformat()


def window(start_offset_hours=-1, end_offset_hours=1, now=NOW):
    return iso(now + timedelta(hours=start_offset_hours)), iso(now + timedelta(hours=end_offset_hours))


def mcq(prompt="2 + 2?", max_score=None):
    entry = {
        "type": "MCQ",
        "question": {
            "prompt": prompt,
            "choices": [{"id": "a", "content": "3"}, {"id": "b", "content": "4"}],
            "answers": ["b"],
        },
    }
    if max_score is not None:
        entry["maxScore"] = max_score
    return entry


def msq(prompt="Pick the primes"):
    return {
        "type": "MSQ",
        "question": {
            "prompt": prompt,
            "choices": [{"id": "a", "content": "2"}, {"id": "b", "content": "3"}, {"id": "c", "content": "4"}],
            "answers": ["a", "b"],
        },
    }


def clo(prompt="Capital of France?"):
    return {"type": "CLO", "question": {"prompt": prompt, "answers": ["Paris"]}}


def oeq(prompt="Explain recursion", max_score=5):
    return {"type": "OEQ", "maxScore": max_score, "question": {"prompt": prompt, "criteria": "Mentions a base case"}}
