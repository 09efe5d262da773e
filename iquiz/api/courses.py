from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from iquiz.api.deps import envelope
from iquiz.core.auth import get_current_user, require_roles
from iquiz.core.database import get_db
from iquiz.models.orm import User
from iquiz.services import courses

router = APIRouter()


class CourseCreate(BaseModel):
    courseCode: str
    courseSemester: str
    courseName: str
    accentColor: Optional[str] = None
    sessions: int = Field(ge=1, le=50, default=1)


class Enroll(BaseModel):
    session: int = 0
    accentColor: Optional[str] = None


@router.post("", status_code=201)
def create_course(payload: CourseCreate, user: User = Depends(require_roles("instructor")), db: Session = Depends(get_db)):
    course = courses.create_course(
        db, user, payload.courseCode, payload.courseSemester, payload.courseName, payload.accentColor, payload.sessions
    )
    return envelope(True, "Course created successfully", courses.get_course(db, user, course.id))


@router.post("/{course_id}/enroll")
def enroll(course_id: str, payload: Optional[Enroll] = None, user: User = Depends(require_roles("student")),
           db: Session = Depends(get_db)):
    payload = payload or Enroll()
    course = courses.enroll_student(db, user, course_id, payload.session, payload.accentColor)
    return envelope(True, "Enrolled in course", courses.get_course(db, user, course.id))


@router.get("/{course_id}")
def get_course(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope(True, "Course found", courses.get_course(db, user, course_id))


@router.patch("/{course_id}/archive")
def archive_course(course_id: str, user: User = Depends(require_roles("instructor")), db: Session = Depends(get_db)):
    course = courses.archive_course(db, user, course_id)
    return envelope(True, "Course archived", courses.get_course(db, user, course.id))


@router.patch("/{course_id}/unarchive")
def unarchive_course(course_id: str, user: User = Depends(require_roles("instructor")), db: Session = Depends(get_db)):
    course = courses.unarchive_course(db, user, course_id)
    return envelope(True, "Course unarchived", courses.get_course(db, user, course.id))


@router.post("/{course_id}/drop")
def drop_course(course_id: str, user: User = Depends(require_roles("student")), db: Session = Depends(get_db)):
    courses.drop_course(db, user, course_id)
    return envelope(True, "Course dropped")
