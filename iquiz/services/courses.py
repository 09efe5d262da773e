import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from iquiz.core.database import commit
from iquiz.core.errors import AccessDenied, InvalidState, ValidationError
from iquiz.models.orm import Course, User, new_id
from iquiz.services.quiz_lifecycle import is_enrolled, load_course, require_instructor, require_owner

logger = logging.getLogger(__name__)


def create_course(
    db: Session,
    user: User,
    course_code: str,
    course_semester: str,
    course_name: str,
    accent_color: Optional[str] = None,
    session_count: int = 1,
) -> Course:
    require_instructor(user)
    if not course_code or not course_semester or not course_name:
        raise ValidationError("Missing fields")
    if session_count < 1:
        raise ValidationError("A course needs at least one session")
    course = Course(
        id=new_id(),
        course_code=course_code.strip(),
        course_semester=course_semester.strip(),
        course_name=course_name.strip(),
        instructor_id=user.id,
        accent_color=accent_color or "#2563eb",
        quizzes=[],
        archived=False,
        sessions=[{"students": []} for _ in range(session_count)],
    )
    db.add(course)
    user.courses = [*(user.courses or []), {"courseId": course.id, "accentColor": course.accent_color}]
    commit(db, "Course creation failed")
    logger.info(f"Course {course.id} ({course.course_code}) created by {user.id}")
    return course


def enroll_student(db: Session, user: User, course_id: str, session: int = 0, accent_color: Optional[str] = None) -> Course:
    if not user.is_student:
        raise AccessDenied("Invalid user type")
    course = load_course(db, course_id)
    if course.archived:
        raise InvalidState("Course is archived")
    if is_enrolled(user, course):
        raise ValidationError("Already enrolled in course")
    sessions = [dict(s) for s in course.sessions or []]
    if not 0 <= session < len(sessions):
        raise ValidationError("Invalid session")
    sessions[session]["students"] = [*sessions[session].get("students", []), user.id]
    course.sessions = sessions
    user.courses = [*(user.courses or []), {"courseId": course.id, "accentColor": accent_color or course.accent_color}]
    commit(db, "Enrollment failed")
    logger.info(f"Student {user.id} enrolled in course {course.id} session {session}")
    return course


def _set_archived(db: Session, user: User, course_id: str, archived: bool) -> Course:
    require_instructor(user)
    course = load_course(db, course_id)
    require_owner(user, course)
    if course.archived == archived:
        raise InvalidState("Course is already archived" if archived else "Course is not archived")
    course.archived = archived
    commit(db, "Course update failed")
    logger.info(f"Course {course.id} {'archived' if archived else 'unarchived'}")
    return course


def archive_course(db: Session, user: User, course_id: str) -> Course:
    return _set_archived(db, user, course_id, True)


def unarchive_course(db: Session, user: User, course_id: str) -> Course:
    return _set_archived(db, user, course_id, False)


def drop_course(db: Session, user: User, course_id: str) -> None:
    """Remove a student from every session of a course and from their course list.

    Existing quiz responses are kept.
    """
    if not user.is_student:
        raise AccessDenied("Invalid user type")
    course = load_course(db, course_id)
    if not is_enrolled(user, course):
        raise ValidationError("Not enrolled in course")
    course.sessions = [
        {**session, "students": [sid for sid in session.get("students", []) if sid != user.id]}
        for session in course.sessions or []
    ]
    user.courses = [entry for entry in user.courses or [] if entry.get("courseId") != course.id]
    commit(db, "Dropping course failed")
    logger.info(f"Student {user.id} dropped course {course.id}")


def get_course(db: Session, user: User, course_id: str) -> Dict[str, Any]:
    course = load_course(db, course_id)
    instructing = course.instructor_id == user.id
    if not instructing and not is_enrolled(user, course):
        raise AccessDenied("Not a member of course")
    data = {
        "_id": course.id,
        "courseCode": course.course_code,
        "courseSemester": course.course_semester,
        "courseName": course.course_name,
        "instructor": course.instructor_id,
        "accentColor": course.accent_color,
        "archived": course.archived,
        "quizzes": list(course.quizzes or []),
    }
    if instructing:
        data["sessions"] = [dict(s) for s in course.sessions or []]
    return data
