"""
Quiz lifecycle: Draft -> Released -> GradesReleased.

Every operation validates the caller and the request before touching the
store, then commits all of its writes (question records, quiz, course quiz
sequence, notification outbox rows) in a single transaction.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from iquiz.core.database import commit
from iquiz.core.errors import AccessDenied, IncompleteGrading, InvalidState, NotFound, ValidationError
from iquiz.core.timeutil import as_utc, parse_time_range, to_iso, utcnow
from iquiz.models.orm import Course, GradedState, Quiz, QuizResponse, ResponseStatus, User, new_id
from iquiz.services import questions as question_variants
from iquiz.services.notifications import send_graded_quiz_email, send_quiz_invitation

logger = logging.getLogger(__name__)

QUIZ_LISTINGS = ("draft", "active", "upcoming", "past")


# ---------- lookups & guards ----------

def require_instructor(user: User) -> None:
    if not user.is_instructor:
        raise AccessDenied("Invalid user type")


def load_course(db: Session, course_id: str) -> Course:
    course = db.get(Course, course_id)
    if course is None:
        raise NotFound("Invalid course id", error=course_id)
    return course


def load_quiz(db: Session, quiz_id: str) -> Quiz:
    quiz = db.get(Quiz, quiz_id) if quiz_id else None
    if quiz is None:
        raise NotFound("Invalid quiz id", error=quiz_id)
    return quiz


def quiz_course(db: Session, quiz: Quiz) -> Course:
    course = db.get(Course, quiz.course_id)
    if course is None:
        raise NotFound("Invalid course id in quiz", error=quiz.course_id)
    return course


def require_owner(user: User, course: Course) -> None:
    if course.instructor_id != user.id:
        raise AccessDenied("Instructor does not teach course")


def is_enrolled(user: User, course: Course) -> bool:
    return user.course_entry(course.id) is not None or user.id in course.student_ids()


def owned_quiz(db: Session, user: User, quiz_id: str) -> Tuple[Quiz, Course]:
    require_instructor(user)
    quiz = load_quiz(db, quiz_id)
    course = quiz_course(db, quiz)
    require_owner(user, course)
    return quiz, course


def _name_taken(db: Session, course_id: str, quiz_name: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(Quiz.id).where(Quiz.course_id == course_id, Quiz.quiz_name == quiz_name)
    if exclude_id:
        stmt = stmt.where(Quiz.id != exclude_id)
    return db.scalar(stmt.limit(1)) is not None


def _draft_times(start_time: Any, end_time: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    # Drafts may omit times entirely; anything given must still form a valid range.
    if start_time in (None, "") and end_time in (None, ""):
        return None, None
    return parse_time_range(start_time, end_time)


def _require_draft(quiz: Quiz, action: str) -> None:
    if not quiz.is_draft:
        raise InvalidState(f"Only draft quizzes can be {action}")


def _invite_course(db: Session, sender: User, course: Course, quiz: Quiz) -> int:
    student_ids = [sid for sid in course.student_ids() if sid != sender.id]
    if not student_ids:
        return 0
    emails = db.scalars(select(User.email).where(User.id.in_(student_ids))).all()
    return len(send_quiz_invitation(db, course, emails, quiz))


# ---------- classification & serialization ----------

def quiz_status(quiz: Quiz, now: datetime) -> str:
    if quiz.is_draft:
        return "draft"
    if now < as_utc(quiz.start_time):
        return "upcoming"
    if now > as_utc(quiz.end_time):
        return "past"
    return "active"


def serialize_quiz(quiz: Quiz) -> Dict[str, Any]:
    return {
        "_id": quiz.id,
        "quizName": quiz.quiz_name,
        "isDraft": quiz.is_draft,
        "startTime": to_iso(quiz.start_time),
        "endTime": to_iso(quiz.end_time),
        "courseId": quiz.course_id,
        "questions": [dict(entry) for entry in quiz.questions or []],
        "totalMaxScore": quiz.total_max_score(),
        "isGradeReleased": quiz.is_grade_released,
    }


def quiz_summary(quiz: Quiz, course: Course, now: datetime, accent_color: Optional[str] = None) -> Dict[str, Any]:
    return {
        "quizId": quiz.id,
        "quizName": quiz.quiz_name,
        "courseId": course.id,
        "courseCode": course.course_code,
        "accentColor": accent_color or course.accent_color,
        "status": quiz_status(quiz, now),
        "startTime": to_iso(quiz.start_time),
        "endTime": to_iso(quiz.end_time),
        "isDraft": quiz.is_draft,
        "isGradeReleased": quiz.is_grade_released,
    }


def _question_bodies(db: Session, quiz: Quiz, include_answers: bool) -> List[Dict[str, Any]]:
    bodies = []
    for entry in quiz.questions or []:
        question = question_variants.load_question(db, entry["question"], entry["type"])
        bodies.append({
            "type": entry["type"],
            "maxScore": entry.get("maxScore", question.max_score),
            "question": question_variants.serialize_question(question, include_answers=include_answers),
        })
    return bodies


# ---------- operations ----------

def create_quiz(
    db: Session,
    user: User,
    quiz_name: Optional[str],
    is_draft: bool,
    start_time: Any,
    end_time: Any,
    course_id: Optional[str],
    questions: Optional[List[Dict[str, Any]]],
) -> Quiz:
    require_instructor(user)
    quiz_name = (quiz_name or "").strip()
    if not quiz_name or not course_id or questions is None:
        raise ValidationError("Missing fields")

    course = load_course(db, course_id)
    require_owner(user, course)
    if course.archived:
        raise InvalidState("Course is archived")

    if is_draft:
        start, end = _draft_times(start_time, end_time)
    else:
        start, end = parse_time_range(start_time, end_time)

    if _name_taken(db, course.id, quiz_name):
        raise ValidationError("Quiz already exists")

    specs = question_variants.parse_questions(questions)

    quiz = Quiz(
        id=new_id(),
        quiz_name=quiz_name,
        is_draft=bool(is_draft),
        start_time=start,
        end_time=end,
        course_id=course.id,
        questions=[question_variants.quiz_entry(question_variants.create_question(db, spec)) for spec in specs],
        is_grade_released=False,
    )
    db.add(quiz)
    course.quizzes = [*(course.quizzes or []), quiz.id]
    invited = 0 if quiz.is_draft else _invite_course(db, user, course, quiz)
    commit(db, "Quiz creation failed", conflict="Quiz already exists")
    logger.info(f"Quiz {quiz.id} '{quiz.quiz_name}' created in course {course.id} (draft={quiz.is_draft}, invited={invited})")
    return quiz


def get_quiz(db: Session, user: User, quiz_id: str) -> Dict[str, Any]:
    """Instructor view: the quiz with full question bodies."""
    quiz, _ = owned_quiz(db, user, quiz_id)
    data = serialize_quiz(quiz)
    data["questions"] = _question_bodies(db, quiz, include_answers=True)
    return data


def get_quiz_object(db: Session, user: User, quiz_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Quiz plus denormalized questions for any member of the course.

    Students only see released quizzes that have opened, and never see the
    answers before grades are released.
    """
    now = now or utcnow()
    quiz = load_quiz(db, quiz_id)
    course = quiz_course(db, quiz)
    if course.instructor_id == user.id:
        include_answers = True
    else:
        if not is_enrolled(user, course):
            raise AccessDenied("Not enrolled in course")
        if quiz.is_draft:
            raise InvalidState("Quiz has not been released")
        if now < as_utc(quiz.start_time):
            raise InvalidState("Quiz has not started")
        include_answers = quiz.is_grade_released
    return {
        "_id": quiz.id,
        "quizName": quiz.quiz_name,
        "courseId": course.id,
        "courseCode": course.course_code,
        "isDraft": quiz.is_draft,
        "isGradeReleased": quiz.is_grade_released,
        "startTime": to_iso(quiz.start_time),
        "endTime": to_iso(quiz.end_time),
        "totalMaxScore": quiz.total_max_score(),
        "questions": _question_bodies(db, quiz, include_answers=include_answers),
    }


def get_course_quizzes(db: Session, user: User, course_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    course = load_course(db, course_id)
    instructing = course.instructor_id == user.id
    if not instructing and not is_enrolled(user, course):
        raise AccessDenied("Not a member of course")
    entry = user.course_entry(course.id) or {}
    summaries = []
    for quiz_id in course.quizzes or []:
        quiz = load_quiz(db, quiz_id)
        if quiz.is_draft and not instructing:
            continue
        summaries.append(quiz_summary(quiz, course, now, entry.get("accentColor")))
    return summaries


def basic_update_quiz(
    db: Session,
    user: User,
    quiz_id: Optional[str],
    quiz_name: Optional[str],
    start_time: Any = None,
    end_time: Any = None,
) -> Quiz:
    """Rename and/or retime a quiz whose grades are not yet released."""
    require_instructor(user)
    quiz_name = (quiz_name or "").strip()
    if not quiz_id or not quiz_name:
        raise ValidationError("Missing fields")
    quiz, course = owned_quiz(db, user, quiz_id)
    if quiz.is_grade_released:
        raise InvalidState("Quiz grades already released")

    if quiz.is_draft:
        start, end = _draft_times(start_time, end_time)
        if start is None:
            start, end = quiz.start_time, quiz.end_time
    else:
        start, end = parse_time_range(start_time, end_time)

    if _name_taken(db, course.id, quiz_name, exclude_id=quiz.id):
        raise ValidationError("Quiz name taken")

    quiz.quiz_name = quiz_name
    quiz.start_time = start
    quiz.end_time = end
    commit(db, "Quiz update failed", conflict="Quiz name taken")
    logger.info(f"Quiz {quiz.id} updated (name/time)")
    return quiz


def update_quiz(
    db: Session,
    user: User,
    quiz_id: Optional[str],
    quiz_name: Optional[str],
    questions: Optional[List[Dict[str, Any]]],
    start_time: Any = None,
    end_time: Any = None,
) -> Quiz:
    """Replace a draft's name, optional times and full question set.

    Entries naming a question already in the quiz (same kind) are updated in
    place; every other entry becomes a new question. Questions left out of the
    new set are deleted.
    """
    require_instructor(user)
    quiz_name = (quiz_name or "").strip()
    if not quiz_id or not quiz_name or questions is None:
        raise ValidationError("Missing fields")
    quiz, course = owned_quiz(db, user, quiz_id)
    _require_draft(quiz, "edited")

    start, end = _draft_times(start_time, end_time)
    if start is None:
        start, end = quiz.start_time, quiz.end_time
    if _name_taken(db, course.id, quiz_name, exclude_id=quiz.id):
        raise ValidationError("Quiz name taken")

    specs = question_variants.parse_questions(questions)
    existing = {entry["question"]: entry["type"] for entry in quiz.questions or []}
    kept = set()
    entries = []
    for spec in specs:
        qid = spec.question_id
        if qid in existing and existing[qid] == spec.variant.kind.value and qid not in kept:
            question = question_variants.load_question(db, qid, existing[qid])
            question_variants.update_question(db, question, spec)
            kept.add(qid)
        else:
            question = question_variants.create_question(db, spec)
        entries.append(question_variants.quiz_entry(question))
    for qid in existing:
        if qid not in kept:
            question_variants.delete_question(db, qid)

    quiz.quiz_name = quiz_name
    quiz.start_time = start
    quiz.end_time = end
    quiz.questions = entries
    commit(db, "Quiz update failed", conflict="Quiz name taken")
    logger.info(f"Quiz {quiz.id} updated ({len(entries)} questions, {len(kept)} kept)")
    return quiz


def add_quiz_questions(db: Session, user: User, quiz_id: Optional[str], questions: Optional[List[Dict[str, Any]]]) -> Quiz:
    require_instructor(user)
    if not quiz_id or questions is None:
        raise ValidationError("Missing fields")
    quiz, _ = owned_quiz(db, user, quiz_id)
    _require_draft(quiz, "edited")
    specs = question_variants.parse_questions(questions)
    added = [question_variants.quiz_entry(question_variants.create_question(db, spec)) for spec in specs]
    quiz.questions = [*(quiz.questions or []), *added]
    commit(db, "Adding questions failed")
    logger.info(f"Added {len(added)} question(s) to quiz {quiz.id}")
    return quiz


def update_quiz_question(
    db: Session,
    user: User,
    quiz_id: Optional[str],
    action: Optional[str],
    question: Optional[Dict[str, Any]],
) -> Quiz:
    """Edit one question of a draft in place, or remove it."""
    require_instructor(user)
    if not quiz_id or not isinstance(question, dict) or action not in ("edit", "remove"):
        raise ValidationError("Missing/invalid fields")
    question_id, kind = question.get("_id"), question.get("type")
    if not question_id or not kind or (action == "edit" and not question.get("question")):
        raise ValidationError("Missing fields in question")

    quiz, _ = owned_quiz(db, user, quiz_id)
    _require_draft(quiz, "edited")
    entries = list(quiz.questions or [])
    index = next((i for i, e in enumerate(entries) if e["question"] == question_id and e["type"] == kind), -1)
    if index == -1:
        raise ValidationError("Question not found in quiz")

    if action == "remove":
        question_variants.delete_question(db, question_id)
        del entries[index]
    else:
        spec = question_variants.parse_question(question)
        record = question_variants.load_question(db, question_id, kind)
        question_variants.update_question(db, record, spec)
        entries[index] = question_variants.quiz_entry(record)
    quiz.questions = entries
    commit(db, "Question update failed")
    logger.info(f"Question {question_id} {'removed from' if action == 'remove' else 'edited in'} quiz {quiz.id}")
    return quiz


def release_quiz(db: Session, user: User, quiz_id: str, start_time: Any, end_time: Any) -> Quiz:
    """Draft -> Released, fixing the time window and inviting the class."""
    quiz, course = owned_quiz(db, user, quiz_id)
    if not quiz.is_draft:
        raise InvalidState("Quiz is already released")
    start, end = parse_time_range(start_time, end_time)
    quiz.start_time = start
    quiz.end_time = end
    quiz.is_draft = False
    invited = _invite_course(db, user, course, quiz)
    commit(db, "Quiz release failed")
    logger.info(f"Quiz {quiz.id} released ({to_iso(start)} - {to_iso(end)}), invited {invited}")
    return quiz


def delete_draft_quiz(db: Session, user: User, quiz_id: str) -> None:
    quiz = load_quiz(db, quiz_id)
    _require_draft(quiz, "deleted")
    require_instructor(user)
    course = quiz_course(db, quiz)
    require_owner(user, course)

    for entry in quiz.questions or []:
        question_variants.delete_question(db, entry["question"])
    course.quizzes = [qid for qid in course.quizzes or [] if qid != quiz.id]
    db.delete(quiz)
    commit(db, "Quiz deletion failed")
    logger.info(f"Draft quiz {quiz_id} deleted from course {course.id}")


def release_quiz_grades(db: Session, user: User, quiz_id: str, now: Optional[datetime] = None) -> Quiz:
    """Released -> GradesReleased.

    All preconditions are checked before anything is written. The flag flip
    and one graded-result notification per enrolled student are committed
    together; delivery happens in the worker.
    """
    now = now or utcnow()
    quiz, course = owned_quiz(db, user, quiz_id)
    if quiz.is_draft:
        raise InvalidState("Quiz has not been released")
    if now <= as_utc(quiz.end_time):
        raise InvalidState("Quiz has not ended yet")
    if quiz.is_grade_released:
        raise InvalidState("Quiz grades already released")

    responses = db.scalars(select(QuizResponse).where(QuizResponse.quiz_id == quiz.id)).all()
    ungraded = [
        r.id for r in responses
        if r.status == ResponseStatus.SUBMITTED.value and r.graded != GradedState.FULLY.value
    ]
    if ungraded:
        logger.warning(f"Grade release for quiz {quiz.id} refused: {len(ungraded)} response(s) not fully graded")
        raise IncompleteGrading("Not all submitted responses are fully graded", error={"ungraded": ungraded})

    max_score = quiz.total_max_score()
    by_student = {r.student_id: r for r in responses}
    student_ids = course.student_ids()
    students = db.scalars(select(User).where(User.id.in_(student_ids))).all() if student_ids else []
    for student in students:
        response = by_student.get(student.id)
        score = response.total_score() if response is not None else 0
        send_graded_quiz_email(db, course, student, quiz, score, max_score)

    quiz.is_grade_released = True
    commit(db, "Grade release failed")
    logger.info(f"Grades released for quiz {quiz.id}: {len(students)} student(s) notified")
    return quiz


def get_my_quizzes(db: Session, user: User, status: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Quizzes across all of the caller's courses in one listing status."""
    if status not in QUIZ_LISTINGS:
        raise ValidationError(f"Invalid quiz status {status}")
    if status == "draft" and not user.is_instructor:
        return []
    now = now or utcnow()

    response_status: Dict[str, str] = {}
    if user.is_student:
        for quiz_id, state in db.execute(
            select(QuizResponse.quiz_id, QuizResponse.status).where(QuizResponse.student_id == user.id)
        ).all():
            response_status[quiz_id] = state

    found = []
    for entry in user.courses or []:
        course = load_course(db, entry.get("courseId"))
        for quiz_id in course.quizzes or []:
            quiz = load_quiz(db, quiz_id)
            if quiz.is_draft and not user.is_instructor:
                continue
            if quiz_status(quiz, now) != status:
                continue
            summary = quiz_summary(quiz, course, now, entry.get("accentColor"))
            if user.is_student:
                summary["responseStatus"] = response_status.get(quiz.id, "unstarted")
            found.append(summary)
    return found
