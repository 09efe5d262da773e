"""
Student quiz responses: Unstarted -> Writing -> Submitted, then graded per
question by the course instructor.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from iquiz.core.database import commit
from iquiz.core.errors import AccessDenied, InvalidState, NotFound, ValidationError
from iquiz.core.timeutil import as_utc, to_iso, utcnow
from iquiz.models.orm import UNGRADED, GradedState, Quiz, QuizResponse, ResponseStatus, User, new_id
from iquiz.services.quiz_lifecycle import is_enrolled, load_quiz, owned_quiz, quiz_course

logger = logging.getLogger(__name__)


def grading_state(question_responses: List[Dict[str, Any]]) -> str:
    scores = [qr.get("score", UNGRADED) for qr in question_responses]
    graded = [s for s in scores if s != UNGRADED]
    if not graded:
        return GradedState.NONE.value if scores else GradedState.FULLY.value
    if len(graded) == len(scores):
        return GradedState.FULLY.value
    return GradedState.PARTIALLY.value


def serialize_response(response: QuizResponse, reveal_scores: bool = True) -> Dict[str, Any]:
    question_responses = []
    for qr in response.question_responses or []:
        question_responses.append({
            "question": qr["question"],
            "response": list(qr.get("response", [])),
            "score": qr.get("score", UNGRADED) if reveal_scores else UNGRADED,
        })
    data = {
        "_id": response.id,
        "quiz": response.quiz_id,
        "student": response.student_id,
        "status": response.status,
        "graded": response.graded if reveal_scores else GradedState.NONE.value,
        "questionResponses": question_responses,
        "submittedAt": to_iso(response.submitted_at),
    }
    if reveal_scores:
        data["totalScore"] = response.total_score()
    return data


def _student_quiz(db: Session, user: User, quiz_id: str) -> Quiz:
    if not user.is_student:
        raise AccessDenied("Invalid user type")
    quiz = load_quiz(db, quiz_id)
    course = quiz_course(db, quiz)
    if not is_enrolled(user, course):
        raise AccessDenied("Student not enrolled in course")
    if quiz.is_draft:
        raise InvalidState("Quiz has not been released")
    return quiz


def _require_open(quiz: Quiz, now: datetime) -> None:
    if now < as_utc(quiz.start_time):
        raise InvalidState("Quiz has not started")
    if now > as_utc(quiz.end_time):
        raise InvalidState("Quiz has ended")


def _find_response(db: Session, quiz_id: str, student_id: str) -> Optional[QuizResponse]:
    return db.scalar(
        select(QuizResponse).where(QuizResponse.quiz_id == quiz_id, QuizResponse.student_id == student_id)
    )


def _apply_answers(response: QuizResponse, answers: Optional[List[Dict[str, Any]]]) -> None:
    """Overwrite the response arrays of the given questions wholesale."""
    if not answers:
        return
    entries = [dict(qr) for qr in response.question_responses or []]
    index = {qr["question"]: i for i, qr in enumerate(entries)}
    for answer in answers:
        if not isinstance(answer, dict):
            raise ValidationError("Invalid question response")
        question_id = answer.get("question")
        if question_id not in index:
            raise ValidationError("Question not found in quiz", error=question_id)
        values = answer.get("response", [])
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ValidationError("Response must be a list of strings", error=question_id)
        entries[index[question_id]]["response"] = list(values)
    response.question_responses = entries


def create_quiz_response(
    db: Session,
    user: User,
    quiz_id: str,
    question_responses: Optional[List[Dict[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> Tuple[QuizResponse, bool]:
    """Start a quiz. Returns ``(response, created)``; an existing response is
    returned unchanged when the student already started."""
    now = now or utcnow()
    quiz = _student_quiz(db, user, quiz_id)
    existing = _find_response(db, quiz.id, user.id)
    if existing is not None:
        return existing, False
    _require_open(quiz, now)

    response = QuizResponse(
        id=new_id(),
        quiz_id=quiz.id,
        student_id=user.id,
        status=ResponseStatus.WRITING.value,
        graded=GradedState.NONE.value,
        question_responses=[
            {"question": entry["question"], "response": [], "score": UNGRADED}
            for entry in quiz.questions or []
        ],
    )
    _apply_answers(response, question_responses)
    db.add(response)
    try:
        commit(db, "Quiz response creation failed", conflict="Quiz response already exists")
    except ValidationError:
        # Lost a race with a concurrent start; the other request's document wins.
        existing = _find_response(db, quiz.id, user.id)
        if existing is None:
            raise
        return existing, False
    logger.info(f"Student {user.id} started quiz {quiz.id}")
    return response, True


def get_quiz_response(db: Session, user: User, quiz_id: str) -> Dict[str, Any]:
    quiz = _student_quiz(db, user, quiz_id)
    response = _find_response(db, quiz.id, user.id)
    if response is None:
        raise NotFound("No response found for this quiz")
    return serialize_response(response, reveal_scores=quiz.is_grade_released)


def _writing_response(db: Session, user: User, quiz_id: str, now: datetime) -> QuizResponse:
    quiz = _student_quiz(db, user, quiz_id)
    response = _find_response(db, quiz.id, user.id)
    if response is None:
        raise NotFound("No response found for this quiz")
    if response.status != ResponseStatus.WRITING.value:
        raise InvalidState("Quiz response already submitted")
    _require_open(quiz, now)
    return response


def save_quiz_response(
    db: Session,
    user: User,
    quiz_id: str,
    question_responses: Optional[List[Dict[str, Any]]],
    now: Optional[datetime] = None,
) -> QuizResponse:
    if question_responses is None:
        raise ValidationError("Missing fields")
    response = _writing_response(db, user, quiz_id, now or utcnow())
    _apply_answers(response, question_responses)
    commit(db, "Saving quiz response failed")
    return response


def submit_quiz_response(
    db: Session,
    user: User,
    quiz_id: str,
    question_responses: Optional[List[Dict[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> QuizResponse:
    now = now or utcnow()
    response = _writing_response(db, user, quiz_id, now)
    _apply_answers(response, question_responses)
    response.status = ResponseStatus.SUBMITTED.value
    response.submitted_at = now
    response.graded = grading_state(response.question_responses or [])
    commit(db, "Submitting quiz response failed")
    logger.info(f"Student {user.id} submitted quiz {response.quiz_id}")
    return response


def get_quiz_responses_for_quiz(db: Session, user: User, quiz_id: str) -> List[QuizResponse]:
    quiz, _ = owned_quiz(db, user, quiz_id)
    return db.scalars(
        select(QuizResponse).where(QuizResponse.quiz_id == quiz.id).order_by(QuizResponse.created_at)
    ).all()


def grade_quiz_response(
    db: Session,
    user: User,
    response_id: str,
    grades: Optional[List[Dict[str, Any]]],
) -> QuizResponse:
    """Assign per-question scores; -1 clears a score."""
    if not isinstance(grades, list) or not grades:
        raise ValidationError("Missing fields")
    response = db.get(QuizResponse, response_id)
    if response is None:
        raise NotFound("Invalid quiz response id", error=response_id)
    quiz, _ = owned_quiz(db, user, response.quiz_id)
    if response.status != ResponseStatus.SUBMITTED.value:
        raise InvalidState("Quiz response has not been submitted")
    if quiz.is_grade_released:
        raise InvalidState("Quiz grades already released")

    max_scores = {entry["question"]: int(entry.get("maxScore", 1)) for entry in quiz.questions or []}
    entries = [dict(qr) for qr in response.question_responses or []]
    index = {qr["question"]: i for i, qr in enumerate(entries)}
    for grade in grades:
        if not isinstance(grade, dict):
            raise ValidationError("Invalid grade")
        question_id, score = grade.get("question"), grade.get("score")
        if question_id not in index or question_id not in max_scores:
            raise ValidationError("Question not found in quiz response", error=question_id)
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValidationError("Score must be an integer", error=question_id)
        if score != UNGRADED and not 0 <= score <= max_scores[question_id]:
            raise ValidationError(f"Score must be between 0 and {max_scores[question_id]}", error=question_id)
        entries[index[question_id]]["score"] = score

    response.question_responses = entries
    response.graded = grading_state(entries)
    commit(db, "Grading quiz response failed")
    logger.info(f"Quiz response {response.id} graded ({response.graded})")
    return response
