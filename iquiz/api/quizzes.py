from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from iquiz.api.deps import envelope, get_dispatcher
from iquiz.core.auth import get_current_user
from iquiz.core.database import get_db
from iquiz.models.orm import User
from iquiz.services import quiz_lifecycle as lifecycle
from iquiz.services.notifications import NotificationDispatcher, relay_pending

router = APIRouter()

TimeValue = Optional[Union[int, float, str]]


class QuizCreate(BaseModel):
    quizName: Optional[str] = None
    isDraft: bool = False
    startTime: TimeValue = None
    endTime: TimeValue = None
    course: Optional[str] = None
    questions: Optional[List[Dict[str, Any]]] = None


class QuizBasicUpdate(BaseModel):
    quizId: Optional[str] = None
    newQuizName: Optional[str] = None
    newStartTime: TimeValue = None
    newEndTime: TimeValue = None


class QuizUpdate(BaseModel):
    quizId: Optional[str] = None
    quizName: Optional[str] = None
    startTime: TimeValue = None
    endTime: TimeValue = None
    questions: Optional[List[Dict[str, Any]]] = None


class QuizQuestionsAdd(BaseModel):
    quizId: Optional[str] = None
    questions: Optional[List[Dict[str, Any]]] = None


class QuizQuestionUpdate(BaseModel):
    quizId: Optional[str] = None
    action: Optional[str] = None
    question: Optional[Dict[str, Any]] = None


class QuizRelease(BaseModel):
    startTime: TimeValue = None
    endTime: TimeValue = None


@router.post("", status_code=201)
def create_quiz(payload: QuizCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db),
                dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    quiz = lifecycle.create_quiz(
        db, user, payload.quizName, payload.isDraft, payload.startTime, payload.endTime, payload.course, payload.questions
    )
    relay_pending(db, dispatcher)
    return envelope(True, "Quiz created successfully", lifecycle.serialize_quiz(quiz))


@router.patch("")
def basic_update_quiz(payload: QuizBasicUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    quiz = lifecycle.basic_update_quiz(db, user, payload.quizId, payload.newQuizName, payload.newStartTime, payload.newEndTime)
    return envelope(True, "Quiz updated successfully", lifecycle.serialize_quiz(quiz))


@router.post("/update")
def update_quiz(payload: QuizUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    quiz = lifecycle.update_quiz(
        db, user, payload.quizId, payload.quizName, payload.questions, payload.startTime, payload.endTime
    )
    return envelope(True, "Quiz updated successfully", lifecycle.serialize_quiz(quiz))


@router.post("/question")
def add_quiz_questions(payload: QuizQuestionsAdd, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    quiz = lifecycle.add_quiz_questions(db, user, payload.quizId, payload.questions)
    return envelope(True, "Questions added successfully", lifecycle.serialize_quiz(quiz))


@router.patch("/question")
def update_quiz_question(payload: QuizQuestionUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    quiz = lifecycle.update_quiz_question(db, user, payload.quizId, payload.action, payload.question)
    message = "Question removed successfully" if payload.action == "remove" else "Question edited successfully"
    return envelope(True, message, lifecycle.serialize_quiz(quiz))


def _listing(status: str):
    def list_my_quizzes(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        quizzes = lifecycle.get_my_quizzes(db, user, status)
        return envelope(True, f"{status.capitalize()} quizzes found", quizzes)
    list_my_quizzes.__name__ = f"list_{status}_quizzes"
    return list_my_quizzes


# Registered before /{quiz_id} so the listing names never reach the id route.
for _status in lifecycle.QUIZ_LISTINGS:
    router.add_api_route(f"/{_status}", _listing(_status), methods=["GET"])


@router.get("/course/{course_id}")
def get_course_quizzes(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope(True, "Quizzes found", lifecycle.get_course_quizzes(db, user, course_id))


@router.get("/{quiz_id}")
def get_quiz(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope(True, "Quiz found", lifecycle.get_quiz(db, user, quiz_id))


@router.get("/{quiz_id}/questions")
def get_quiz_object(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope(True, "Quiz found", lifecycle.get_quiz_object(db, user, quiz_id))


@router.post("/{quiz_id}/release")
def release_quiz(quiz_id: str, payload: QuizRelease, user: User = Depends(get_current_user), db: Session = Depends(get_db),
                 dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    quiz = lifecycle.release_quiz(db, user, quiz_id, payload.startTime, payload.endTime)
    relay_pending(db, dispatcher)
    return envelope(True, "Quiz released successfully", lifecycle.serialize_quiz(quiz))


@router.patch("/{quiz_id}/grades-release")
def release_quiz_grades(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db),
                        dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    quiz = lifecycle.release_quiz_grades(db, user, quiz_id)
    relay_pending(db, dispatcher)
    return envelope(True, "Quiz grades released successfully", lifecycle.serialize_quiz(quiz))


@router.delete("/{quiz_id}")
def delete_draft_quiz(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    lifecycle.delete_draft_quiz(db, user, quiz_id)
    return envelope(True, "Quiz deleted successfully")
