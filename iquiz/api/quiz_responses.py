from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from iquiz.api.deps import envelope
from iquiz.core.auth import get_current_user
from iquiz.core.database import get_db
from iquiz.models.orm import User
from iquiz.services import quiz_responses as responses

router = APIRouter()


class QuestionResponsesIn(BaseModel):
    questionResponses: Optional[List[Dict[str, Any]]] = None


class GradesIn(BaseModel):
    grades: Optional[List[Dict[str, Any]]] = None


@router.get("/quiz/{quiz_id}/all")
def get_quiz_responses_for_quiz(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    found = responses.get_quiz_responses_for_quiz(db, user, quiz_id)
    return envelope(True, "Quiz responses found", [responses.serialize_response(r) for r in found])


@router.patch("/grade/{response_id}")
def grade_quiz_response(response_id: str, payload: GradesIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    response = responses.grade_quiz_response(db, user, response_id, payload.grades)
    return envelope(True, "Quiz response graded", responses.serialize_response(response))


@router.post("/{quiz_id}", status_code=201)
def create_quiz_response(quiz_id: str, http_response: Response, payload: Optional[QuestionResponsesIn] = None,
                         user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    answers = payload.questionResponses if payload else None
    response, created = responses.create_quiz_response(db, user, quiz_id, answers)
    if not created:
        http_response.status_code = status.HTTP_200_OK
    message = "Quiz response created" if created else "Quiz response already exists"
    return envelope(True, message, responses.serialize_response(response, reveal_scores=False))


@router.get("/{quiz_id}")
def get_quiz_response(quiz_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return envelope(True, "Quiz response found", responses.get_quiz_response(db, user, quiz_id))


@router.patch("/{quiz_id}")
def save_quiz_response(quiz_id: str, payload: QuestionResponsesIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    response = responses.save_quiz_response(db, user, quiz_id, payload.questionResponses)
    return envelope(True, "Quiz response saved", responses.serialize_response(response, reveal_scores=False))


@router.post("/{quiz_id}/submit")
def submit_quiz_response(quiz_id: str, payload: Optional[QuestionResponsesIn] = None,
                         user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    answers = payload.questionResponses if payload else None
    response = responses.submit_quiz_response(db, user, quiz_id, answers)
    return envelope(True, "Quiz response submitted", responses.serialize_response(response, reveal_scores=False))
