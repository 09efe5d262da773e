"""
Question variants: validation, persistence and serialization.

A quiz references its questions as ``{"question": id, "type": kind,
"maxScore": n}`` entries. The four kinds share one table and are dispatched
through ``VARIANTS``; nothing outside this module branches on the kind.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError, conint, constr, model_validator
from sqlalchemy.orm import Session

from iquiz.core.errors import NotFound, ValidationError
from iquiz.models.orm import CLO, MCQ, MSQ, OEQ, Question, QuestionKind, new_id

logger = logging.getLogger(__name__)

NonEmpty = constr(strip_whitespace=True, min_length=1)


class Choice(BaseModel):
    id: NonEmpty
    content: NonEmpty


class QuestionBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: NonEmpty
    maxScore: conint(ge=1) = 1


class ChoiceQuestionBody(QuestionBody):
    choices: List[Choice] = Field(min_length=1)
    answers: List[str] = []

    @model_validator(mode="after")
    def answers_name_choices(self):
        ids = [c.id for c in self.choices]
        if len(set(ids)) != len(ids):
            raise ValueError("choice ids must be unique")
        if len(set(self.answers)) != len(self.answers):
            raise ValueError("answers must not repeat")
        unknown = [a for a in self.answers if a not in ids]
        if unknown:
            raise ValueError(f"answers reference unknown choices: {', '.join(unknown)}")
        return self


class MCQBody(ChoiceQuestionBody):
    @model_validator(mode="after")
    def exactly_one_answer(self):
        if len(self.answers) != 1:
            raise ValueError("MCQ questions need exactly one answer")
        return self


class MSQBody(ChoiceQuestionBody):
    @model_validator(mode="after")
    def at_least_one_answer(self):
        if not self.answers:
            raise ValueError("MSQ questions need at least one answer")
        return self


class CLOBody(QuestionBody):
    answers: List[NonEmpty] = []


class OEQBody(QuestionBody):
    criteria: Optional[str] = None


@dataclass(frozen=True)
class QuestionVariant:
    kind: QuestionKind
    model: Type[Question]
    schema: Type[QuestionBody]
    has_choices: bool = False


VARIANTS: Dict[str, QuestionVariant] = {
    v.kind.value: v
    for v in (
        QuestionVariant(QuestionKind.MCQ, MCQ, MCQBody, has_choices=True),
        QuestionVariant(QuestionKind.MSQ, MSQ, MSQBody, has_choices=True),
        QuestionVariant(QuestionKind.CLO, CLO, CLOBody),
        QuestionVariant(QuestionKind.OEQ, OEQ, OEQBody),
    )
}


@dataclass
class QuestionSpec:
    """A validated question entry, optionally naming an existing question."""

    variant: QuestionVariant
    body: QuestionBody
    question_id: Optional[str] = None


def variant_for(kind: Any) -> QuestionVariant:
    variant = VARIANTS.get(kind) if isinstance(kind, str) else None
    if variant is None:
        raise ValidationError(f"Invalid question type {kind}")
    return variant


def parse_question(entry: Any) -> QuestionSpec:
    """Validate one ``{"type": kind, "question": {...}, "maxScore"?: n}`` entry."""
    if not isinstance(entry, dict):
        raise ValidationError("Invalid question entry")
    variant = variant_for(entry.get("type"))
    raw = entry.get("question")
    if not isinstance(raw, dict):
        raise ValidationError(f"Missing fields in {variant.kind.value} question")
    raw = dict(raw)
    if entry.get("maxScore") is not None:
        raw["maxScore"] = entry["maxScore"]
    try:
        body = variant.schema.model_validate(raw)
    except SchemaError as exc:
        raise ValidationError(
            f"Invalid {variant.kind.value} question",
            error=exc.errors(include_url=False, include_context=False),
        ) from exc
    question_id = raw.get("_id") or raw.get("id") or entry.get("_id")
    return QuestionSpec(variant=variant, body=body, question_id=question_id)


def parse_questions(entries: Any) -> List[QuestionSpec]:
    if not isinstance(entries, list):
        raise ValidationError("Questions must be a list")
    return [parse_question(entry) for entry in entries]


def _apply(question: Question, spec: QuestionSpec) -> None:
    body = spec.body
    question.prompt = body.prompt
    question.max_score = body.maxScore
    if spec.variant.has_choices:
        question.choices = [c.model_dump() for c in body.choices]
        question.answers = list(body.answers)
    elif spec.variant.kind is QuestionKind.CLO:
        question.choices = None
        question.answers = list(body.answers)
    else:
        question.choices = None
        question.answers = None
        question.criteria = body.criteria


def create_question(db: Session, spec: QuestionSpec) -> Question:
    question = spec.variant.model(id=new_id())
    _apply(question, spec)
    db.add(question)
    return question


def load_question(db: Session, question_id: str, kind: Optional[str] = None) -> Question:
    question = db.get(Question, question_id)
    if question is None or (kind is not None and question.kind != kind):
        raise NotFound("Invalid question id", error=question_id)
    return question


def update_question(db: Session, question: Question, spec: QuestionSpec) -> Question:
    if question.kind != spec.variant.kind.value:
        raise ValidationError("Question type cannot change", error=question.id)
    _apply(question, spec)
    return question


def delete_question(db: Session, question_id: str) -> None:
    question = db.get(Question, question_id)
    if question is not None:
        db.delete(question)


def quiz_entry(question: Question) -> Dict[str, Any]:
    return {"question": question.id, "type": question.kind, "maxScore": question.max_score}


def serialize_question(question: Question, include_answers: bool = True) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "_id": question.id,
        "type": question.kind,
        "prompt": question.prompt,
        "maxScore": question.max_score,
    }
    variant = VARIANTS[question.kind]
    if variant.has_choices:
        data["choices"] = list(question.choices or [])
    if include_answers:
        if variant.kind is QuestionKind.OEQ:
            data["criteria"] = question.criteria
        else:
            data["answers"] = list(question.answers or [])
    return data
