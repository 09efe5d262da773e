import pytest

from conftest import clo, mcq, msq, oeq
from iquiz.core.errors import NotFound, ValidationError
from iquiz.models.orm import MCQ, OEQ, Question
from iquiz.services import questions


def test_parse_each_kind():
    specs = questions.parse_questions([mcq(), msq(), clo(), oeq()])
    assert [s.variant.kind.value for s in specs] == ["MCQ", "MSQ", "CLO", "OEQ"]
    assert specs[3].body.maxScore == 5
    assert specs[0].body.maxScore == 1


def test_unknown_kind_rejected():
    with pytest.raises(ValidationError) as exc:
        questions.parse_question({"type": "TF", "question": {"prompt": "?"}})
    assert exc.value.message == "Invalid question type TF"


@pytest.mark.parametrize("answers", [[], ["a", "b"]])
def test_mcq_needs_exactly_one_answer(answers):
    entry = mcq()
    entry["question"]["answers"] = answers
    with pytest.raises(ValidationError) as exc:
        questions.parse_question(entry)
    assert exc.value.message == "Invalid MCQ question"


def test_answers_must_reference_choices():
    entry = msq()
    entry["question"]["answers"] = ["z"]
    with pytest.raises(ValidationError):
        questions.parse_question(entry)


def test_missing_body_and_bad_score():
    with pytest.raises(ValidationError):
        questions.parse_question({"type": "CLO"})
    with pytest.raises(ValidationError):
        questions.parse_question(oeq(max_score=0))
    with pytest.raises(ValidationError):
        questions.parse_questions({"type": "CLO"})


def test_create_update_and_serialize(db):
    question = questions.create_question(db, questions.parse_question(mcq()))
    db.commit()
    loaded = questions.load_question(db, question.id, "MCQ")
    assert isinstance(loaded, MCQ)
    assert questions.quiz_entry(loaded) == {"question": question.id, "type": "MCQ", "maxScore": 1}

    hidden = questions.serialize_question(loaded, include_answers=False)
    assert "answers" not in hidden and len(hidden["choices"]) == 2
    assert questions.serialize_question(loaded)["answers"] == ["b"]

    questions.update_question(db, loaded, questions.parse_question(mcq(prompt="3 + 1?", max_score=2)))
    db.commit()
    assert db.get(Question, question.id).prompt == "3 + 1?"
    assert db.get(Question, question.id).max_score == 2

    with pytest.raises(ValidationError):
        questions.update_question(db, loaded, questions.parse_question(clo()))


def test_oeq_serializes_criteria(db):
    question = questions.create_question(db, questions.parse_question(oeq()))
    db.commit()
    assert isinstance(db.get(Question, question.id), OEQ)
    data = questions.serialize_question(question)
    assert data["criteria"] == "Mentions a base case"
    assert "answers" not in data and "choices" not in data


def test_load_wrong_kind_or_missing(db):
    question = questions.create_question(db, questions.parse_question(clo()))
    db.commit()
    with pytest.raises(NotFound):
        questions.load_question(db, question.id, "MCQ")
    with pytest.raises(NotFound):
        questions.load_question(db, "missing")
    questions.delete_question(db, question.id)
    db.commit()
    assert db.get(Question, question.id) is None


def test_msq_needs_an_answer():
    entry = msq()
    entry["question"]["answers"] = []
    with pytest.raises(ValidationError) as exc:
        questions.parse_question(entry)
    assert exc.value.message == "Invalid MSQ question"
