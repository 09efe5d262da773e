from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from conftest import clo, mcq, oeq
from iquiz.models.orm import Notification, QuizResponse, User


def _window(start_hours=-1, end_hours=1):
    now = datetime.now(timezone.utc)
    return (now + timedelta(hours=start_hours)).isoformat(), (now + timedelta(hours=end_hours)).isoformat()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200 and r.json()["status"] == "ok"


def test_register_verify_login_me(client, db, dispatcher):
    r = client.post("/api/users/register", json={"email": "Prof@Example.com", "password": "secret-pass", "type": "instructor"})
    assert r.status_code == 201 and r.json()["payload"]["email"] == "prof@example.com"
    assert r.json()["payload"]["verified"] is False
    assert len(dispatcher.dispatched) == 1
    r = client.post("/api/users/register", json={"email": "prof@example.com", "password": "secret-pass", "type": "instructor"})
    assert r.status_code == 400 and r.json()["message"] == "User already exists"

    r = client.post("/api/users/login", json={"email": "prof@example.com", "password": "secret-pass"})
    assert r.status_code == 400
    assert r.json()["message"] == "Please verify your account first before you log in!"

    user = db.scalar(select(User).where(User.email == "prof@example.com"))
    r = client.post(f"/api/users/verify-email/{user.id}/wrong-code")
    assert r.status_code == 400 and r.json()["message"] == "Invalid verification code"
    r = client.post(f"/api/users/verify-email/{user.id}/{user.email_verification_code}")
    assert r.status_code == 200 and r.json()["payload"]["verified"] is True
    r = client.post(f"/api/users/verify-email/{user.id}/anything")
    assert r.json()["message"] == "User is already verified"

    r = client.post("/api/users/login", json={"email": "prof@example.com", "password": "wrong"})
    assert r.status_code == 400 and r.json()["success"] is False
    r = client.post("/api/users/login", json={"email": "prof@example.com", "password": "secret-pass"})
    token = r.json()["payload"]["access_token"]

    r = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200 and r.json()["payload"]["type"] == "instructor"


def test_password_reset(client, db, dispatcher, student):
    r = client.post("/api/users/reset-password-code", json={"email": "nobody@example.com"})
    assert r.status_code == 400 and r.json()["message"] == "Invalid email"

    r = client.post("/api/users/reset-password-code", json={"email": student.email})
    assert r.status_code == 200
    assert len(dispatcher.dispatched) == 1
    db.expire_all()
    code = db.get(User, student.id).password_reset_code

    r = client.post("/api/users/reset-password", json={"email": student.email, "code": "bad", "password": "new-password"})
    assert r.status_code == 400
    r = client.post("/api/users/reset-password", json={"email": student.email, "code": code, "password": "new-password"})
    assert r.status_code == 200

    r = client.post("/api/users/login", json={"email": student.email, "password": "password123"})
    assert r.status_code == 400
    r = client.post("/api/users/login", json={"email": student.email, "password": "new-password"})
    assert r.status_code == 200
    r = client.post("/api/users/reset-password", json={"email": student.email, "code": code, "password": "other-password"})
    assert r.status_code == 400


def test_requests_need_a_valid_token(client):
    r = client.get("/api/quizzes/active")
    assert r.status_code == 401
    assert r.json() == {"success": False, "message": "Not authorized"}
    r = client.get("/api/quizzes/active", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_invalid_body_uses_envelope(client, instructor, auth):
    r = client.post("/api/quizzes", headers=auth(instructor), json={"quizName": ["not", "a", "string"]})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False and body["message"] == "Missing/invalid fields"


def test_student_cannot_create_quiz(client, student, course, auth):
    start, end = _window()
    r = client.post("/api/quizzes", headers=auth(student), json={
        "quizName": "Q", "startTime": start, "endTime": end, "course": course.id, "questions": [],
    })
    assert r.status_code == 403
    assert r.json()["message"] == "Invalid user type"


def test_course_creation_and_enrollment(client, instructor, make_user, auth):
    r = client.post("/api/courses", headers=auth(instructor), json={
        "courseCode": "MATH200", "courseSemester": "F30", "courseName": "Linear Algebra", "sessions": 2,
    })
    assert r.status_code == 201
    course_id = r.json()["payload"]["_id"]

    learner = make_user("student")
    r = client.post(f"/api/courses/{course_id}/enroll", headers=auth(learner), json={"session": 1})
    assert r.status_code == 200
    r = client.post(f"/api/courses/{course_id}/enroll", headers=auth(learner), json={"session": 1})
    assert r.status_code == 400
    r = client.post(f"/api/courses/{course_id}/enroll", headers=auth(instructor))
    assert r.status_code == 403

    r = client.get(f"/api/courses/{course_id}", headers=auth(instructor))
    assert r.json()["payload"]["sessions"][1]["students"] == [learner.id]


def test_full_quiz_lifecycle(client, db, dispatcher, instructor, student, course, auth):
    prof, learner = auth(instructor), auth(student)

    # draft, then release
    r = client.post("/api/quizzes", headers=prof, json={
        "quizName": "Week 1", "isDraft": True, "course": course.id, "questions": [mcq(), clo(), oeq()],
    })
    assert r.status_code == 201, r.json()
    quiz = r.json()["payload"]
    assert quiz["isDraft"] and quiz["totalMaxScore"] == 7
    assert dispatcher.dispatched == []

    r = client.get("/api/quizzes/draft", headers=prof)
    assert [q["quizName"] for q in r.json()["payload"]] == ["Week 1"]

    start, end = _window()
    r = client.post(f"/api/quizzes/{quiz['_id']}/release", headers=prof, json={"startTime": start, "endTime": end})
    assert r.status_code == 200 and r.json()["payload"]["isDraft"] is False
    assert len(dispatcher.dispatched) == 1

    # student writes and submits
    r = client.get(f"/api/quizzes/{quiz['_id']}/questions", headers=learner)
    questions = r.json()["payload"]["questions"]
    assert "answers" not in questions[0]["question"]
    mcq_id, clo_id, oeq_id = [q["question"]["_id"] for q in questions]

    r = client.post(f"/api/quiz-responses/{quiz['_id']}", headers=learner)
    assert r.status_code == 201
    r = client.post(f"/api/quiz-responses/{quiz['_id']}", headers=learner)
    assert r.status_code == 200
    assert r.json()["message"] == "Quiz response already exists"
    r = client.patch(f"/api/quiz-responses/{quiz['_id']}", headers=learner, json={
        "questionResponses": [{"question": mcq_id, "response": ["b"]}, {"question": clo_id, "response": ["Paris"]}],
    })
    assert r.status_code == 200
    r = client.post(f"/api/quiz-responses/{quiz['_id']}/submit", headers=learner, json={
        "questionResponses": [{"question": oeq_id, "response": ["A function calling itself"]}],
    })
    assert r.status_code == 200 and r.json()["payload"]["status"] == "submitted"
    assert len(db.scalars(select(QuizResponse)).all()) == 1

    r = client.get("/api/quizzes/active", headers=learner)
    assert r.json()["payload"][0]["responseStatus"] == "submitted"

    # grading
    r = client.get(f"/api/quiz-responses/quiz/{quiz['_id']}/all", headers=prof)
    response_id = r.json()["payload"][0]["_id"]
    r = client.patch(f"/api/quiz-responses/grade/{response_id}", headers=prof, json={
        "grades": [{"question": mcq_id, "score": 1}, {"question": clo_id, "score": 1}, {"question": oeq_id, "score": 4}],
    })
    assert r.json()["payload"]["graded"] == "fully"

    # grades cannot be released while the quiz is open
    r = client.patch(f"/api/quizzes/{quiz['_id']}/grades-release", headers=prof)
    assert r.status_code == 400 and r.json()["message"] == "Quiz has not ended yet"

    past_start, past_end = _window(-3, -2)
    r = client.patch("/api/quizzes", headers=prof, json={
        "quizId": quiz["_id"], "newQuizName": "Week 1", "newStartTime": past_start, "newEndTime": past_end,
    })
    assert r.status_code == 200

    r = client.patch(f"/api/quizzes/{quiz['_id']}/grades-release", headers=prof)
    assert r.status_code == 200 and r.json()["payload"]["isGradeReleased"] is True
    assert len(dispatcher.dispatched) == 2

    r = client.get(f"/api/quiz-responses/{quiz['_id']}", headers=learner)
    assert r.json()["payload"]["totalScore"] == 6

    kinds = sorted(n.kind for n in db.scalars(select(Notification)).all())
    assert kinds == ["quiz_graded", "quiz_invitation"]

    r = client.delete(f"/api/quizzes/{quiz['_id']}", headers=prof)
    assert r.status_code == 400 and r.json()["message"] == "Only draft quizzes can be deleted"


def test_incomplete_grading_reports_ungraded(client, instructor, student, course, auth):
    prof, learner = auth(instructor), auth(student)
    start, end = _window()
    r = client.post("/api/quizzes", headers=prof, json={
        "quizName": "Pop quiz", "startTime": start, "endTime": end, "course": course.id, "questions": [oeq()],
    })
    quiz_id = r.json()["payload"]["_id"]
    client.post(f"/api/quiz-responses/{quiz_id}", headers=learner)
    client.post(f"/api/quiz-responses/{quiz_id}/submit", headers=learner)

    past_start, past_end = _window(-3, -2)
    client.patch("/api/quizzes", headers=prof, json={
        "quizId": quiz_id, "newQuizName": "Pop quiz", "newStartTime": past_start, "newEndTime": past_end,
    })
    r = client.patch(f"/api/quizzes/{quiz_id}/grades-release", headers=prof)
    assert r.status_code == 400
    assert len(r.json()["error"]["ungraded"]) == 1


def test_archive_and_drop_routes(client, instructor, student, course, auth):
    r = client.patch(f"/api/courses/{course.id}/archive", headers=auth(instructor))
    assert r.status_code == 200 and r.json()["payload"]["archived"] is True
    r = client.patch(f"/api/courses/{course.id}/archive", headers=auth(student))
    assert r.status_code == 403
    r = client.patch(f"/api/courses/{course.id}/unarchive", headers=auth(instructor))
    assert r.json()["payload"]["archived"] is False

    r = client.post(f"/api/courses/{course.id}/drop", headers=auth(student))
    assert r.status_code == 200
    r = client.get("/api/users/me", headers=auth(student))
    assert r.json()["payload"]["courses"] == []
    r = client.get(f"/api/courses/{course.id}", headers=auth(instructor))
    assert r.json()["payload"]["sessions"] == [{"students": []}]
