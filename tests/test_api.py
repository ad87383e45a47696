import json

import pytest

from conftest import auth
from assessgrade.jobs.regrade_job import regrade_assessment_job

INS = auth("ins-1", "instructor")
STU = auth("stu-1", "student")

GENERATED = [
    {"question_type": "multiple_choice", "question_text": "Which organelle makes ATP?",
     "options": ["Nucleus", "Mitochondria", "Ribosome", "Golgi"], "correct_answer": "Mitochondria"},
    {"question_type": "short_answer", "question_text": "What do mitochondria do?",
     "correct_answer": {"grading_type": "keyword_match", "required_keywords": ["mitochondria", "energy"],
                        "min_required_match": 2}},
    {"question_type": "essay", "question_text": "Discuss cell respiration.", "correct_answer": None},
]


def create_assessment(client):
    r = client.post("/v1/assessments", headers=INS, json={
        "title": "Cell biology",
        "prompt": "Organelles",
        "blocks": [
            {"question_type": "multiple_choice", "question_count": 1, "num_options": 4, "positive_marks": 2, "negative_marks": 1},
            {"question_type": "short_answer", "question_count": 1, "positive_marks": 5, "duration_per_question": 90},
            {"question_type": "essay", "question_count": 1, "positive_marks": 10, "duration_per_question": 600},
        ],
    })
    assert r.status_code == 201, r.text
    return r.json()["assessment_id"]


def start(client, pool):
    aid = create_assessment(client)
    assert client.post(f"/v1/assessments/{aid}/enrollments", headers=INS, json={"student_id": "stu-1"}).status_code == 201
    pool.script.append(json.dumps(GENERATED))
    r = client.post(f"/v1/assessments/{aid}/attempts", headers=STU, json={"language": "en"})
    assert r.status_code == 201, r.text
    return aid, r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200 and r.json()["status"] == "ok"


def test_mock_login(client):
    r = client.post("/v1/auth/mock-login", json={"user_id": "tester", "roles": ["student"]})
    assert r.status_code == 200 and r.json()["token_type"] == "bearer"
    r = client.post("/v1/auth/mock-login", json={"user_id": "tester", "roles": ["author"]})
    assert r.status_code == 400 and r.json()["error"]["type"] == "http_error"


def test_requires_token_and_role(client):
    assert client.post("/v1/assessments", json={}).status_code in (401, 403)
    r = client.post("/v1/assessments", headers=STU, json={"title": "x", "blocks": []})
    assert r.status_code == 403


def test_block_validation(client):
    r = client.post("/v1/assessments", headers=INS, json={
        "title": "x", "blocks": [{"question_type": "multiple_choice", "question_count": 1}]})
    assert r.status_code == 422 and r.json()["error"]["type"] == "validation_error"


def test_start_attempt_hides_answers(client, pool):
    aid, body = start(client, pool)
    assert len(body["questions"]) == 3
    assert all("correct_answer" not in q for q in body["questions"])
    assert body["duration"] == 120 + 90 + 600
    assert body["questions"][0]["positive_marks"] == 2
    r = client.post(f"/v1/assessments/{aid}/attempts", headers=STU, json={})
    assert r.status_code == 409 and r.json()["error"]["type"] == "conflict"


def test_start_attempt_requires_enrollment(client, pool):
    aid = create_assessment(client)
    r = client.post(f"/v1/assessments/{aid}/attempts", headers=STU, json={})
    assert r.status_code == 403 and r.json()["error"]["type"] == "authorization_error"


def test_generation_failure_is_reported(client, pool):
    aid = create_assessment(client)
    client.post(f"/v1/assessments/{aid}/enrollments", headers=INS, json={"student_id": "stu-1"})
    pool.script.append("sorry, I cannot help")
    r = client.post(f"/v1/assessments/{aid}/attempts", headers=STU, json={})
    assert r.status_code == 502 and r.json()["error"]["type"] == "question_generation_error"


def test_submit_and_review_flow(client, pool, lock):
    aid, body = start(client, pool)
    attempt_id = body["attempt_id"]
    mcq, short, essay = [q["id"] for q in body["questions"]]

    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=STU, json={"answers": [
        {"questionId": mcq, "answer": "mitochondria"},
        {"questionId": short, "answer": "Mitochondria release energy"},
        {"questionId": essay, "answer": "Respiration happens in the mitochondria."},
    ]})
    assert r.status_code == 200, r.text
    res = r.json()
    assert lock.acquired == [attempt_id]
    assert res["score"] == 7 and res["maxScore"] == 17 and res["percentage"] == round(7 / 17 * 100, 2)
    assert res["status"] == "partially_graded" and res["manualRequiredCount"] == 1
    assert [(a["questionId"], a["correct"], a["score"]) for a in res["answers"]][:2] == [(mcq, True, 2), (short, True, 5)]

    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=STU, json={"answers": []})
    assert r.status_code == 409

    r = client.get(f"/v1/assessments/{aid}/manual-grading", headers=INS)
    assert r.status_code == 200
    queue = r.json()
    assert [q["question_id"] for q in queue] == [essay] and queue[0]["student_id"] == "stu-1"

    r = client.post("/v1/grading/override", headers=INS, json={
        "answerId": queue[0]["answer_id"], "newScore": 9, "feedback": "Good", "reason": "Hand graded"})
    assert r.status_code == 200, r.text
    out = r.json()
    assert out["answer"]["grading_method"] == "manual_override"
    assert out["attempt"]["total_score"] == 16 and out["attempt"]["status"] == "fully_graded"

    assert client.get(f"/v1/assessments/{aid}/manual-grading", headers=INS).json() == []

    r = client.get(f"/v1/attempts/{attempt_id}", headers=STU)
    assert r.status_code == 200
    detail = r.json()
    assert detail["score"] == 16 and detail["grading_status"] == "fully_graded"
    assert detail["questions"][0]["correct_answer"] == "Mitochondria"
    assert client.get(f"/v1/attempts/{attempt_id}", headers=auth("stu-2", "student")).status_code == 403


def test_submit_validation(client, pool):
    _, body = start(client, pool)
    attempt_id, qid = body["attempt_id"], body["questions"][0]["id"]
    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=STU,
                    json={"answers": [{"questionId": qid, "answer": "A"}, {"questionId": qid, "answer": "B"}]})
    assert r.status_code == 400 and r.json()["error"]["type"] == "validation_error"
    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=auth("stu-2", "student"), json={"answers": []})
    assert r.status_code == 403


@pytest.mark.parametrize("payload", [
    {"answerId": 1, "newScore": "lots", "reason": "x"},
    {"answerId": 1, "newScore": 1, "reason": "  "},
    {"answerId": 1, "newScore": 1},
])
def test_override_payload_validation(client, payload):
    assert client.post("/v1/grading/override", headers=INS, json=payload).status_code == 422


def test_override_by_other_instructor(client, pool):
    aid, body = start(client, pool)
    attempt_id = body["attempt_id"]
    client.post(f"/v1/attempts/{attempt_id}/submit", headers=STU, json={"answers": []})
    answer_id = client.get(f"/v1/attempts/{attempt_id}", headers=INS).json()["questions"][0]["answer_id"]
    r = client.post("/v1/grading/override", headers=auth("ins-2", "instructor"),
                    json={"answerId": answer_id, "newScore": 1, "reason": "mine now"})
    assert r.status_code == 403


def test_regrade_is_queued(client, queue):
    aid = create_assessment(client)
    r = client.post(f"/v1/assessments/{aid}/regrade", headers=INS)
    assert r.status_code == 202 and r.json()["job_id"] == "job-1"
    fn, args, kwargs = queue.jobs[0]
    assert fn is regrade_assessment_job and args == (aid,)
    assert client.post(f"/v1/assessments/{aid}/regrade", headers=auth("ins-2", "instructor")).status_code == 403


def test_grading_status(client):
    r = client.get("/v1/grading/status")
    features = r.json()["features"]
    assert features["question_generation"] is True and features["ai_equivalence"] is False
    assert "essay" in r.json()["question_types"]


def test_results_and_attempt_history(client, pool):
    aid, body = start(client, pool)
    attempt_id = body["attempt_id"]
    mcq = body["questions"][0]["id"]
    client.post(f"/v1/attempts/{attempt_id}/submit", headers=STU, json={"answers": [{"questionId": mcq, "answer": "Nucleus"}]})

    r = client.get(f"/v1/assessments/{aid}/results", headers=INS)
    assert r.status_code == 200, r.text
    rows = r.json()["attempts"]
    assert [(a["attempt_id"], a["student_id"], a["score"], a["max_score"]) for a in rows] == [(attempt_id, "stu-1", 0, 17)]
    assert rows[0]["grading_status"] == "fully_graded" and rows[0]["manual_required_count"] == 0
    assert rows[0]["total_questions"] == 3 and rows[0]["correct_answers"] == 0
    assert client.get(f"/v1/assessments/{aid}/results", headers=auth("ins-2", "instructor")).status_code == 403
    assert client.get(f"/v1/assessments/{aid}/results", headers=STU).status_code == 403

    r = client.get("/v1/attempts", headers=STU)
    assert r.status_code == 200
    assert [(a["attempt_id"], a["assessment_title"], a["status"]) for a in r.json()] == [
        (attempt_id, "Cell biology", "completed")]
    assert client.get("/v1/attempts", headers=auth("stu-2", "student")).json() == []
    assert client.get("/v1/attempts", headers=INS).status_code == 403
