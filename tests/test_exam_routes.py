import json
import sys
from pathlib import Path

import pytest
from flask import Flask
from psycopg.errors import OperationalError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from content_store import ContentStore  # noqa: E402
from exam import create_exam_blueprint  # noqa: E402
from fakedb import FakeDB  # noqa: E402


def _choices(correct_id, ids):
    return [{"id": cid, "text": f"option {cid}", "isCorrect": cid == correct_id} for cid in ids]


@pytest.fixture
def db():
    d = FakeDB()
    d.exam_id = d.add_exam(link_id="quiz-1", title="Week 3", settings={"allowBack": True})
    d.q1 = d.add_question(d.exam_id, "2 + 2?", _choices(1, (1, 2)), image_key="a" * 32)
    d.q2 = d.add_question(d.exam_id, "Capital of France?", _choices(5, (3, 4, 5)))
    d.config[100] = {"id": 100, "type": "class", "value": "7"}
    return d


@pytest.fixture
def store(tmp_path):
    return ContentStore(str(tmp_path / "content"), 1024)


@pytest.fixture
def client(db, store):
    app = Flask(__name__)
    app.testing = True
    app.register_blueprint(create_exam_blueprint("", {
        "fetch_one": db.fetch_one,
        "fetch_all": db.fetch_all,
        "execute": db.execute,
        "execute_returning": db.execute_returning,
        "content_store": store,
    }))
    return app.test_client()


def _submission(db, answers, school_id="S-1", **extra):
    body = {
        "link_id": "quiz-1",
        "student": {"school_id": school_id, "name": "Chen", "roll": "9", "class": "7", "section": ""},
        "answers": answers,
    }
    body.update(extra)
    return body


def test_exam_get_hides_answer_key(client, db):
    resp = client.get("/api/exam/get?link_id=quiz-1")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["exam"]["title"] == "Week 3"
    assert data["exam"]["settings"] == {"allowBack": True}
    assert "teacher_id" not in data["exam"]
    assert [q["id"] for q in data["questions"]] == [db.q1, db.q2]
    assert data["questions"][0]["choices"] == [{"id": 1, "text": "option 1"}, {"id": 2, "text": "option 2"}]
    assert "isCorrect" not in resp.get_data(as_text=True)
    assert data["config"] == [{"id": 100, "type": "class", "value": "7"}]


def test_exam_get_unknown_link_is_404(client):
    resp = client.get("/api/exam/get?link_id=missing")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"
    assert client.get("/api/exam/get").status_code == 404


def test_exam_get_survives_missing_config_table(db):
    def fetch_all(sql, params=()):
        if "school_config" in sql:
            raise OperationalError("relation missing")
        return db.fetch_all(sql, params)

    app = Flask(__name__)
    app.register_blueprint(create_exam_blueprint("", {
        "fetch_one": db.fetch_one, "fetch_all": fetch_all,
        "execute": db.execute, "execute_returning": db.execute_returning,
    }))
    resp = app.test_client().get("/api/exam/get?link_id=quiz-1")
    assert resp.status_code == 200
    assert resp.get_json()["config"] == []
    assert len(resp.get_json()["questions"]) == 2


def test_submit_ignores_client_score(client, db):
    body = _submission(db, {str(db.q1): 1, str(db.q2): 3}, score=2, total=2)
    resp = client.post("/api/submit", json=body)
    assert resp.status_code == 200
    data = resp.get_json()
    assert (data["score"], data["total"]) == (1, 2)
    attempt = next(iter(db.attempts.values()))
    assert (attempt["score"], attempt["total"]) == (1, 2)
    student = next(iter(db.students.values()))
    assert (student["school_id"], student["class"], student["section"]) == ("S-1", "7", None)


def test_second_submit_conflicts(client, db):
    assert client.post("/api/submit", json=_submission(db, {})).status_code == 200
    resp = client.post("/api/submit", json=_submission(db, {str(db.q1): 1}))
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "already_attempted"
    assert len(db.attempts) == 1


def test_submit_to_closed_exam(client, db):
    db.exams[db.exam_id]["is_active"] = False
    resp = client.post("/api/submit", json=_submission(db, {}))
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "closed"
    assert db.writes == []


@pytest.mark.parametrize("body", [
    None,
    [],
    {"link_id": "quiz-1"},
    {"link_id": "quiz-1", "student": {"name": "No id"}},
    {"link_id": "quiz-1", "student": {"school_id": "S-1", "name": ""}},
])
def test_submit_malformed_body(client, db, body):
    resp = client.post("/api/submit", data=json.dumps(body), content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "malformed"
    assert db.writes == []


def test_student_check(client, db):
    check = {"exam_id": db.exam_id, "school_id": "S-1"}
    assert client.post("/api/student/check", json=check).get_json()["canTake"] is True
    client.post("/api/submit", json=_submission(db, {}))
    assert client.post("/api/student/check", json=check).get_json()["canTake"] is False
    assert client.post("/api/student/check", json={"exam_id": 999, "school_id": "S-1"}).status_code == 404


def test_identify_and_history(client, db):
    assert client.post("/api/student/identify", json={"school_id": "S-1"}).get_json() == {"ok": True, "found": False}
    client.post("/api/submit", json=_submission(db, {str(db.q1): 1}))

    ident = client.post("/api/student/identify", json={"school_id": "S-1"}).get_json()
    assert ident["found"] is True
    assert ident["student"]["name"] == "Chen"
    assert ident["stats"] == {"total_exams": 1, "avg_score": 50.0}

    hist = client.post("/api/student/portal-history", json={"school_id": "S-1"}).get_json()
    assert [h["title"] for h in hist["history"]] == ["Week 3"]


def test_image_served_from_store(client, store):
    key = store.put(b"\x89PNG fake", "image/png")
    resp = client.get(f"/img/{key}")
    assert resp.status_code == 200
    assert resp.data == b"\x89PNG fake"
    assert resp.mimetype == "image/png"
    assert client.get("/img/" + "0" * 32).status_code == 404
    assert client.get("/img/..%2Fsecrets").status_code == 404


def test_storage_failure_is_generic(db):
    def broken(sql, params=()):
        raise OperationalError("connection refused to 10.0.0.5")

    app = Flask(__name__)
    app.register_blueprint(create_exam_blueprint("", {
        "fetch_one": broken, "fetch_all": broken,
        "execute": broken, "execute_returning": broken,
    }))
    resp = app.test_client().post("/api/submit", json=_submission(db, {}))
    assert resp.status_code == 500
    assert resp.get_json() == {"ok": False, "error": "storage_error", "message": "Internal Server Error"}
