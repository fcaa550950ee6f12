import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempts import AttemptEngine, correct_option_index  # noqa: E402
from auth import SessionGate, generate_credentials  # noqa: E402
from exam import create_exam_blueprint  # noqa: E402
from exam_config import set_config  # noqa: E402
from roster import get_roster, set_roster  # noqa: E402
from store import FileStore  # noqa: E402


ROSTER = {
    "university": "Test University",
    "programs": [{
        "program_id": "econ",
        "program_name": "Economics",
        "groups": [{"group_name": "EC-1", "exam_date": "2025-06-01",
                    "students": ["Ali Valiyev", "Sara Karimova"]}],
    }],
}


def _q(text, correct):
    return {"question": text,
            "options": [{"text": f"{text}-{i}", "isCorrect": i == correct} for i in range(3)]}


class Clock:
    def __init__(self):
        self.now = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def env(tmp_path):
    store = FileStore(str(tmp_path / "data"))
    for bank_id, correct in (("b1", 0), ("b2", 1)):
        store.insert_bank({"bank_id": bank_id, "subject_name": bank_id,
                           "questions": [_q(f"{bank_id}-q{i}", correct) for i in range(3)],
                           "created_at": "2025-05-01T00:00:00+00:00"})
    set_roster(store, ROSTER)
    set_config(store, {"bank_ids": ["b1", "b2"], "questions_per_bank": 2, "total_questions": 4,
                       "points_per_question": 2, "duration_minutes": 10, "max_attempts_per_student": 1})
    store.set_exam_mode(True)
    creds = generate_credentials(store, get_roster(store), "EC-1", "2025-06-01")["credentials"]

    clock = Clock()
    gate = SessionGate(store, ttl=timedelta(hours=6), clock=clock)
    engine = AttemptEngine(store, gate, clock=clock)

    app = Flask(__name__)
    app.testing = True
    app.register_blueprint(create_exam_blueprint("", {
        "store": store, "engine": engine, "gate": gate,
        "cookie_name": "exam_session", "session_hours": 6,
    }))
    return {"app": app, "client": app.test_client(), "store": store,
            "creds": creds, "clock": clock}


def _login(env, idx=0):
    c = env["creds"][idx]
    return env["client"].post("/auth/login", json={"login": c["login"], "password": c["password"]})


def test_login_sets_httponly_cookie_and_returns_meta(env):
    resp = _login(env)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["meta"]["full_name"] == "Ali Valiyev"
    assert body["meta"]["group"] == "EC-1"
    assert "password_hash" not in body["meta"]

    cookie = resp.headers.get("Set-Cookie")
    assert cookie.startswith("exam_session=")
    assert "HttpOnly" in cookie


@pytest.mark.parametrize("login, password", [("EC-1-001", "WRONGPWD"), ("NOPE-001", "WRONGPWD")])
def test_login_failure_does_not_say_which_half_was_wrong(env, login, password):
    resp = env["client"].post("/auth/login", json={"login": login, "password": password})
    assert resp.status_code == 401
    assert resp.get_json() == {"ok": False, "error": "Invalid login or password"}


def test_login_with_missing_fields_is_bad_request(env):
    resp = env["client"].post("/auth/login", data="not json", content_type="text/plain")
    assert resp.status_code == 400


def test_me_and_logout(env):
    _login(env)
    assert env["client"].get("/auth/me").get_json()["meta"]["exam_date"] == "2025-06-01"

    assert env["client"].post("/auth/logout").get_json() == {"ok": True}
    assert env["client"].get("/auth/me").status_code == 401


def test_expired_session_clears_cookie(env):
    _login(env)
    env["clock"].now += timedelta(hours=7)

    resp = env["client"].get("/auth/me")
    assert resp.status_code == 401
    assert "exam_session=;" in resp.headers.get("Set-Cookie", "")

    assert env["client"].post("/attempt/start").status_code == 401


def test_deactivated_account_loses_sessions_and_cannot_log_in(env):
    c = env["creds"][0]
    other = env["app"].test_client()
    assert _login(env).status_code == 200
    assert other.post("/auth/login", json={"login": c["login"], "password": c["password"]}).status_code == 200

    account = env["store"].get_account_by_login(c["login"])
    account["active"] = False
    env["store"].save_account(account)

    resp = env["client"].post("/attempt/start")
    assert resp.status_code == 401
    assert "exam_session=;" in resp.headers.get("Set-Cookie", "")
    assert other.get("/auth/me").status_code == 401
    assert list(env["store"].attempts_dir.glob("*.json")) == []

    resp = env["client"].post("/auth/login", json={"login": c["login"], "password": c["password"]})
    assert resp.status_code == 401
    assert resp.get_json() == {"ok": False, "error": "Invalid login or password"}


def test_full_attempt_flow(env):
    client, store = env["client"], env["store"]
    _login(env)

    resp = client.post("/attempt/start")
    assert resp.status_code == 200
    attempt_id = resp.get_json()["attempt_id"]

    resp = client.get(f"/attempt/{attempt_id}/questions")
    assert resp.status_code == 200
    assert "no-store" in resp.headers["Cache-Control"]
    assert resp.headers["Pragma"] == "no-cache"
    assert resp.headers["Expires"] == "0"
    assert resp.headers["Surrogate-Control"] == "no-store"
    body = resp.get_json()
    assert len(body["questions"]) == 4
    assert "isCorrect" not in resp.get_data(as_text=True)

    stored = store.get_attempt(attempt_id)["questions"]
    for i, q in enumerate(stored):
        resp = client.post(f"/attempt/{attempt_id}/answer",
                           json={"question_index": i, "chosen_option": correct_option_index(q)})
        assert resp.get_json() == {"ok": True}

    assert client.get(f"/attempt/{attempt_id}/status").get_json()["finished_at"] is None

    resp = client.post(f"/attempt/{attempt_id}/finish")
    assert resp.get_json() == {"score_points": 8, "correct_count": 4, "total_questions": 4}
    assert client.post(f"/attempt/{attempt_id}/finish").get_json() == resp.get_json()

    resp = client.post(f"/attempt/{attempt_id}/answer", json={"question_index": 0, "chosen_option": 0})
    assert resp.status_code == 409

    resp = client.post("/attempt/start")
    assert resp.status_code == 403
    assert resp.get_json()["ok"] is False


def test_start_twice_returns_same_attempt(env):
    _login(env)
    first = env["client"].post("/attempt/start").get_json()["attempt_id"]
    second = env["client"].post("/attempt/start").get_json()["attempt_id"]
    assert first == second


def test_start_when_exam_mode_off(env):
    env["store"].set_exam_mode(False)
    resp = env["client"].post("/attempt/start")
    assert resp.status_code == 409
    assert resp.get_json() == {"ok": False, "error": "Exam mode is OFF"}


def test_start_without_session(env):
    assert env["client"].post("/attempt/start").status_code == 401


def test_start_when_student_left_roster(env):
    _login(env)
    roster = get_roster(env["store"])
    roster["programs"][0]["groups"][0]["students"] = ["Sara Karimova"]
    set_roster(env["store"], roster)
    assert env["client"].post("/attempt/start").status_code == 400


def test_answer_validation_and_unknown_attempt(env):
    client = env["client"]
    _login(env)
    attempt_id = client.post("/attempt/start").get_json()["attempt_id"]

    resp = client.post(f"/attempt/{attempt_id}/answer", json={"question_index": 99, "chosen_option": 0})
    assert resp.status_code == 400
    resp = client.post(f"/attempt/{attempt_id}/answer", json={"question_index": 0, "chosen_option": "B"})
    assert resp.status_code == 200
    assert env["store"].get_attempt(attempt_id)["answers"] == {"0": 1}

    assert client.get("/attempt/missing/questions").status_code == 404
    assert client.post("/attempt/missing/answer", json={"question_index": 0, "chosen_option": 0}).status_code == 404
    assert client.post("/attempt/missing/finish").status_code == 404
    assert client.get("/attempt/missing/status").status_code == 404


def test_public_views(env):
    client = env["client"]
    assert client.get("/exam-mode").get_json() == {"enabled": True}
    assert client.get("/config").get_json() == {"max_attempts_per_student": 1}
    assert client.get("/programs").get_json() == [{"program_id": "econ", "program_name": "Economics"}]
    assert client.get("/groups?program_id=econ").get_json() == [
        {"group_name": "EC-1", "exam_date": "2025-06-01"}]
    assert client.get("/groups?program_id=nope").get_json() == []
    students = client.get("/students?program_id=econ&group_name=EC-1").get_json()
    assert [s["fullname"] for s in students] == ["Ali Valiyev", "Sara Karimova"]
    assert client.get("/students?program_id=econ&group_name=XX").get_json() == []
