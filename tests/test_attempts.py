import copy
import json
import random
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempts import AttemptEngine, correct_option_index  # noqa: E402
from auth import SessionGate, generate_credentials  # noqa: E402
from errors import (  # noqa: E402
    AttemptLimitExceeded, Conflict, ExamModeDisabled, NotEligible,
    NotFound, Unauthorized, ValidationError,
)
from exam_config import load_config, set_config  # noqa: E402
from roster import get_roster, set_roster  # noqa: E402
from store import FileStore  # noqa: E402


ROSTER = {
    "university": "Test University",
    "programs": [{
        "program_id": "econ",
        "program_name": "Economics",
        "groups": [{
            "group_name": "EC-1",
            "exam_date": "2025-06-01",
            "students": ["Ali Valiyev", "Sara Karimova"],
        }],
    }],
}

ACCOUNT = {
    "id": "acc-1",
    "login": "EC-1-001",
    "full_name": "Ali Valiyev",
    "program": "Economics",
    "program_id": "econ",
    "group": "EC-1",
    "exam_date": "2025-06-01",
    "active": True,
}


def _q(text, correct, n=3):
    return {
        "question": text,
        "options": [{"text": f"{text}-opt{i}", "isCorrect": i == correct} for i in range(n)],
    }


def _setup(tmp_path, engine_kwargs=None, **overrides):
    store = FileStore(str(tmp_path / "data"))
    store.insert_bank({"bank_id": "b1", "subject_name": "Math",
                       "questions": [_q(f"m{i}", 0) for i in range(3)],
                       "created_at": "2025-05-01T00:00:00+00:00"})
    store.insert_bank({"bank_id": "b2", "subject_name": "History",
                       "questions": [_q(f"h{i}", 1) for i in range(3)],
                       "created_at": "2025-05-01T00:00:00+00:00"})
    set_roster(store, ROSTER)
    config = {
        "bank_ids": ["b1", "b2"],
        "questions_per_bank": 2,
        "total_questions": 4,
        "points_per_question": 2,
        "duration_minutes": 10,
        "max_attempts_per_student": 1,
    }
    config.update(overrides)
    set_config(store, config)
    store.set_exam_mode(True)
    engine = AttemptEngine(store, SessionGate(store), **(engine_kwargs or {}))
    return store, engine


def _answer_all_correctly(store, engine, attempt_id):
    for i, q in enumerate(store.get_attempt(attempt_id)["questions"]):
        engine.submit_answer(attempt_id, i, correct_option_index(q))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
def test_all_correct_answers_score_full_points(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)

    view = engine.get_questions(attempt_id)
    assert len(view["questions"]) == 4
    assert view["duration_minutes"] == 10

    _answer_all_correctly(store, engine, attempt_id)
    assert engine.finish(attempt_id) == {"score_points": 8, "correct_count": 4, "total_questions": 4}


def test_finish_without_answers_scores_zero(tmp_path):
    _, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    assert engine.finish(attempt_id) == {"score_points": 0, "correct_count": 0, "total_questions": 4}


def test_second_start_resumes_unfinished_attempt(tmp_path):
    store, engine = _setup(tmp_path)
    first = engine.start_for_account(ACCOUNT)
    second = engine.start_for_account(ACCOUNT)
    assert first == second
    assert len(list(store.attempts_dir.glob("*.json"))) == 1


def test_concurrent_starts_create_one_attempt(tmp_path):
    store, engine = _setup(tmp_path)
    barrier = threading.Barrier(8)

    def _start():
        barrier.wait()
        return engine.start_for_account(ACCOUNT)

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(lambda _: _start(), range(8)))

    assert len(set(ids)) == 1
    assert len(list(store.attempts_dir.glob("*.json"))) == 1


def test_letter_option_equals_index(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)

    engine.submit_answer(attempt_id, 0, "B")
    engine.submit_answer(attempt_id, 1, "c")
    engine.submit_answer(attempt_id, 2, "0")
    assert store.get_attempt(attempt_id)["answers"] == {"0": 1, "1": 2, "2": 0}


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------
def test_each_bank_contributes_questions_per_bank(tmp_path):
    store, engine = _setup(tmp_path)
    questions = store.get_attempt(engine.start_for_account(ACCOUNT))["questions"]

    assert len(questions) == 4
    assert sum(1 for q in questions if q["bank_id"] == "b1") == 2
    assert sum(1 for q in questions if q["bank_id"] == "b2") == 2
    assert len({(q["bank_id"], q["question"]) for q in questions}) == 4


def test_correct_option_position_varies_between_starts(tmp_path):
    store, engine = _setup(tmp_path)
    cfg = load_config(store)
    positions = set()
    for _ in range(60):
        for q in engine.assemble_questions(cfg):
            if q["question"] == "m0":
                positions.add(correct_option_index(q))
    assert len(positions) > 1


def test_seeded_rng_factory_is_deterministic(tmp_path):
    store, engine = _setup(tmp_path, engine_kwargs={"rng_factory": lambda: random.Random(7)})
    cfg = load_config(store)
    assert engine.assemble_questions(cfg) == engine.assemble_questions(cfg)


def test_sampling_leaves_banks_untouched(tmp_path):
    store, engine = _setup(tmp_path)
    before = copy.deepcopy(store.list_banks())

    attempt_id = engine.start_for_account(ACCOUNT)
    _answer_all_correctly(store, engine, attempt_id)
    engine.finish(attempt_id)

    assert store.list_banks() == before
    assert all("bank_id" not in q for b in store.list_banks() for q in b["questions"])


def test_questions_view_hides_correct_flags(tmp_path):
    _, engine = _setup(tmp_path)
    view = engine.get_questions(engine.start_for_account(ACCOUNT))
    assert "isCorrect" not in json.dumps(view)
    assert set(view["questions"][0]) == {"index", "question", "options"}


# ---------------------------------------------------------------------------
# Answers and finish
# ---------------------------------------------------------------------------
def test_latest_answer_wins(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    q0 = store.get_attempt(attempt_id)["questions"][0]
    right = correct_option_index(q0)
    wrong = (right + 1) % len(q0["options"])

    engine.submit_answer(attempt_id, 0, right)
    engine.submit_answer(attempt_id, 0, wrong)
    assert engine.finish(attempt_id)["correct_count"] == 0


def test_finish_twice_returns_same_result(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    _answer_all_correctly(store, engine, attempt_id)

    first = engine.finish(attempt_id)
    second = engine.finish(attempt_id)
    assert first == second
    assert len(store.list_results()) == 1


def test_racing_finishes_score_once(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    _answer_all_correctly(store, engine, attempt_id)
    barrier = threading.Barrier(6)

    def _finish():
        barrier.wait()
        return engine.finish(attempt_id)

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: _finish(), range(6)))

    assert all(r == {"score_points": 8, "correct_count": 4, "total_questions": 4} for r in results)
    assert len(store.list_results()) == 1


def test_answer_landing_between_read_and_finalize_is_scored(tmp_path, monkeypatch):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    first = store.get_attempt(attempt_id)["questions"][0]
    original = store.finalize_attempt
    calls = []

    def _answer_then_finalize(*args):
        if not calls:
            store.record_answer(attempt_id, 0, correct_option_index(first), "2025-06-01T09:01:00+00:00")
        calls.append(args)
        return original(*args)

    monkeypatch.setattr(store, "finalize_attempt", _answer_then_finalize)
    result = engine.finish(attempt_id)

    assert len(calls) == 2
    assert result == {"score_points": 2, "correct_count": 1, "total_questions": 4}
    stored = store.get_attempt(attempt_id)
    assert stored["answers"] == {"0": correct_option_index(first)}
    assert stored["correct_count"] == 1
    assert store.list_results()[0]["correct"] == 1


def test_finish_gives_up_when_answers_keep_changing(tmp_path, monkeypatch):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    monkeypatch.setattr(store, "finalize_attempt", lambda *args: False)

    with pytest.raises(Conflict):
        engine.finish(attempt_id)
    assert not store.get_attempt(attempt_id).get("finished_at")
    assert store.list_results() == []


def test_answer_after_finish_conflicts(tmp_path):
    _, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    engine.finish(attempt_id)
    with pytest.raises(Conflict):
        engine.submit_answer(attempt_id, 0, 0)


@pytest.mark.parametrize("index, chosen", [(4, 0), (-1, 0), ("x", 0), (0, 3), (0, "E"), (0, True), (0, None)])
def test_out_of_range_answer_is_rejected(tmp_path, index, chosen):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    with pytest.raises(ValidationError):
        engine.submit_answer(attempt_id, index, chosen)
    assert store.get_attempt(attempt_id)["answers"] == {}


def test_unknown_attempt_is_not_found(tmp_path):
    _, engine = _setup(tmp_path)
    for call in (lambda: engine.get_questions("nope"),
                 lambda: engine.submit_answer("nope", 0, 0),
                 lambda: engine.finish("nope"),
                 lambda: engine.status("nope")):
        with pytest.raises(NotFound):
            call()


def test_config_change_does_not_touch_running_attempt(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    set_config(store, {"points_per_question": 5, "duration_minutes": 99})

    _answer_all_correctly(store, engine, attempt_id)
    assert engine.get_questions(attempt_id)["duration_minutes"] == 10
    assert engine.finish(attempt_id)["score_points"] == 8


def test_result_record_is_written_on_finish(tmp_path):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)
    _answer_all_correctly(store, engine, attempt_id)
    engine.finish(attempt_id)

    (row,) = store.list_results("DAK_2025-06-01_econ")
    assert row["fullname"] == "Ali Valiyev"
    assert row["group"] == "EC-1"
    assert row["faculty"] == "Economics"
    assert row["university"] == "Test University"
    assert (row["correct"], row["total"], row["score"]) == (4, 4, 8)
    assert row["time_spent_seconds"] >= 0


def test_result_sink_failure_does_not_fail_finish(tmp_path, monkeypatch):
    store, engine = _setup(tmp_path)
    attempt_id = engine.start_for_account(ACCOUNT)

    def boom(row):
        raise OSError("disk full")

    monkeypatch.setattr(store, "append_result", boom)
    assert engine.finish(attempt_id)["total_questions"] == 4
    assert engine.status(attempt_id)["finished_at"] is not None


# ---------------------------------------------------------------------------
# Start preconditions
# ---------------------------------------------------------------------------
def test_attempt_limit_counts_finished_attempts(tmp_path):
    _, engine = _setup(tmp_path, max_attempts_per_student=2)
    for _ in range(2):
        engine.finish(engine.start_for_account(ACCOUNT))
    with pytest.raises(AttemptLimitExceeded):
        engine.start_for_account(ACCOUNT)


def test_student_removed_from_roster_cannot_start(tmp_path):
    store, engine = _setup(tmp_path)
    roster = get_roster(store)
    roster["programs"][0]["groups"][0]["students"] = ["Sara Karimova"]
    set_roster(store, roster)
    with pytest.raises(NotEligible):
        engine.start_for_account(ACCOUNT)


def test_missing_bank_makes_start_fail(tmp_path):
    store, engine = _setup(tmp_path)
    store.delete_bank("b2")
    with pytest.raises(ValidationError):
        engine.start_for_account(ACCOUNT)


def test_start_requires_exam_mode_before_session(tmp_path):
    store, engine = _setup(tmp_path)
    store.set_exam_mode(False)
    with pytest.raises(ExamModeDisabled):
        engine.start("not-a-token")

    store.set_exam_mode(True)
    with pytest.raises(Unauthorized):
        engine.start(None)


def test_start_with_logged_in_session(tmp_path):
    store, engine = _setup(tmp_path)
    creds = generate_credentials(store, get_roster(store), "EC-1", "2025-06-01")["credentials"]
    session, meta = engine.gate.login(creds[0]["login"], creds[0]["password"])

    attempt_id = engine.start(session["token"])
    attempt = store.get_attempt(attempt_id)
    assert attempt["student_fullname"] == meta["full_name"] == "Ali Valiyev"
    assert attempt["program_name"] == "Economics"


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------
def test_enforced_deadline_rejects_late_answers_but_accepts_finish(tmp_path):
    now = [datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)]
    store, engine = _setup(tmp_path, engine_kwargs={
        "clock": lambda: now[0], "enforce_time_limit": True, "grace_seconds": 30,
    })
    attempt_id = engine.start_for_account(ACCOUNT)

    now[0] += timedelta(minutes=10, seconds=20)
    engine.submit_answer(attempt_id, 0, 0)

    now[0] += timedelta(seconds=20)
    with pytest.raises(Conflict):
        engine.submit_answer(attempt_id, 1, 0)

    assert engine.finish(attempt_id)["total_questions"] == 4
    assert list(store.get_attempt(attempt_id)["answers"]) == ["0"]
