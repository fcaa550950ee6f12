# attempts.py
# -----------------------------------------------------------------------------
# Attempt Engine: NONE -> IN_PROGRESS -> FINISHED (terminal).
#
#   start          exam mode on, live session, still on the roster, under the
#                  finished-attempt limit; samples questions_per_bank questions
#                  from every configured bank, shuffles options, interleaves
#                  banks, and inserts the attempt unless an unfinished one
#                  already exists for the student (then that one is returned)
#   get_questions  frozen questions without isCorrect + answers so far
#   submit_answer  last write wins per question index; rejected once finished
#   finish         scores once; concurrent/retried calls read back the winner
#
# The configuration is copied into the attempt at start, so later edits by
# the teacher never touch an attempt in flight.
# -----------------------------------------------------------------------------
import copy
import random
import secrets
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from errors import (
    AttemptLimitExceeded, Conflict, ExamModeDisabled, NotEligible,
    NotFound, ValidationError,
)
from exam_config import ExamConfig, load_config
from roster import find_enrollment, get_roster, result_test_id
from store import DEFAULT_UNIVERSITY, iso, parse_iso, utcnow

logger = logging.getLogger(__name__)

LETTER_OPTIONS = {"A": 0, "B": 1, "C": 2, "D": 3}
FINALIZE_RETRIES = 5


# ------------------------------- randomness ----------------------------------
def default_rng() -> random.Random:
    """A fresh generator per start; no state is shared between requests."""
    return random.Random(secrets.randbits(128))

def pick_random_sample(pool: Sequence[Any], k: int, rng: random.Random) -> List[Any]:
    """
    Uniform k-subset without replacement: k Fisher-Yates steps from the end of
    a copy of `pool`, then take the trailing k items.
    """
    arr = list(pool)
    n = len(arr)
    k = max(0, min(int(k), n))
    for i in range(n - 1, n - 1 - k, -1):
        j = rng.randrange(i + 1)
        arr[i], arr[j] = arr[j], arr[i]
    return arr[n - k:]

def clone_question(q: Dict[str, Any], bank_id: str, rng: random.Random) -> Dict[str, Any]:
    """Deep copy with shuffled options; the bank's stored question is left untouched."""
    clone = copy.deepcopy(q)
    options = [{"text": str(o.get("text") or ""), "isCorrect": bool(o.get("isCorrect"))}
               for o in (clone.get("options") or []) if isinstance(o, dict)]
    rng.shuffle(options)
    clone["options"] = options
    clone["bank_id"] = bank_id
    return clone


# ------------------------------- scoring -------------------------------------
def correct_option_index(question: Dict[str, Any]) -> Optional[int]:
    """Index of the single correct option; None when there are zero or several."""
    hits = [i for i, o in enumerate(question.get("options") or []) if o and o.get("isCorrect")]
    return hits[0] if len(hits) == 1 else None

def count_correct(questions: List[Dict[str, Any]], answers: Dict[str, Any]) -> int:
    correct = 0
    for i, q in enumerate(questions):
        want = correct_option_index(q)
        got = answers.get(str(i))
        if want is not None and isinstance(got, int) and not isinstance(got, bool) and got == want:
            correct += 1
    return correct


# ------------------------------- input parsing -------------------------------
def normalize_chosen_option(chosen: Any) -> Optional[int]:
    """int index, or one letter A-D (any case), or a numeric string."""
    if isinstance(chosen, bool):
        return None
    if isinstance(chosen, int):
        return chosen
    if isinstance(chosen, float):
        return int(chosen) if chosen.is_integer() else None
    s = str(chosen if chosen is not None else "").strip().upper()
    if s in LETTER_OPTIONS:
        return LETTER_OPTIONS[s]
    if s.lstrip("-").isdigit():
        return int(s)
    return None

def _question_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    s = str(value if value is not None else "").strip()
    return int(s) if s.isdigit() else None


# ------------------------------- projections ---------------------------------
def student_questions(attempt: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{
        "index": i,
        "question": q.get("question"),
        "options": [{"text": o.get("text")} for o in q.get("options") or []],
    } for i, q in enumerate(attempt.get("questions") or [])]

def finish_result(attempt: Dict[str, Any]) -> Dict[str, int]:
    return {
        "score_points": int(attempt.get("score_points") or 0),
        "correct_count": int(attempt.get("correct_count") or 0),
        "total_questions": int(attempt.get("total_questions") or len(attempt.get("questions") or [])),
    }


# ------------------------------- engine --------------------------------------
class AttemptEngine:
    def __init__(self, store, gate,
                 clock: Callable[[], datetime] = utcnow,
                 rng_factory: Callable[[], random.Random] = default_rng,
                 enforce_time_limit: bool = False,
                 grace_seconds: int = 30):
        self.store = store
        self.gate = gate
        self.clock = clock
        self.rng_factory = rng_factory
        self.enforce_time_limit = enforce_time_limit
        self.grace = timedelta(seconds=max(0, int(grace_seconds)))

    # ---- start ---------------------------------------------------------------
    def start(self, session_token: Optional[str]) -> str:
        if not self.store.get_exam_mode():
            raise ExamModeDisabled()
        account = self.gate.resolve(session_token)
        return self.start_for_account(account)

    def start_for_account(self, account: Dict[str, Any]) -> str:
        program_id = account.get("program_id") or ""
        group_name = account.get("group") or ""
        full_name = account.get("full_name") or ""

        roster = get_roster(self.store)
        enrollment = find_enrollment(roster, program_id, group_name, full_name)
        if not enrollment:
            raise NotEligible("Student is not on the roster")
        program, group = enrollment
        exam_date = account.get("exam_date") or group.get("exam_date") or ""

        cfg = load_config(self.store)
        used = self.store.count_finished_attempts(program_id, group_name, full_name, exam_date)
        if used >= cfg.max_attempts_per_student:
            raise AttemptLimitExceeded(
                f"Attempt limit reached ({used}/{cfg.max_attempts_per_student})")

        questions = self.assemble_questions(cfg)
        record = {
            "university": roster.get("university") or DEFAULT_UNIVERSITY,
            "program_id": program_id,
            "program_name": program.get("program_name"),
            "group_name": group_name,
            "student_fullname": full_name,
            "exam_date": exam_date,
            "started_at": iso(self.clock()),
            "finished_at": None,
            "updated_at": None,
            "duration_minutes": cfg.duration_minutes,
            "total_questions": len(questions),
            "points_per_question": cfg.points_per_question,
            "questions": questions,
            "answers": {},
            "correct_count": None,
            "score_points": None,
        }
        attempt, created = self.store.insert_open_attempt(record)
        logger.info("[attempt] %s %s for %s/%s/%s", "started" if created else "resumed",
                    attempt["attempt_id"], program_id, group_name, exam_date)
        return attempt["attempt_id"]

    def assemble_questions(self, cfg: ExamConfig) -> List[Dict[str, Any]]:
        if not cfg.bank_ids:
            raise ValidationError("Exam config has no banks")
        if len(cfg.bank_ids) * cfg.questions_per_bank != cfg.total_questions:
            raise ValidationError("Exam config is inconsistent (question count mismatch)")

        rng = self.rng_factory()
        selected: List[Dict[str, Any]] = []
        for bank_id in cfg.bank_ids:
            bank = self.store.get_bank(bank_id)
            if bank is None:
                raise ValidationError(f"Bank not found: {bank_id}")
            pool = bank.get("questions") or []
            if len(pool) < cfg.questions_per_bank:
                raise ValidationError(f"Bank has too few questions: {bank_id}")
            picked = pick_random_sample(pool, cfg.questions_per_bank, rng)
            selected.extend(clone_question(q, bank_id, rng) for q in picked)
        rng.shuffle(selected)
        return selected

    # ---- read ----------------------------------------------------------------
    def _load(self, attempt_id: str) -> Dict[str, Any]:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            raise NotFound("Attempt not found")
        return attempt

    def get_questions(self, attempt_id: str) -> Dict[str, Any]:
        a = self._load(attempt_id)
        return {
            "attempt_id": a["attempt_id"],
            "university": a.get("university"),
            "program_name": a.get("program_name"),
            "group_name": a.get("group_name"),
            "student_fullname": a.get("student_fullname"),
            "exam_date": a.get("exam_date"),
            "started_at": a.get("started_at"),
            "finished_at": a.get("finished_at"),
            "duration_minutes": a.get("duration_minutes"),
            "total_questions": a.get("total_questions"),
            "answers": a.get("answers") or {},
            "questions": student_questions(a),
        }

    def status(self, attempt_id: str) -> Dict[str, Any]:
        a = self._load(attempt_id)
        return {"attempt_id": a["attempt_id"], "started_at": a.get("started_at"),
                "finished_at": a.get("finished_at")}

    def deadline(self, attempt: Dict[str, Any]) -> Optional[datetime]:
        started = parse_iso(attempt.get("started_at"))
        if started is None:
            return None
        return started + timedelta(minutes=int(attempt.get("duration_minutes") or 0))

    # ---- answer --------------------------------------------------------------
    def submit_answer(self, attempt_id: str, question_index: Any, chosen_option: Any) -> None:
        a = self._load(attempt_id)
        if a.get("finished_at"):
            raise Conflict("Attempt finished")

        questions = a.get("questions") or []
        idx = _question_index(question_index)
        if idx is None or not 0 <= idx < len(questions):
            raise ValidationError("question_index out of range")
        chosen = normalize_chosen_option(chosen_option)
        n_options = len(questions[idx].get("options") or [])
        if chosen is None or not 0 <= chosen < n_options:
            raise ValidationError("chosen_option out of range")

        now = self.clock()
        if self.enforce_time_limit:
            deadline = self.deadline(a)
            if deadline is not None and now > deadline + self.grace:
                raise Conflict("Time limit exceeded")

        if not self.store.record_answer(attempt_id, idx, chosen, iso(now)):
            raise Conflict("Attempt finished")

    # ---- finish --------------------------------------------------------------
    def finish(self, attempt_id: str) -> Dict[str, int]:
        for _ in range(FINALIZE_RETRIES):
            a = self._load(attempt_id)
            if a.get("finished_at"):
                return finish_result(a)

            # score exactly the answers the conditional write is pinned to
            answers = dict(a.get("answers") or {})
            questions = a.get("questions") or []
            correct = count_correct(questions, answers)
            points_per = int(a.get("points_per_question") or 0)
            score = max(0, correct * points_per)
            now = self.clock()

            if self.store.finalize_attempt(attempt_id, answers, correct, score, iso(now)):
                a.update(answers=answers, finished_at=iso(now), correct_count=correct, score_points=score)
                logger.info("[attempt] finished %s: %d/%d correct, %d points",
                            attempt_id, correct, len(questions), score)
                self._emit_result(a, now)
                return finish_result(a)
            logger.info("[attempt] finalize of %s missed, re-reading", attempt_id)

        logger.warning("[attempt] could not finalize %s after %d tries", attempt_id, FINALIZE_RETRIES)
        raise Conflict("Attempt is being updated, try again")

    def _emit_result(self, a: Dict[str, Any], finished: datetime) -> None:
        started = parse_iso(a.get("started_at"))
        row = {
            "test_id": result_test_id(a.get("exam_date"), a.get("program_id")),
            "fullname": a.get("student_fullname"),
            "group": a.get("group_name"),
            "university": a.get("university") or DEFAULT_UNIVERSITY,
            "faculty": a.get("program_name"),
            "correct": a.get("correct_count"),
            "total": len(a.get("questions") or []),
            "score": a.get("score_points"),
            "started_at": a.get("started_at"),
            "finished_at": iso(finished),
            "time_spent_seconds": max(0, int((finished - started).total_seconds())) if started else None,
        }
        try:
            self.store.append_result(row)
        except Exception as e:
            logger.warning("[attempt] result sink write failed for %s: %s", a.get("attempt_id"), e)
