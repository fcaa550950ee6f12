# store.py
# -----------------------------------------------------------------------------
# Persistence for banks, configuration, roster, accounts, sessions, attempts
# and results. Two interchangeable backends:
#   - FileStore: JSON documents under DATA_DIR, written atomically
#   - PgStore:   PostgreSQL through the fetch_one/fetch_all/execute helpers
# Both expose the same methods; callers never branch on the backend.
#
# The two attempt writes that must win exactly once are conditional:
#   - insert_open_attempt: insert only if no unfinished attempt exists for the
#     (program_id, group_name, student_fullname, exam_date) key, else return it
#   - finalize_attempt:    update only while finished_at is NULL and answers are unchanged
# -----------------------------------------------------------------------------
import os
import re
import json
import uuid
import secrets
import tempfile
import logging
import threading
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from psycopg.conninfo import make_conninfo

logger = logging.getLogger(__name__)

DEFAULT_UNIVERSITY = os.getenv("UNIVERSITY_NAME", "University")

ATTEMPT_KEY_FIELDS = ("program_id", "group_name", "student_fullname", "exam_date")
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,80}$")


# =============================================================================
# Time helpers
# =============================================================================
def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()

def parse_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())

def attempt_key(record: Dict[str, Any]) -> Tuple[str, ...]:
    return tuple(str(record.get(k) or "") for k in ATTEMPT_KEY_FIELDS)


# =============================================================================
# FileStore
# =============================================================================
def _safe_load_json(path: Path, fallback: Any) -> Any:
    try:
        if not path.exists():
            return fallback
        raw = path.read_text(encoding="utf-8")
        if not raw.strip():
            return fallback
        return json.loads(raw)
    except Exception as exc:
        logger.warning("[store] failed to load '%s': %s", path, exc)
        return fallback

def _atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".tmp-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class FileStore:
    """JSON-file backend. One process-wide lock serializes read-modify-write."""

    def __init__(self, data_dir: str, results_dir: Optional[str] = None):
        self.root = Path(data_dir)
        self.settings_path = self.root / "app_settings.json"
        self.config_path = self.root / "exam_config.json"
        self.roster_path = self.root / "roster.json"
        self.banks_path = self.root / "banks.json"
        self.accounts_path = self.root / "accounts.json"
        self.sessions_path = self.root / "sessions.json"
        self.attempts_dir = self.root / "attempts"
        self.results_dir = Path(results_dir) if results_dir else self.root / "results"
        self.attempts_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # ---- settings ------------------------------------------------------------
    def get_exam_mode(self) -> bool:
        data = _safe_load_json(self.settings_path, {})
        return bool(((data or {}).get("exam_mode") or {}).get("enabled"))

    def set_exam_mode(self, enabled: bool) -> bool:
        with self._lock:
            data = _safe_load_json(self.settings_path, {}) or {}
            data["exam_mode"] = {"enabled": bool(enabled)}
            _atomic_write_json(self.settings_path, data)
        return bool(enabled)

    def get_config(self) -> Optional[Dict[str, Any]]:
        data = _safe_load_json(self.config_path, None)
        return data if isinstance(data, dict) else None

    def set_config(self, config: Dict[str, Any]) -> None:
        with self._lock:
            _atomic_write_json(self.config_path, config)

    def get_roster(self) -> Optional[Dict[str, Any]]:
        data = _safe_load_json(self.roster_path, None)
        return data if isinstance(data, dict) else None

    def set_roster(self, roster: Dict[str, Any]) -> None:
        with self._lock:
            _atomic_write_json(self.roster_path, roster)

    # ---- banks ---------------------------------------------------------------
    def list_banks(self) -> List[Dict[str, Any]]:
        data = _safe_load_json(self.banks_path, [])
        return data if isinstance(data, list) else []

    def get_bank(self, bank_id: str) -> Optional[Dict[str, Any]]:
        for b in self.list_banks():
            if b.get("bank_id") == bank_id:
                return b
        return None

    def insert_bank(self, bank: Dict[str, Any]) -> None:
        with self._lock:
            banks = self.list_banks()
            banks.append(bank)
            _atomic_write_json(self.banks_path, banks)

    def delete_bank(self, bank_id: str) -> bool:
        with self._lock:
            banks = self.list_banks()
            kept = [b for b in banks if b.get("bank_id") != bank_id]
            if len(kept) == len(banks):
                return False
            _atomic_write_json(self.banks_path, kept)
            return True

    # ---- accounts ------------------------------------------------------------
    def list_accounts(self) -> List[Dict[str, Any]]:
        data = _safe_load_json(self.accounts_path, [])
        return data if isinstance(data, list) else []

    def get_account_by_login(self, login: str) -> Optional[Dict[str, Any]]:
        for a in self.list_accounts():
            if a.get("login") == login:
                return a
        return None

    def get_account_by_id(self, account_id: str) -> Optional[Dict[str, Any]]:
        for a in self.list_accounts():
            if a.get("id") == account_id:
                return a
        return None

    def save_account(self, account: Dict[str, Any]) -> None:
        """Insert, or replace the account with the same id."""
        with self._lock:
            accounts = self.list_accounts()
            for i, a in enumerate(accounts):
                if a.get("id") == account.get("id"):
                    accounts[i] = account
                    break
            else:
                accounts.append(account)
            _atomic_write_json(self.accounts_path, accounts)

    # ---- sessions ------------------------------------------------------------
    def create_session(self, account_id: str, ttl: timedelta, now: datetime) -> Dict[str, Any]:
        token = secrets.token_hex(32)
        session = {
            "token": token,
            "account_id": account_id,
            "created_at": iso(now),
            "expires_at": iso(now + ttl),
        }
        with self._lock:
            sessions = _safe_load_json(self.sessions_path, {}) or {}
            # drop expired rows while we are here
            sessions = {t: s for t, s in sessions.items()
                        if (parse_iso(s.get("expires_at")) or now) > now}
            sessions[token] = session
            _atomic_write_json(self.sessions_path, sessions)
        return session

    def get_session(self, token: str, now: datetime) -> Optional[Dict[str, Any]]:
        with self._lock:
            sessions = _safe_load_json(self.sessions_path, {}) or {}
            s = sessions.get(token)
            if not s:
                return None
            expires = parse_iso(s.get("expires_at"))
            if expires is None or expires <= now:
                sessions.pop(token, None)
                _atomic_write_json(self.sessions_path, sessions)
                return None
            return s

    def delete_session(self, token: str) -> None:
        with self._lock:
            sessions = _safe_load_json(self.sessions_path, {}) or {}
            if sessions.pop(token, None) is not None:
                _atomic_write_json(self.sessions_path, sessions)

    # ---- attempts ------------------------------------------------------------
    def _attempt_path(self, attempt_id: str) -> Optional[Path]:
        if not _SAFE_ID_RE.match(str(attempt_id or "")):
            return None
        return self.attempts_dir / f"{attempt_id}.json"

    def _iter_attempts(self):
        for p in sorted(self.attempts_dir.glob("*.json")):
            a = _safe_load_json(p, None)
            if isinstance(a, dict):
                yield a

    def get_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        p = self._attempt_path(attempt_id)
        if p is None:
            return None
        a = _safe_load_json(p, None)
        return a if isinstance(a, dict) else None

    def insert_open_attempt(self, record: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        key = attempt_key(record)
        with self._lock:
            for a in self._iter_attempts():
                if attempt_key(a) == key and not a.get("finished_at"):
                    return a, False
            rec = dict(record)
            rec["attempt_id"] = rec.get("attempt_id") or new_id()
            _atomic_write_json(self._attempt_path(rec["attempt_id"]), rec)
            return rec, True

    def record_answer(self, attempt_id: str, question_index: int, chosen: int, updated_at: str) -> bool:
        with self._lock:
            a = self.get_attempt(attempt_id)
            if a is None or a.get("finished_at"):
                return False
            answers = a.get("answers") or {}
            answers[str(question_index)] = chosen
            a["answers"] = answers
            a["updated_at"] = updated_at
            _atomic_write_json(self._attempt_path(attempt_id), a)
            return True

    def finalize_attempt(self, attempt_id: str, answers: Dict[str, Any], correct_count: int,
                         score_points: int, finished_at: str) -> bool:
        """Close the attempt only if it is still open and its answers are still `answers`."""
        with self._lock:
            a = self.get_attempt(attempt_id)
            if a is None or a.get("finished_at"):
                return False
            if (a.get("answers") or {}) != answers:
                return False
            a["correct_count"] = correct_count
            a["score_points"] = score_points
            a["finished_at"] = finished_at
            _atomic_write_json(self._attempt_path(attempt_id), a)
            return True

    def count_finished_attempts(self, program_id: str, group_name: str,
                                student_fullname: str, exam_date: str) -> int:
        key = (program_id, group_name, student_fullname, exam_date)
        return sum(1 for a in self._iter_attempts()
                   if attempt_key(a) == key and a.get("finished_at"))

    # ---- results -------------------------------------------------------------
    def append_result(self, row: Dict[str, Any]) -> None:
        stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        name = f"result_{row.get('test_id')}_{stamp}_{secrets.token_hex(3)}.json"
        _atomic_write_json(self.results_dir / name, row)

    def list_results(self, test_id: Optional[str] = None) -> List[Dict[str, Any]]:
        out = []
        for p in sorted(self.results_dir.glob("result_*.json")):
            r = _safe_load_json(p, None)
            if isinstance(r, dict) and (not test_id or r.get("test_id") == test_id):
                out.append(r)
        return out


# =============================================================================
# PgStore
# =============================================================================
_TRUTHY = {"1", "true", "yes"}


def pg_conninfo(env: Mapping[str, str], managed: bool = False) -> str:
    """libpq conninfo for the pool, resolved from environment variables.

    First match wins: DATABASE_URL_LOCAL (skipped on a managed runtime),
    DATABASE_URL, the Cloud SQL unix socket on a managed runtime, then
    DB_HOST/DB_PORT over TCP. FORCE_TCP skips the URLs when running locally.
    """
    extra = {"connect_timeout": 10, "options": "-c search_path=public"}
    force_tcp = (env.get("FORCE_TCP") or "").lower() in _TRUTHY and not managed

    if not force_tcp:
        for name in ("DATABASE_URL",) if managed else ("DATABASE_URL_LOCAL", "DATABASE_URL"):
            if env.get(name):
                logger.info("[DB] using %s", name)
                return make_conninfo(env[name], **extra)

    creds = {
        "dbname": env.get("DB_NAME"),
        "user": env.get("DB_USER"),
        "password": env.get("DB_PASS") or env.get("DB_PASSWORD"),
    }
    if not all(creds.values()):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set when no DATABASE_URL is used.")

    if managed and env.get("INSTANCE_CONNECTION_NAME"):
        host = f"/cloudsql/{env['INSTANCE_CONNECTION_NAME']}"
        logger.info("[DB] unix socket -> %s", host)
        return make_conninfo(host=host, **creds, **extra)

    host = env.get("DB_HOST") or "127.0.0.1"
    port = int(env.get("DB_PORT") or 5432)
    logger.info("[DB] TCP -> %s:%s", host, port)
    return make_conninfo(host=host, port=port, **creds, **extra)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS public.app_settings (
    key   text PRIMARY KEY,
    value jsonb NOT NULL
);
CREATE TABLE IF NOT EXISTS public.exam_banks (
    bank_id      text PRIMARY KEY,
    subject_name text NOT NULL,
    questions    jsonb NOT NULL,
    created_at   timestamptz NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.exam_accounts (
    id            text PRIMARY KEY,
    login         text NOT NULL UNIQUE,
    password_hash text NOT NULL,
    salt          text NOT NULL,
    full_name     text NOT NULL,
    university    text,
    program       text,
    program_id    text,
    group_name    text,
    exam_date     text,
    active        boolean NOT NULL DEFAULT true,
    created_at    timestamptz NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.exam_sessions (
    token      text PRIMARY KEY,
    account_id text NOT NULL,
    created_at timestamptz NOT NULL,
    expires_at timestamptz NOT NULL
);
CREATE TABLE IF NOT EXISTS public.exam_attempts (
    attempt_id          text PRIMARY KEY,
    university          text,
    program_id          text NOT NULL,
    program_name        text,
    group_name          text NOT NULL,
    student_fullname    text NOT NULL,
    exam_date           text NOT NULL,
    started_at          timestamptz NOT NULL,
    finished_at         timestamptz,
    updated_at          timestamptz,
    duration_minutes    integer NOT NULL,
    total_questions     integer NOT NULL,
    points_per_question integer NOT NULL,
    questions           jsonb NOT NULL,
    answers             jsonb NOT NULL DEFAULT '{}'::jsonb,
    correct_count       integer,
    score_points        integer
);
CREATE UNIQUE INDEX IF NOT EXISTS exam_attempts_one_open
    ON public.exam_attempts (program_id, group_name, student_fullname, exam_date)
    WHERE finished_at IS NULL;
CREATE TABLE IF NOT EXISTS public.exam_results (
    id                 bigserial PRIMARY KEY,
    test_id            text NOT NULL,
    fullname           text,
    group_name         text,
    university         text,
    faculty            text,
    correct            integer,
    total              integer,
    score              integer,
    started_at         timestamptz,
    finished_at        timestamptz,
    time_spent_seconds integer
);
"""

_ATTEMPT_COLUMNS = (
    "attempt_id, university, program_id, program_name, group_name, student_fullname, "
    "exam_date, started_at, finished_at, updated_at, duration_minutes, total_questions, "
    "points_per_question, questions, answers, correct_count, score_points"
)

def _maybe_json(v: Any, fallback: Any) -> Any:
    if v is None:
        return fallback
    if isinstance(v, (dict, list)):
        return v
    try:
        return json.loads(v)
    except Exception:
        return fallback

def _attempt_from_row(row: Optional[dict]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    a = dict(row)
    for k in ("started_at", "finished_at", "updated_at"):
        a[k] = iso(parse_iso(a.get(k)))
    a["questions"] = _maybe_json(a.get("questions"), [])
    a["answers"] = _maybe_json(a.get("answers"), {})
    return a

def _account_from_row(row: Optional[dict]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    a = dict(row)
    a["group"] = a.pop("group_name", None)
    a["created_at"] = iso(parse_iso(a.get("created_at")))
    return a


class PgStore:
    """PostgreSQL backend. Takes the same query helpers main.py hands to blueprints."""

    def __init__(self, deps: Dict[str, Callable]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps["execute_returning"]

    def ensure_schema(self) -> None:
        self.execute(SCHEMA_SQL)

    # ---- settings ------------------------------------------------------------
    def _get_setting(self, key: str) -> Any:
        row = self.fetch_one("SELECT value FROM public.app_settings WHERE key = %s;", (key,))
        return _maybe_json((row or {}).get("value"), None)

    def _set_setting(self, key: str, value: Any) -> None:
        self.execute("""
            INSERT INTO public.app_settings (key, value)
            VALUES (%s, %s::jsonb)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value;
        """, (key, json.dumps(value, ensure_ascii=False)))

    def get_exam_mode(self) -> bool:
        return bool((self._get_setting("exam_mode") or {}).get("enabled"))

    def set_exam_mode(self, enabled: bool) -> bool:
        self._set_setting("exam_mode", {"enabled": bool(enabled)})
        return bool(enabled)

    def get_config(self) -> Optional[Dict[str, Any]]:
        v = self._get_setting("exam_config")
        return v if isinstance(v, dict) else None

    def set_config(self, config: Dict[str, Any]) -> None:
        self._set_setting("exam_config", config)

    def get_roster(self) -> Optional[Dict[str, Any]]:
        v = self._get_setting("roster")
        return v if isinstance(v, dict) else None

    def set_roster(self, roster: Dict[str, Any]) -> None:
        self._set_setting("roster", roster)

    # ---- banks ---------------------------------------------------------------
    def _bank_from_row(self, row: dict) -> Dict[str, Any]:
        return {
            "bank_id": row["bank_id"],
            "subject_name": row["subject_name"],
            "questions": _maybe_json(row.get("questions"), []),
            "created_at": iso(parse_iso(row.get("created_at"))),
        }

    def list_banks(self) -> List[Dict[str, Any]]:
        rows = self.fetch_all("""
            SELECT bank_id, subject_name, questions, created_at
              FROM public.exam_banks
             ORDER BY created_at, bank_id;
        """)
        return [self._bank_from_row(r) for r in rows or []]

    def get_bank(self, bank_id: str) -> Optional[Dict[str, Any]]:
        row = self.fetch_one("""
            SELECT bank_id, subject_name, questions, created_at
              FROM public.exam_banks
             WHERE bank_id = %s;
        """, (bank_id,))
        return self._bank_from_row(row) if row else None

    def insert_bank(self, bank: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.exam_banks (bank_id, subject_name, questions, created_at)
            VALUES (%s, %s, %s::jsonb, %s);
        """, (bank["bank_id"], bank["subject_name"],
              json.dumps(bank["questions"], ensure_ascii=False), bank["created_at"]))

    def delete_bank(self, bank_id: str) -> bool:
        rows = self.execute_returning(
            "DELETE FROM public.exam_banks WHERE bank_id = %s RETURNING bank_id;", (bank_id,))
        return bool(rows)

    # ---- accounts ------------------------------------------------------------
    _ACCOUNT_COLUMNS = ("id, login, password_hash, salt, full_name, university, program, "
                        "program_id, group_name, exam_date, active, created_at")

    def list_accounts(self) -> List[Dict[str, Any]]:
        rows = self.fetch_all(f"SELECT {self._ACCOUNT_COLUMNS} FROM public.exam_accounts ORDER BY login;")
        return [_account_from_row(r) for r in rows or []]

    def get_account_by_login(self, login: str) -> Optional[Dict[str, Any]]:
        return _account_from_row(self.fetch_one(
            f"SELECT {self._ACCOUNT_COLUMNS} FROM public.exam_accounts WHERE login = %s;", (login,)))

    def get_account_by_id(self, account_id: str) -> Optional[Dict[str, Any]]:
        return _account_from_row(self.fetch_one(
            f"SELECT {self._ACCOUNT_COLUMNS} FROM public.exam_accounts WHERE id = %s;", (account_id,)))

    def save_account(self, account: Dict[str, Any]) -> None:
        self.execute(f"""
            INSERT INTO public.exam_accounts ({self._ACCOUNT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                login = EXCLUDED.login,
                password_hash = EXCLUDED.password_hash,
                salt = EXCLUDED.salt,
                full_name = EXCLUDED.full_name,
                university = EXCLUDED.university,
                program = EXCLUDED.program,
                program_id = EXCLUDED.program_id,
                group_name = EXCLUDED.group_name,
                exam_date = EXCLUDED.exam_date,
                active = EXCLUDED.active;
        """, (account["id"], account["login"], account["password_hash"], account["salt"],
              account["full_name"], account.get("university"), account.get("program"),
              account.get("program_id"), account.get("group"), account.get("exam_date"),
              bool(account.get("active", True)), account.get("created_at") or iso(utcnow())))

    # ---- sessions ------------------------------------------------------------
    def create_session(self, account_id: str, ttl: timedelta, now: datetime) -> Dict[str, Any]:
        token = secrets.token_hex(32)
        self.execute("DELETE FROM public.exam_sessions WHERE expires_at <= %s;", (now,))
        self.execute("""
            INSERT INTO public.exam_sessions (token, account_id, created_at, expires_at)
            VALUES (%s, %s, %s, %s);
        """, (token, account_id, now, now + ttl))
        return {"token": token, "account_id": account_id,
                "created_at": iso(now), "expires_at": iso(now + ttl)}

    def get_session(self, token: str, now: datetime) -> Optional[Dict[str, Any]]:
        row = self.fetch_one("""
            SELECT token, account_id, created_at, expires_at
              FROM public.exam_sessions
             WHERE token = %s;
        """, (token,))
        if not row:
            return None
        expires = parse_iso(row.get("expires_at"))
        if expires is None or expires <= now:
            self.delete_session(token)
            return None
        return {"token": row["token"], "account_id": row["account_id"],
                "created_at": iso(parse_iso(row.get("created_at"))), "expires_at": iso(expires)}

    def delete_session(self, token: str) -> None:
        self.execute("DELETE FROM public.exam_sessions WHERE token = %s;", (token,))

    # ---- attempts ------------------------------------------------------------
    def get_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return _attempt_from_row(self.fetch_one(
            f"SELECT {_ATTEMPT_COLUMNS} FROM public.exam_attempts WHERE attempt_id = %s;",
            (attempt_id,)))

    def _open_attempt(self, key: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        return _attempt_from_row(self.fetch_one(f"""
            SELECT {_ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE program_id = %s AND group_name = %s
               AND student_fullname = %s AND exam_date = %s
               AND finished_at IS NULL
             LIMIT 1;
        """, key))

    def insert_open_attempt(self, record: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        rec = dict(record)
        rec["attempt_id"] = rec.get("attempt_id") or new_id()
        for _ in range(2):
            if self._try_insert_open(rec):
                return rec, True
            existing = self._open_attempt(attempt_key(rec))
            if existing is not None:
                return existing, False
            # the open row was finished between our insert and the read-back
        raise RuntimeError("could not insert or read back an open attempt")

    def _try_insert_open(self, rec: Dict[str, Any]) -> bool:
        rows = self.execute_returning("""
            INSERT INTO public.exam_attempts
                (attempt_id, university, program_id, program_name, group_name, student_fullname,
                 exam_date, started_at, finished_at, duration_minutes, total_questions,
                 points_per_question, questions, answers)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NULL, %s, %s, %s, %s::jsonb, '{}'::jsonb)
            ON CONFLICT (program_id, group_name, student_fullname, exam_date)
                WHERE finished_at IS NULL
                DO NOTHING
            RETURNING attempt_id;
        """, (rec["attempt_id"], rec.get("university"), rec["program_id"], rec.get("program_name"),
              rec["group_name"], rec["student_fullname"], rec["exam_date"], rec["started_at"],
              rec["duration_minutes"], rec["total_questions"], rec["points_per_question"],
              json.dumps(rec["questions"], ensure_ascii=False)))
        return bool(rows)

    def record_answer(self, attempt_id: str, question_index: int, chosen: int, updated_at: str) -> bool:
        rows = self.execute_returning("""
            UPDATE public.exam_attempts
               SET answers = jsonb_set(answers, ARRAY[%s]::text[], to_jsonb(%s::integer), true),
                   updated_at = %s
             WHERE attempt_id = %s
               AND finished_at IS NULL
            RETURNING attempt_id;
        """, (str(question_index), int(chosen), updated_at, attempt_id))
        return bool(rows)

    def finalize_attempt(self, attempt_id: str, answers: Dict[str, Any], correct_count: int,
                         score_points: int, finished_at: str) -> bool:
        rows = self.execute_returning("""
            UPDATE public.exam_attempts
               SET finished_at = %s, correct_count = %s, score_points = %s
             WHERE attempt_id = %s
               AND finished_at IS NULL
               AND answers = %s::jsonb
            RETURNING attempt_id;
        """, (finished_at, correct_count, score_points, attempt_id, json.dumps(answers)))
        return bool(rows)

    def count_finished_attempts(self, program_id: str, group_name: str,
                                student_fullname: str, exam_date: str) -> int:
        row = self.fetch_one("""
            SELECT COUNT(*) AS n
              FROM public.exam_attempts
             WHERE program_id = %s AND group_name = %s
               AND student_fullname = %s AND exam_date = %s
               AND finished_at IS NOT NULL;
        """, (program_id, group_name, student_fullname, exam_date))
        return int((row or {}).get("n") or 0)

    # ---- results -------------------------------------------------------------
    def append_result(self, row: Dict[str, Any]) -> None:
        self.execute("""
            INSERT INTO public.exam_results
                (test_id, fullname, group_name, university, faculty, correct, total, score,
                 started_at, finished_at, time_spent_seconds)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s);
        """, (row["test_id"], row.get("fullname"), row.get("group"), row.get("university"),
              row.get("faculty"), row.get("correct"), row.get("total"), row.get("score"),
              row.get("started_at"), row.get("finished_at"), row.get("time_spent_seconds")))

    def list_results(self, test_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = self.fetch_all("""
            SELECT test_id, fullname, group_name, university, faculty, correct, total, score,
                   started_at, finished_at, time_spent_seconds
              FROM public.exam_results
             WHERE (%s::text IS NULL OR test_id = %s)
             ORDER BY finished_at, id;
        """, (test_id, test_id))
        out = []
        for r in rows or []:
            d = dict(r)
            d["group"] = d.pop("group_name", None)
            d["started_at"] = iso(parse_iso(d.get("started_at")))
            d["finished_at"] = iso(parse_iso(d.get("finished_at")))
            out.append(d)
        return out
