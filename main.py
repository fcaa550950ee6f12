# main.py: exam service entry point, BASE_PATH-aware (psycopg3 + pooling)
# Students sign in with generated credentials (cookie session, exam.py);
# the teacher signs in with a password or Google and uses admin.py.

import os
import logging
from datetime import timedelta
from contextlib import contextmanager
from urllib.parse import urlsplit, urlunsplit
from typing import Optional

from flask import Flask, abort, request, redirect, g, session, jsonify

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from admin import create_admin_blueprint
from attempts import AttemptEngine
from auth import SessionGate
from exam import create_exam_blueprint
from store import FileStore, PgStore, pg_conninfo

# =============================================================================
# Logging
# =============================================================================
LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("main")

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "1").lower() in {"1", "true", "yes"}
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=COOKIE_SECURE,
)

# =============================================================================
# Exam settings
# =============================================================================
TEACHER_EMAIL = (os.getenv("TEACHER_EMAIL", "") or "").strip().lower()
TEACHER_PASSWORD = os.getenv("TEACHER_PASSWORD", "")
EXAM_SESSION_HOURS = int(os.getenv("EXAM_SESSION_HOURS") or 6)
EXAM_SESSION_COOKIE = os.getenv("EXAM_SESSION_COOKIE") or "exam_session"
ENFORCE_TIME_LIMIT = os.getenv("ENFORCE_TIME_LIMIT", "0").lower() in {"1", "true", "yes"}
TIME_LIMIT_GRACE_SEC = int(os.getenv("TIME_LIMIT_GRACE_SEC") or 30)

DATA_DIR = os.getenv("DATA_DIR") or os.path.join(os.getcwd(), "data")
RESULTS_DIR = os.getenv("RESULTS_DIR") or None

# =============================================================================
# OAuth (Google), teacher sign-in only
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("[Auth] Google OAuth configured for teacher sign-in")
elif not TEACHER_PASSWORD:
    logger.warning("[Auth] neither Google OAuth nor TEACHER_PASSWORD is set; teacher routes are unreachable")

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/teacher/google/callback"):
        return base
    return base.rstrip("/") + "/teacher/google/callback"

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/teacher/me")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/teacher/me")
    safe = urlunsplit(("", "", parts.path or "/", parts.query, ""))
    return safe or _bp("/teacher/me")

# =============================================================================
# DB configuration
# =============================================================================
STORE_BACKEND = (os.getenv("STORE_BACKEND") or (
    "postgres" if any(os.getenv(k) for k in ("DATABASE_URL", "DATABASE_URL_LOCAL", "DB_NAME")) else "file"
)).lower()

def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=pg_conninfo(os.environ, _on_managed_runtime()), min_size=1, max_size=6)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

# =============================================================================
# Store + engine
# =============================================================================
def build_store():
    if STORE_BACKEND == "postgres":
        pg = PgStore({
            "fetch_one": fetch_one, "fetch_all": fetch_all,
            "execute": execute, "execute_returning": execute_returning,
        })
        pg.ensure_schema()
        logger.info("[store] using PostgreSQL")
        return pg
    logger.info("[store] using files under %s", DATA_DIR)
    return FileStore(DATA_DIR, RESULTS_DIR)

store = build_store()
gate = SessionGate(store, ttl=timedelta(hours=EXAM_SESSION_HOURS))
engine = AttemptEngine(
    store, gate,
    enforce_time_limit=ENFORCE_TIME_LIMIT,
    grace_seconds=TIME_LIMIT_GRACE_SEC,
)

# =============================================================================
# Identity (teacher)
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

@app.before_request
def attach_identity():
    email = _session_email()
    if email:
        g.user_email = email

# =============================================================================
# Routes (health, Google sign-in)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        store.get_exam_mode()
        return ("ok", 200)
    except Exception as e:
        logger.error("[healthz] store check failed: %s", e)
        return (f"error: {e}", 500)

def teacher_google_login():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

def teacher_google_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()

    claims = token.get("userinfo") if isinstance(token, dict) else None
    if not claims:
        resp = provider.google.get("https://openidconnect.googleapis.com/v1/userinfo")
        claims = resp.json()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")
    if not TEACHER_EMAIL or email != TEACHER_EMAIL:
        session.pop("user", None)
        logger.info("[Auth] Google sign-in refused for a non-teacher account")
        return jsonify({"ok": False, "error": "Forbidden"}), 403

    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "sub": claims.get("sub"),
    }
    return redirect(_sanitize_next(session.pop("login_next", None)))

app.add_url_rule(_bp("/teacher/google/login"), endpoint="teacher_google_login",
                 view_func=teacher_google_login, methods=["GET"])
app.add_url_rule(_bp("/teacher/google/callback"), endpoint="teacher_google_callback",
                 view_func=teacher_google_callback, methods=["GET"])

# =============================================================================
# Blueprints
# =============================================================================
app.register_blueprint(create_admin_blueprint(BASE_PATH, {
    "store": store,
    "teacher_email": TEACHER_EMAIL,
    "teacher_password": TEACHER_PASSWORD,
}, name="admin"))

app.register_blueprint(create_exam_blueprint(BASE_PATH, {
    "store": store,
    "engine": engine,
    "gate": gate,
    "cookie_name": EXAM_SESSION_COOKIE,
    "session_hours": EXAM_SESSION_HOURS,
    "cookie_secure": COOKIE_SECURE,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
