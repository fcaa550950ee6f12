# exam.py
# -----------------------------------------------------------------------------
# Student-facing API.
# - Login issues an httpOnly session cookie; attempt start requires it
# - Attempt ids are capabilities: questions/answer/finish/status take the id
# - Question payloads never carry isCorrect and are never cached
# - Public read-only views: exam mode, max attempts, roster browse
# -----------------------------------------------------------------------------
import logging
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request

from errors import ExamError, Unauthorized, error_payload, register_error_handler
from exam_config import load_config
from roster import get_roster, list_groups, list_programs, list_students

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}


def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns the student Blueprint mounted at base_path.
    Required deps: store, engine (AttemptEngine), gate (SessionGate)
    Optional deps: cookie_name, session_hours, cookie_secure
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    register_error_handler(bp)

    store = deps["store"]
    engine = deps["engine"]
    gate = deps["gate"]
    COOKIE_NAME = deps.get("cookie_name") or "exam_session"
    SESSION_HOURS = int(deps.get("session_hours") or 6)
    COOKIE_SECURE = bool(deps.get("cookie_secure", False))

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _token() -> Optional[str]:
        return request.cookies.get(COOKIE_NAME) or None

    def _unauthorized(err: ExamError):
        body, status = error_payload(err)
        resp = jsonify(body)
        resp.delete_cookie(COOKIE_NAME, path="/")
        return resp, status

    # ------------------------------- auth -------------------------------------
    @bp.post("/auth/login")
    def auth_login():
        data = _body()
        session, meta = gate.login(data.get("login") or "", data.get("password") or "")
        resp = jsonify({"ok": True, "meta": meta})
        resp.set_cookie(COOKIE_NAME, session["token"], max_age=SESSION_HOURS * 3600,
                        httponly=True, samesite="Lax", secure=COOKIE_SECURE, path="/")
        return resp

    @bp.post("/auth/logout")
    def auth_logout():
        gate.logout(_token())
        resp = jsonify({"ok": True})
        resp.delete_cookie(COOKIE_NAME, path="/")
        return resp

    @bp.get("/auth/me")
    def auth_me():
        try:
            meta = gate.me(_token())
        except Unauthorized as e:
            return _unauthorized(e)
        return jsonify({"ok": True, "meta": meta})

    # ------------------------------- public views -----------------------------
    @bp.get("/exam-mode")
    def exam_mode():
        return jsonify({"enabled": bool(store.get_exam_mode())})

    @bp.get("/config")
    def public_config():
        return jsonify({"max_attempts_per_student": load_config(store).max_attempts_per_student})

    @bp.get("/programs")
    def programs():
        return jsonify(list_programs(get_roster(store)))

    @bp.get("/groups")
    def groups():
        program_id = (request.args.get("program_id") or "").strip()
        return jsonify(list_groups(get_roster(store), program_id))

    @bp.get("/students")
    def students():
        program_id = (request.args.get("program_id") or "").strip()
        group_name = (request.args.get("group_name") or "").strip()
        return jsonify(list_students(get_roster(store), program_id, group_name))

    # ------------------------------- attempts ---------------------------------
    @bp.post("/attempt/start")
    def attempt_start():
        try:
            attempt_id = engine.start(_token())
        except Unauthorized as e:
            return _unauthorized(e)
        return jsonify({"attempt_id": attempt_id})

    @bp.get("/attempt/<attempt_id>/questions")
    def attempt_questions(attempt_id: str):
        resp = jsonify(engine.get_questions(attempt_id))
        for k, v in NO_CACHE_HEADERS.items():
            resp.headers[k] = v
        return resp

    @bp.post("/attempt/<attempt_id>/answer")
    def attempt_answer(attempt_id: str):
        data = _body()
        engine.submit_answer(attempt_id, data.get("question_index"), data.get("chosen_option"))
        return jsonify({"ok": True})

    @bp.post("/attempt/<attempt_id>/finish")
    def attempt_finish(attempt_id: str):
        return jsonify(engine.finish(attempt_id))

    @bp.get("/attempt/<attempt_id>/status")
    def attempt_status(attempt_id: str):
        return jsonify(engine.status(attempt_id))

    return bp
