# admin.py
# -----------------------------------------------------------------------------
# Teacher blueprint under /teacher. Every route except login/logout/me sits
# behind one gate: 401 without an identity, 403 for anyone but TEACHER_EMAIL.
# Identity comes from g.user_email, set by main.py from the Flask session.
# -----------------------------------------------------------------------------
import hmac
import logging
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request, session, g

from auth import generate_credentials, list_credentials
from banks import add_bank, delete_bank, list_banks, parse_questions
from errors import Forbidden, Unauthorized, ValidationError, register_error_handler
from exam_config import load_config, set_config, set_exam_mode
from roster import credential_groups, export_ids, get_roster, set_roster

logger = logging.getLogger(__name__)


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Teacher blueprint, mounted at /<BASE_PATH>/teacher:
      • Teacher session (password login; Google sign-in lives in main.py)
      • Exam mode, configuration, roster
      • Question banks (JSON or plain-text upload)
      • Student credentials
      • Result exports
    deps:
      - store
      - teacher_email: the one identity allowed through the gate
      - teacher_password: enables POST /teacher/login when set
    """
    store = deps["store"]
    TEACHER_EMAIL = (deps.get("teacher_email") or "").strip().lower()
    TEACHER_PASSWORD = deps.get("teacher_password") or ""

    mount_prefix = (url_prefix.rstrip("/") + "/teacher") if url_prefix else "/teacher"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)
    register_error_handler(bp)

    # ---------- Gate ----------
    def _current_email() -> str:
        return (getattr(g, "user_email", None) or "").strip().lower()

    def require_teacher():
        email = _current_email()
        if not email:
            raise Unauthorized()
        if not TEACHER_EMAIL or email != TEACHER_EMAIL:
            raise Forbidden()

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    # ---------- Teacher session ----------
    @bp.post("/login")
    def teacher_login():
        if not TEACHER_PASSWORD or not TEACHER_EMAIL:
            return jsonify({"ok": False, "error": "Password login is disabled"}), 404
        password = str(_body().get("password") or "")
        if not hmac.compare_digest(password.encode("utf-8"), TEACHER_PASSWORD.encode("utf-8")):
            logger.info("[admin] failed teacher login")
            raise Unauthorized("Invalid password")
        session["user"] = {"email": TEACHER_EMAIL, "name": "Teacher", "sub": "password-login"}
        logger.info("[admin] teacher signed in")
        return jsonify({"ok": True, "email": TEACHER_EMAIL})

    @bp.post("/logout")
    def teacher_logout():
        session.pop("user", None)
        return jsonify({"ok": True})

    @bp.get("/me")
    def teacher_me():
        email = _current_email()
        return jsonify({
            "ok": True,
            "email": email or None,
            "is_teacher": bool(email and TEACHER_EMAIL and email == TEACHER_EMAIL),
        })

    # ---------- Exam mode ----------
    @bp.post("/exam-mode")
    def teacher_exam_mode():
        require_teacher()
        body = _body()
        if "enabled" not in body:
            raise ValidationError("enabled must be boolean")
        return jsonify({"ok": True, "enabled": set_exam_mode(store, body["enabled"])})

    # ---------- Banks ----------
    @bp.get("/banks")
    def teacher_list_banks():
        require_teacher()
        return jsonify(list_banks(store))

    @bp.post("/banks")
    def teacher_add_bank():
        require_teacher()
        body = _body()
        subject = body.get("subject_name") or request.args.get("subject_name") or ""
        if isinstance(body.get("questions"), str):
            questions = parse_questions(body["questions"])
        elif "questions" in body:
            questions = body.get("questions")
        elif isinstance(body.get("text"), str):
            questions = parse_questions(body["text"])
        elif request.mimetype == "text/plain":
            questions = parse_questions(request.get_data(as_text=True))
        else:
            raise ValidationError("questions or text is required")
        created = add_bank(store, str(subject), questions)
        return jsonify({"ok": True, **created})

    @bp.delete("/banks/<bank_id>")
    def teacher_delete_bank(bank_id: str):
        require_teacher()
        delete_bank(store, bank_id)
        return jsonify({"ok": True})

    # ---------- Roster ----------
    @bp.get("/roster")
    def teacher_get_roster():
        require_teacher()
        return jsonify(get_roster(store))

    @bp.post("/roster")
    def teacher_set_roster():
        require_teacher()
        body = request.get_json(silent=True)
        roster = set_roster(store, body.get("roster", body) if isinstance(body, dict) else body)
        return jsonify({"ok": True, "roster": roster})

    # ---------- Configuration ----------
    @bp.get("/config")
    def teacher_get_config():
        require_teacher()
        return jsonify(load_config(store).to_dict())

    @bp.post("/config")
    def teacher_set_config():
        require_teacher()
        cfg = set_config(store, _body())
        return jsonify({"ok": True, "config": cfg.to_dict()})

    # ---------- Credentials ----------
    @bp.post("/credentials/generate")
    def teacher_generate_credentials():
        require_teacher()
        body = _body()
        result = generate_credentials(
            store, get_roster(store),
            str(body.get("group") or ""), str(body.get("exam_date") or ""),
            regenerate=bool(body.get("regenerate")),
        )
        return jsonify(result)

    @bp.get("/credentials")
    def teacher_list_credentials():
        require_teacher()
        group = (request.args.get("group") or "").strip()
        exam_date = (request.args.get("exam_date") or "").strip()
        return jsonify(list_credentials(store, group, exam_date))

    @bp.get("/credentials/groups")
    def teacher_credential_groups():
        require_teacher()
        return jsonify(credential_groups(get_roster(store)))

    # ---------- Results ----------
    @bp.get("/exports")
    def teacher_exports():
        require_teacher()
        return jsonify(export_ids(get_roster(store)))

    @bp.get("/results")
    def teacher_results():
        require_teacher()
        test_id: Optional[str] = (request.args.get("test_id") or "").strip() or None
        return jsonify(store.list_results(test_id))

    return bp
