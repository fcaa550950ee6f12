# errors.py
# -----------------------------------------------------------------------------
# Error taxonomy shared by the stores, the engine and both blueprints.
# Every error carries the HTTP status it is surfaced with and a short message
# that is safe to show to the caller.
# -----------------------------------------------------------------------------
from typing import Tuple

from flask import Blueprint, jsonify


class ExamError(Exception):
    status = 500
    default_message = "Internal error"

    def __init__(self, message: str = "", status: int = 0):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status:
            self.status = status


class Unauthorized(ExamError):
    status = 401
    default_message = "Not authenticated"


class InvalidCredentials(ExamError):
    # One message for unknown login, inactive account and wrong password.
    status = 401
    default_message = "Invalid login or password"


class Forbidden(ExamError):
    status = 403
    default_message = "Forbidden"


class NotFound(ExamError):
    status = 404
    default_message = "Not found"


class ValidationError(ExamError):
    status = 400
    default_message = "Invalid input"


class Conflict(ExamError):
    status = 409
    default_message = "Conflict"


class NotEligible(ExamError):
    status = 400
    default_message = "Student is not on the roster"


class AttemptLimitExceeded(ExamError):
    status = 403
    default_message = "Attempt limit reached"


class ExamModeDisabled(ExamError):
    status = 409
    default_message = "Exam mode is OFF"


def error_payload(err: ExamError) -> Tuple[dict, int]:
    return {"ok": False, "error": err.message}, err.status


def register_error_handler(bp: Blueprint) -> None:
    """Render any ExamError raised inside `bp` as {"ok": false, "error": ...}."""

    @bp.errorhandler(ExamError)
    def _handle_exam_error(err: ExamError):
        body, status = error_payload(err)
        return jsonify(body), status
