# exam_config.py
# -----------------------------------------------------------------------------
# Teacher-set exam parameters and the global exam-mode switch.
# set_config validates everything before writing anything.
# -----------------------------------------------------------------------------
import logging
from dataclasses import dataclass, field, asdict, replace as _dc_replace
from typing import Any, Dict, List, Optional

from errors import ValidationError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_CAP = 10

DEFAULTS: Dict[str, Any] = {
    "duration_minutes": 80,
    "total_questions": 50,
    "points_per_question": 2,
    "questions_per_bank": 10,
    "max_attempts_per_student": 1,
    "bank_ids": [],
}

NUMERIC_FIELDS = (
    "duration_minutes",
    "total_questions",
    "points_per_question",
    "questions_per_bank",
    "max_attempts_per_student",
)


@dataclass(frozen=True)
class ExamConfig:
    duration_minutes: int = DEFAULTS["duration_minutes"]
    total_questions: int = DEFAULTS["total_questions"]
    points_per_question: int = DEFAULTS["points_per_question"]
    questions_per_bank: int = DEFAULTS["questions_per_bank"]
    max_attempts_per_student: int = DEFAULTS["max_attempts_per_student"]
    bank_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["bank_ids"] = list(self.bank_ids)
        return d

    def replace(self, **changes) -> "ExamConfig":
        return _dc_replace(self, **changes)


# ------------------------------- parsing -------------------------------------
def _positive_int(value: Any) -> Optional[int]:
    """Finite positive integer, or None. Accepts ints and digit strings, never bools."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")) or not value.is_integer():
            return None
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        n = int(value.strip())
        return n if n > 0 else None
    return None

def _bank_id_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(x).strip() for x in value if x is not None and str(x).strip()]

def config_from_stored(raw: Optional[Dict[str, Any]]) -> ExamConfig:
    """Lenient read of a stored document: bad or missing fields fall back to defaults."""
    raw = raw if isinstance(raw, dict) else {}
    values: Dict[str, Any] = {}
    for name in NUMERIC_FIELDS:
        values[name] = _positive_int(raw.get(name)) or DEFAULTS[name]
    values["bank_ids"] = _bank_id_list(raw.get("bank_ids"))
    return ExamConfig(**values)

def load_config(store) -> ExamConfig:
    return config_from_stored(store.get_config())

def save_config(store, cfg: ExamConfig) -> ExamConfig:
    store.set_config(cfg.to_dict())
    return cfg


# ------------------------------- validation ----------------------------------
def validate_config(store, candidate: Dict[str, Any]) -> ExamConfig:
    values: Dict[str, Any] = {}
    for name in NUMERIC_FIELDS:
        n = _positive_int(candidate.get(name))
        if n is None:
            raise ValidationError(f"{name} must be a positive integer")
        values[name] = n
    if values["max_attempts_per_student"] > MAX_ATTEMPTS_CAP:
        raise ValidationError(f"max_attempts_per_student must be 1..{MAX_ATTEMPTS_CAP}")

    raw_ids = candidate.get("bank_ids")
    if not isinstance(raw_ids, list):
        raise ValidationError("bank_ids must be a list")
    bank_ids = _bank_id_list(raw_ids)
    if len(set(bank_ids)) != len(bank_ids):
        raise ValidationError("bank_ids must be unique")

    if len(bank_ids) * values["questions_per_bank"] != values["total_questions"]:
        raise ValidationError("len(bank_ids) * questions_per_bank must equal total_questions")

    for bank_id in bank_ids:
        bank = store.get_bank(bank_id)
        if bank is None:
            raise ValidationError(f"Bank not found: {bank_id}")
        count = len(bank.get("questions") or [])
        if count < values["questions_per_bank"]:
            raise ValidationError(
                f"Bank {bank_id} has {count} questions, needs at least {values['questions_per_bank']}")

    return ExamConfig(bank_ids=bank_ids, **values)

def set_config(store, body: Dict[str, Any]) -> ExamConfig:
    """Merge `body` over the current config, validate, then write atomically."""
    current = load_config(store).to_dict()
    candidate = dict(current)
    for name in NUMERIC_FIELDS:
        if body.get(name) is not None:
            candidate[name] = body[name]
    if "bank_ids" in body:
        candidate["bank_ids"] = body["bank_ids"]

    cfg = validate_config(store, candidate)
    save_config(store, cfg)
    logger.info("[config] saved: %s", cfg.to_dict())
    return cfg


# ------------------------------- exam mode -----------------------------------
def parse_boolean(v: Any) -> Optional[bool]:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v == 1
    s = str(v if v is not None else "").strip().lower()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return None

def get_exam_mode(store) -> bool:
    return store.get_exam_mode()

def set_exam_mode(store, value: Any) -> bool:
    enabled = parse_boolean(value)
    if enabled is None:
        raise ValidationError("enabled must be boolean")
    saved = store.set_exam_mode(enabled)
    logger.info("[config] exam mode %s", "ON" if saved else "OFF")
    return saved
