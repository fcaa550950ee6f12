# banks.py
# -----------------------------------------------------------------------------
# Question Bank Store: ingestion (normalize + validate), listing, deletion.
# Options are normalized to one shape {"text": str, "isCorrect": bool} here so
# nothing downstream branches on how a bank was uploaded.
# -----------------------------------------------------------------------------
import re
import logging
from typing import Any, Dict, List

from errors import NotFound, ValidationError
from exam_config import load_config, save_config
from store import new_id, iso, utcnow

logger = logging.getLogger(__name__)

_OPTION_PREFIX_RE = re.compile(r"^\*?\s*[a-dA-D]\)\s*")
_QUESTION_NUMBER_RE = re.compile(r"^\d+\.\s*")


# ------------------------------- normalization -------------------------------
def clean_option_prefix(text: str) -> str:
    """Strip a leading 'a)', '*B)' style label."""
    return _OPTION_PREFIX_RE.sub("", text or "").strip()

def normalize_option(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        return {"text": raw.strip(), "isCorrect": False}
    if isinstance(raw, dict):
        text = raw.get("text")
        correct = raw.get("isCorrect", raw.get("is_correct", raw.get("correct", False)))
        return {"text": str(text if text is not None else "").strip(), "isCorrect": bool(correct)}
    raise ValidationError("option must be a string or an object with 'text'")

def normalize_question(raw: Any, number: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationError(f"Question {number}: must be an object")
    text = str(raw.get("question") or raw.get("text") or "").strip()
    if not text:
        raise ValidationError(f"Question {number}: text is empty")
    options_raw = raw.get("options")
    if not isinstance(options_raw, list):
        raise ValidationError(f"Question {number}: options must be a list")
    options = [normalize_option(o) for o in options_raw]

    # A bare string list may mark the answer by index.
    answer = raw.get("correct_index", raw.get("answer"))
    if isinstance(answer, int) and not isinstance(answer, bool) and 0 <= answer < len(options):
        options[answer]["isCorrect"] = True

    if len(options) < 2:
        raise ValidationError(f"Question {number}: needs at least 2 options")
    if any(not o["text"] for o in options):
        raise ValidationError(f"Question {number}: option text is empty")
    n_correct = sum(1 for o in options if o["isCorrect"])
    if n_correct != 1:
        raise ValidationError(f"Question {number}: must have exactly one correct option (found {n_correct})")
    return {"question": text, "options": options}

def normalize_questions(raw_questions: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValidationError("questions must be a non-empty list")
    return [normalize_question(q, i) for i, q in enumerate(raw_questions, start=1)]


# ------------------------------- text format ---------------------------------
def parse_questions(text: str) -> List[Dict[str, Any]]:
    """
    Plain-text bank format. Blocks are separated by blank lines; the first line
    is the question (leading '12.' dropped), the rest are options, and a leading
    '*' marks the correct one:

        1. Capital of France?
        a) Berlin
        *b) Paris
        c) Rome
    """
    blocks = re.split(r"\n\s*\n", (text or "").replace("\r\n", "\n").strip())
    out: List[Dict[str, Any]] = []
    for block in blocks:
        lines = [ln.strip() for ln in block.strip().split("\n") if ln.strip()]
        if not lines:
            continue
        question = _QUESTION_NUMBER_RE.sub("", lines[0]).strip()
        options = []
        for line in lines[1:]:
            correct = line.startswith("*")
            options.append({"text": clean_option_prefix(line.lstrip("*")), "isCorrect": correct})
        out.append({"question": question, "options": options})
    return out


# ------------------------------- operations ----------------------------------
def add_bank(store, subject_name: str, questions: Any) -> Dict[str, Any]:
    subject = (subject_name or "").strip()
    if not subject:
        raise ValidationError("subject_name required")
    normalized = normalize_questions(questions)

    cfg = load_config(store)
    min_count = max(1, cfg.questions_per_bank)
    if len(normalized) < min_count:
        raise ValidationError(f"Bank must contain at least {min_count} questions")

    bank = {
        "bank_id": new_id(),
        "subject_name": subject,
        "questions": normalized,
        "created_at": iso(utcnow()),
    }
    store.insert_bank(bank)
    logger.info("[banks] added bank %s (%s, %d questions)", bank["bank_id"], subject, len(normalized))
    return {"bank_id": bank["bank_id"], "questions_count": len(normalized)}

def list_banks(store) -> List[Dict[str, Any]]:
    return [{
        "bank_id": b.get("bank_id"),
        "subject_name": b.get("subject_name"),
        "questions_count": len(b.get("questions") or []),
        "created_at": b.get("created_at"),
    } for b in store.list_banks()]

def delete_bank(store, bank_id: str) -> None:
    if not store.delete_bank(bank_id):
        raise NotFound("Bank not found")
    cfg = load_config(store)
    if bank_id in cfg.bank_ids:
        save_config(store, cfg.replace(bank_ids=[b for b in cfg.bank_ids if b != bank_id]))
        logger.info("[banks] removed deleted bank %s from exam config", bank_id)
