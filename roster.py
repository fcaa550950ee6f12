# roster.py
# -----------------------------------------------------------------------------
# Roster Registry: programs -> groups (one exam_date each) -> student names.
#
#   {"university": "...",
#    "programs": [{"program_id": "iqt", "program_name": "Economics",
#                  "groups": [{"group_name": "IQT-101", "exam_date": "2025-06-01",
#                              "students": ["Ali Valiyev", ...]}]}]}
# -----------------------------------------------------------------------------
import re
import logging
from typing import Any, Dict, List, Optional, Tuple

from errors import ValidationError
from store import DEFAULT_UNIVERSITY

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _s(v: Any) -> str:
    return v.strip() if isinstance(v, str) else ""

def empty_roster() -> Dict[str, Any]:
    return {"university": DEFAULT_UNIVERSITY, "programs": []}

def get_roster(store) -> Dict[str, Any]:
    roster = store.get_roster()
    if not isinstance(roster, dict):
        return empty_roster()
    out = dict(roster)
    if not isinstance(out.get("programs"), list):
        out["programs"] = []
    if not _s(out.get("university")):
        out["university"] = DEFAULT_UNIVERSITY
    return out

def validate_roster(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValidationError("Invalid roster")
    if not isinstance(raw.get("programs"), list):
        raise ValidationError("roster.programs must be array")

    programs: List[Dict[str, Any]] = []
    seen_programs = set()
    for pi, p in enumerate(raw["programs"], start=1):
        if not isinstance(p, dict):
            raise ValidationError(f"programs[{pi}] must be an object")
        program_id, program_name = _s(p.get("program_id")), _s(p.get("program_name"))
        if not program_id or not program_name:
            raise ValidationError(f"programs[{pi}]: program_id and program_name are required")
        if program_id in seen_programs:
            raise ValidationError(f"duplicate program_id: {program_id}")
        seen_programs.add(program_id)

        groups_raw = p.get("groups") or []
        if not isinstance(groups_raw, list):
            raise ValidationError(f"programs[{pi}].groups must be array")
        groups: List[Dict[str, Any]] = []
        seen_groups = set()
        for gi, g in enumerate(groups_raw, start=1):
            if not isinstance(g, dict):
                raise ValidationError(f"programs[{pi}].groups[{gi}] must be an object")
            group_name, exam_date = _s(g.get("group_name")), _s(g.get("exam_date"))
            if not group_name:
                raise ValidationError(f"programs[{pi}].groups[{gi}]: group_name is required")
            if not _DATE_RE.match(exam_date):
                raise ValidationError(f"group {group_name}: exam_date must be YYYY-MM-DD")
            if group_name in seen_groups:
                raise ValidationError(f"duplicate group {group_name} in program {program_id}")
            seen_groups.add(group_name)
            students_raw = g.get("students") or []
            if not isinstance(students_raw, list):
                raise ValidationError(f"group {group_name}: students must be array")
            students: List[str] = []
            for s in students_raw:
                name = _s(s)
                if name and name not in students:
                    students.append(name)
            groups.append({"group_name": group_name, "exam_date": exam_date, "students": students})
        programs.append({"program_id": program_id, "program_name": program_name, "groups": groups})

    return {"university": _s(raw.get("university")) or DEFAULT_UNIVERSITY, "programs": programs}

def set_roster(store, raw: Any) -> Dict[str, Any]:
    roster = validate_roster(raw)
    store.set_roster(roster)
    logger.info("[roster] saved %d programs, %d students", len(roster["programs"]),
                sum(len(g["students"]) for p in roster["programs"] for g in p["groups"]))
    return roster


# ------------------------------- lookups -------------------------------------
def find_program(roster: Dict[str, Any], program_id: str) -> Optional[Dict[str, Any]]:
    for p in roster.get("programs") or []:
        if p.get("program_id") == program_id:
            return p
    return None

def find_group(program: Dict[str, Any], group_name: str) -> Optional[Dict[str, Any]]:
    for g in program.get("groups") or []:
        if g.get("group_name") == group_name:
            return g
    return None

def find_enrollment(roster: Dict[str, Any], program_id: str, group_name: str,
                    full_name: str) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """(program, group) when the student is listed there, else None."""
    program = find_program(roster, program_id)
    if not program:
        return None
    group = find_group(program, group_name)
    if not group or full_name not in (group.get("students") or []):
        return None
    return program, group

def find_group_by_date(roster: Dict[str, Any], group_name: str,
                       exam_date: str) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
    for p in roster.get("programs") or []:
        for g in p.get("groups") or []:
            if g.get("group_name") == group_name and g.get("exam_date") == exam_date:
                return p, g
    return None


# ------------------------------- listings ------------------------------------
def list_programs(roster: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{"program_id": p.get("program_id"), "program_name": p.get("program_name")}
            for p in roster.get("programs") or []]

def list_groups(roster: Dict[str, Any], program_id: str) -> List[Dict[str, Any]]:
    program = find_program(roster, program_id)
    if not program:
        return []
    return [{"group_name": g.get("group_name"), "exam_date": g.get("exam_date")}
            for g in program.get("groups") or []]

def list_students(roster: Dict[str, Any], program_id: str, group_name: str) -> List[Dict[str, Any]]:
    program = find_program(roster, program_id)
    group = find_group(program, group_name) if program else None
    if not group:
        return []
    return [{"fullname": s, "exam_date": group.get("exam_date")} for s in group.get("students") or []]

def credential_groups(roster: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{
        "group_name": g.get("group_name"),
        "exam_date": g.get("exam_date"),
        "program_name": p.get("program_name"),
        "student_count": len(g.get("students") or []),
    } for p in roster.get("programs") or [] for g in p.get("groups") or []]

def result_test_id(exam_date: str, program_id: str) -> str:
    return f"DAK_{exam_date}_{program_id}"

def export_ids(roster: Dict[str, Any]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for p in roster.get("programs") or []:
        dates = sorted({g.get("exam_date") for g in p.get("groups") or [] if g.get("exam_date")})
        for exam_date in dates:
            out.append({
                "test_id": result_test_id(exam_date, p.get("program_id")),
                "label": f"{p.get('program_name')} ({exam_date})",
            })
    return out
