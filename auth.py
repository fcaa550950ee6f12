# auth.py
# -----------------------------------------------------------------------------
# Student credentials and the Session/Auth Gate.
# Passwords are scrypt-hashed with a per-account salt; sessions are random
# tokens stored server-side and carried in an httpOnly cookie.
# -----------------------------------------------------------------------------
import hmac
import hashlib
import secrets
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import InvalidCredentials, NotFound, Unauthorized, ValidationError
from roster import find_group_by_date
from store import DEFAULT_UNIVERSITY, iso, new_id, utcnow

logger = logging.getLogger(__name__)

SALT_BYTES = 16
KEY_LENGTH = 64
SCRYPT_N, SCRYPT_R, SCRYPT_P = 16384, 8, 1
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O/1/I
PASSWORD_LENGTH = 8

_DUMMY_SALT = secrets.token_hex(SALT_BYTES)


# ------------------------------- hashing -------------------------------------
def _scrypt(password: str, salt: str) -> bytes:
    return hashlib.scrypt(password.encode("utf-8"), salt=salt.encode("utf-8"),
                          n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P,
                          maxmem=64 * 1024 * 1024, dklen=KEY_LENGTH)

def hash_password(password: str) -> Tuple[str, str]:
    """Returns (hash_hex, salt_hex)."""
    salt = secrets.token_hex(SALT_BYTES)
    return _scrypt(password, salt).hex(), salt

def verify_password(password: str, stored_hash: str, salt: str) -> bool:
    try:
        return hmac.compare_digest(_scrypt(password, salt), bytes.fromhex(stored_hash or ""))
    except (ValueError, TypeError):
        return False

def generate_password() -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(PASSWORD_LENGTH))

def generate_login(group_name: str, num: int) -> str:
    return f"{group_name}-{num:03d}"

def public_meta(account: Dict[str, Any]) -> Dict[str, Any]:
    """The account fields a student may see. Never the hash or salt."""
    return {
        "university": account.get("university") or DEFAULT_UNIVERSITY,
        "program": account.get("program"),
        "program_id": account.get("program_id"),
        "group": account.get("group"),
        "full_name": account.get("full_name"),
        "exam_date": account.get("exam_date"),
    }


# ------------------------------- gate ----------------------------------------
class SessionGate:
    def __init__(self, store, ttl: timedelta = timedelta(hours=6),
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ttl = ttl
        self.clock = clock

    def login(self, login: str, password: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        login = (login or "").strip()
        if not login or not password:
            raise ValidationError("login and password are required")

        account = self.store.get_account_by_login(login)
        if account is None:
            # spend the same scrypt cost as a real check
            verify_password(password, "", _DUMMY_SALT)
            logger.info("[auth] failed login")
            raise InvalidCredentials()
        ok = verify_password(password, account.get("password_hash") or "", account.get("salt") or "")
        if not ok or account.get("active") is False:
            logger.info("[auth] failed login")
            raise InvalidCredentials()

        session = self.store.create_session(account["id"], self.ttl, self.clock())
        logger.info("[auth] login account=%s", account["id"])
        return session, public_meta(account)

    def logout(self, token: Optional[str]) -> None:
        if token:
            self.store.delete_session(token)

    def resolve(self, token: Optional[str]) -> Dict[str, Any]:
        """Account behind a live session token, or Unauthorized."""
        if not token:
            raise Unauthorized("Not authenticated")
        session = self.store.get_session(token, self.clock())
        if session is None:
            raise Unauthorized("Session expired")
        account = self.store.get_account_by_id(session["account_id"])
        if account is None or account.get("active") is False:
            raise Unauthorized("Account not found")
        return account

    def me(self, token: Optional[str]) -> Dict[str, Any]:
        return public_meta(self.resolve(token))


# ------------------------------- credentials ---------------------------------
def generate_credentials(store, roster: Dict[str, Any], group: str, exam_date: str,
                         regenerate: bool = False) -> Dict[str, Any]:
    group = (group or "").strip()
    exam_date = (exam_date or "").strip()
    if not group or not exam_date:
        raise ValidationError("group and exam_date are required")
    found = find_group_by_date(roster, group, exam_date)
    if not found:
        raise NotFound("Group not found")
    program, target = found
    students = target.get("students") or []
    if not students:
        raise ValidationError("Group has no students")

    accounts = store.list_accounts()
    created: List[Dict[str, Any]] = []
    for i, full_name in enumerate(students, start=1):
        login = generate_login(group, i)
        existing = next((a for a in accounts if a.get("login") == login or (
            a.get("group") == group and a.get("full_name") == full_name
            and a.get("exam_date") == exam_date)), None)

        if existing and not regenerate:
            created.append({"login": existing.get("login"), "full_name": full_name, "group": group,
                            "exam_date": exam_date, "password": None, "existing": True})
            continue

        password = generate_password()
        pw_hash, salt = hash_password(password)
        account = {
            "id": existing["id"] if existing else new_id(),
            "login": login,
            "password_hash": pw_hash,
            "salt": salt,
            "full_name": full_name,
            "university": roster.get("university") or DEFAULT_UNIVERSITY,
            "program": program.get("program_name"),
            "program_id": program.get("program_id"),
            "group": group,
            "exam_date": exam_date,
            "active": True,
            "created_at": iso(utcnow()),
        }
        store.save_account(account)
        created.append({"login": login, "full_name": full_name, "group": group,
                        "exam_date": exam_date, "password": password, "existing": False})

    new_count = sum(1 for c in created if not c["existing"])
    logger.info("[auth] credentials for %s/%s: %d new of %d", group, exam_date, new_count, len(created))
    return {"ok": True, "credentials": created, "total": len(created), "new_count": new_count}

def list_credentials(store, group: str = "", exam_date: str = "") -> List[Dict[str, Any]]:
    out = []
    for a in store.list_accounts():
        if group and a.get("group") != group:
            continue
        if exam_date and a.get("exam_date") != exam_date:
            continue
        out.append({
            "login": a.get("login"),
            "full_name": a.get("full_name"),
            "group": a.get("group"),
            "exam_date": a.get("exam_date"),
            "program": a.get("program"),
            "active": a.get("active") is not False,
            "created_at": a.get("created_at"),
        })
    return out
