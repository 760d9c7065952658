"""SQLite persistence for permits, users and sessions.

Every write goes through `with db() as conn:` so a status change, its history
entry and its audit row commit together or not at all.
"""

from __future__ import annotations

import contextvars
import hashlib
import hmac
import logging
import os
import re
import secrets
import sqlite3
from datetime import date, datetime, timezone
from typing import Any

from . import config
from .errors import AlreadyExists, InvalidPermitData, PermitLocked, PermitNotFound
from .models import (
    EDITABLE_FIELDS,
    IDENTITY_FIELDS,
    ApproverSlot,
    Permit,
    PermitStatus,
    PermitType,
    Role,
    StatusHistoryEntry,
    User,
)

logger = logging.getLogger(__name__)

DB_PATH_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("ptw_db_path", default=config.DB_PATH)

# Timestamp column stamped when a permit enters the status.
STATUS_TIMESTAMPS: dict[PermitStatus, str] = {
    PermitStatus.PENDING: "submitted_at",
    PermitStatus.APPROVED: "approved_at",
    PermitStatus.ACTIVE: "activated_at",
    PermitStatus.COMPLETED: "completed_at",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  username TEXT NOT NULL UNIQUE,
  role TEXT NOT NULL,
  password_salt_hex TEXT NOT NULL,
  password_hash_hex TEXT NOT NULL,
  demo_password TEXT,
  created_at TEXT NOT NULL,
  created_by TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
  token TEXT PRIMARY KEY,
  user_id INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  revoked_at TEXT,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS permits (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  permit_code TEXT NOT NULL UNIQUE,
  permit_type TEXT NOT NULL,
  status TEXT NOT NULL,

  location TEXT NOT NULL DEFAULT '',
  description TEXT NOT NULL DEFAULT '',
  department TEXT NOT NULL DEFAULT '',
  requestor_name TEXT NOT NULL,
  performer_name TEXT,

  department_head TEXT,
  safety_officer TEXT,
  maintenance_approver TEXT,
  department_head_approval INTEGER NOT NULL DEFAULT 0,
  department_head_approval_date TEXT,
  safety_officer_approval INTEGER NOT NULL DEFAULT 0,
  safety_officer_approval_date TEXT,
  maintenance_approval INTEGER NOT NULL DEFAULT 0,
  maintenance_approval_date TEXT,

  identified_hazards TEXT,
  additional_comments TEXT,
  start_date TEXT,
  end_date TEXT,

  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  submitted_at TEXT,
  submitted_by INTEGER,
  approved_at TEXT,
  activated_at TEXT,
  completed_at TEXT
);

CREATE TABLE IF NOT EXISTS permit_status_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  permit_id INTEGER NOT NULL,
  status TEXT NOT NULL,
  at TEXT NOT NULL,
  user_id INTEGER,
  username TEXT NOT NULL DEFAULT '',
  comment TEXT,
  FOREIGN KEY (permit_id) REFERENCES permits(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS audit_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entity_type TEXT NOT NULL,
  record_id TEXT NOT NULL,
  action TEXT NOT NULL,
  actor TEXT NOT NULL,
  at TEXT NOT NULL,
  note TEXT
);

CREATE INDEX IF NOT EXISTS idx_permits_status ON permits(status);
CREATE INDEX IF NOT EXISTS idx_history_permit ON permit_status_history(permit_id, id);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def db() -> sqlite3.Connection:
    """Open a connection to the configured DB (via context var).

    FastAPI sync routes run in a threadpool; a fresh connection is opened per call.
    """
    path = DB_PATH_CTX.get()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 10000")
    return conn


def init_db(seed_users: bool = True) -> None:
    with db() as conn:
        conn.executescript(SCHEMA)
        if seed_users:
            _seed_demo_users(conn)


def audit(entity_type: str, record_id: Any, action: str, actor: str, note: str | None = None, *, conn: sqlite3.Connection) -> None:
    conn.execute(
        "INSERT INTO audit_log(entity_type, record_id, action, actor, at, note) VALUES (?,?,?,?,?,?)",
        (entity_type, str(record_id), action, actor, utc_now_iso(), note),
    )


def audit_entries(record_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
    sql = "SELECT id, entity_type, record_id, action, actor, at, note FROM audit_log"
    params: list[Any] = []
    if record_id:
        sql += " WHERE record_id=?"
        params.append(record_id)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(max(1, min(int(limit), 1000)))
    with db() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


# --- Users + sessions ---


def _hash_password(password: str, salt_hex: str) -> str:
    dk = hashlib.pbkdf2_hmac("sha256", (password or "").encode("utf-8"), bytes.fromhex(salt_hex), 200_000)
    return dk.hex()


def _verify_password(password: str, salt_hex: str, hash_hex: str) -> bool:
    return hmac.compare_digest(_hash_password(password, salt_hex), hash_hex)


def _seed_demo_users(conn: sqlite3.Connection) -> None:
    # Demo credentials are intentionally obvious: one user per role.
    demo = [
        ("admin", Role.ADMIN, "admin"),
        ("dhead", Role.DEPARTMENT_HEAD, "password1"),
        ("safety", Role.SAFETY_OFFICER, "password2"),
        ("maint", Role.MAINTENANCE, "password3"),
        ("super", Role.SUPERVISOR, "password4"),
        ("worker", Role.EMPLOYEE, "password5"),
    ]
    now = utc_now_iso()
    for username, role, pw in demo:
        if conn.execute("SELECT 1 FROM users WHERE username=?", (username,)).fetchone():
            continue
        salt = secrets.token_bytes(16).hex()
        conn.execute(
            """
            INSERT INTO users(username, role, password_salt_hex, password_hash_hex, demo_password, created_at, created_by)
            VALUES (?,?,?,?,?,?,?)
            """,
            (username, role.value, salt, _hash_password(pw, salt), pw, now, "seed"),
        )


def get_user(user_id: int) -> User | None:
    with db() as conn:
        row = conn.execute("SELECT id, username, role FROM users WHERE id=?", (user_id,)).fetchone()
    return User.from_row(row) if row else None


def get_user_by_username(username: str) -> User | None:
    with db() as conn:
        row = conn.execute("SELECT id, username, role FROM users WHERE username=?", (username,)).fetchone()
    return User.from_row(row) if row else None


def list_users(role: Role | None = None) -> list[User]:
    sql = "SELECT id, username, role FROM users"
    params: tuple = ()
    if role is not None:
        sql += " WHERE role=?"
        params = (Role(role).value,)
    sql += " ORDER BY username ASC"
    with db() as conn:
        return [User.from_row(r) for r in conn.execute(sql, params).fetchall()]


def create_user(username: str, role: Role, password: str, actor: str) -> User:
    username = (username or "").strip()
    if not username:
        raise InvalidPermitData("username is required")
    if not password:
        raise InvalidPermitData("password is required")
    role = Role(role)
    salt = secrets.token_bytes(16).hex()
    with db() as conn:
        try:
            cur = conn.execute(
                """
                INSERT INTO users(username, role, password_salt_hex, password_hash_hex, created_at, created_by)
                VALUES (?,?,?,?,?,?)
                """,
                (username, role.value, salt, _hash_password(password, salt), utc_now_iso(), actor),
            )
        except sqlite3.IntegrityError:
            raise AlreadyExists("username already exists")
        audit("user", username, "create", actor, note=f"role={role.value}", conn=conn)
    return User(id=int(cur.lastrowid), username=username, role=role)


def update_user_role(username: str, role: Role, actor: str) -> User:
    role = Role(role)
    with db() as conn:
        cur = conn.execute("UPDATE users SET role=? WHERE username=?", (role.value, username))
        if cur.rowcount == 0:
            raise PermitNotFound("user not found")
        audit("user", username, "change_role", actor, note=f"role={role.value}", conn=conn)
    logger.info("role of %s changed to %s by %s", username, role.value, actor)
    return get_user_by_username(username)


def set_password(username: str, password: str, actor: str) -> User:
    """Reset a user's password and revoke their open sessions."""
    if not password:
        raise InvalidPermitData("password is required")
    salt = secrets.token_bytes(16).hex()
    with db() as conn:
        row = conn.execute("SELECT id FROM users WHERE username=?", (username,)).fetchone()
        if row is None:
            raise PermitNotFound("user not found")
        conn.execute(
            "UPDATE users SET password_salt_hex=?, password_hash_hex=?, demo_password=NULL WHERE id=?",
            (salt, _hash_password(password, salt), int(row["id"])),
        )
        conn.execute(
            "UPDATE sessions SET revoked_at=? WHERE user_id=? AND revoked_at IS NULL",
            (utc_now_iso(), int(row["id"])),
        )
        audit("user", username, "set_password", actor, conn=conn)
    logger.info("password of %s reset by %s", username, actor)
    return get_user_by_username(username)


def verify_login(username: str, password: str) -> User | None:
    with db() as conn:
        row = conn.execute(
            "SELECT id, username, role, password_salt_hex, password_hash_hex FROM users WHERE username=?",
            ((username or "").strip(),),
        ).fetchone()
    if not row or not _verify_password(password or "", str(row["password_salt_hex"]), str(row["password_hash_hex"])):
        return None
    return User.from_row(row)


def create_session(user: User) -> str:
    token = secrets.token_urlsafe(32)
    with db() as conn:
        conn.execute("INSERT INTO sessions(token, user_id, created_at) VALUES (?,?,?)", (token, user.id, utc_now_iso()))
    return token


def user_for_session(token: str) -> User | None:
    if not token:
        return None
    with db() as conn:
        row = conn.execute(
            """
            SELECT u.id, u.username, u.role
            FROM sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token=? AND s.revoked_at IS NULL
            """,
            (token,),
        ).fetchone()
    return User.from_row(row) if row else None


def revoke_session(token: str) -> None:
    with db() as conn:
        conn.execute("UPDATE sessions SET revoked_at=? WHERE token=? AND revoked_at IS NULL", (utc_now_iso(), token))


# --- Permits ---


def _parse_date(value: Any, field: str) -> str | None:
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise InvalidPermitData(f"Invalid date for field '{field}'")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _clean_updates(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in data.items():
        if k not in EDITABLE_FIELDS or v is None:
            continue
        if k == "permit_type":
            try:
                out[k] = PermitType(v).value
            except ValueError:
                raise InvalidPermitData(f"Unknown permit type '{v}'")
        elif k in ("start_date", "end_date"):
            out[k] = _parse_date(v, k)
        elif k == "requestor_name":
            v = str(v).strip()
            if not v:
                raise InvalidPermitData("Requestor name is required")
            out[k] = v
        else:
            v = str(v).strip()
            out[k] = v or None
    return out


def _check_dates(start: str | None, end: str | None) -> None:
    if start and end and datetime.fromisoformat(end) < datetime.fromisoformat(start):
        raise InvalidPermitData("End date must not be before start date")


def _next_permit_code(conn: sqlite3.Connection, permit_type: PermitType) -> str:
    prefix = f"{permit_type.code_prefix}-{datetime.now(timezone.utc).year}"
    rows = conn.execute("SELECT permit_code FROM permits WHERE permit_code LIKE ?", (f"{prefix}-%",)).fetchall()
    code_re = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
    highest = 0
    for r in rows:
        m = code_re.match(str(r["permit_code"]))
        if m:
            highest = max(highest, int(m.group(1)))
    return f"{prefix}-{highest + 1:03d}"


def _history(conn: sqlite3.Connection, permit_id: int) -> list[StatusHistoryEntry]:
    rows = conn.execute(
        "SELECT status, at, user_id, username, comment FROM permit_status_history WHERE permit_id=? ORDER BY id ASC",
        (permit_id,),
    ).fetchall()
    return [StatusHistoryEntry.from_row(r) for r in rows]


def _add_history(conn: sqlite3.Connection, permit_id: int, status: PermitStatus, actor: User, comment: str | None, at: str) -> None:
    conn.execute(
        "INSERT INTO permit_status_history(permit_id, status, at, user_id, username, comment) VALUES (?,?,?,?,?,?)",
        (permit_id, status.value, at, actor.id, actor.username, comment),
    )


def _load(conn: sqlite3.Connection, permit_id: int) -> Permit:
    row = conn.execute("SELECT * FROM permits WHERE id=?", (permit_id,)).fetchone()
    if not row:
        raise PermitNotFound(f"Permit {permit_id} not found")
    return Permit.from_row(row, _history(conn, permit_id))


def get_permit(permit_id: int) -> Permit:
    with db() as conn:
        return _load(conn, permit_id)


def list_permits(status: PermitStatus | None = None, q: str | None = None) -> list[Permit]:
    where: list[str] = []
    params: list[Any] = []
    if status:
        where.append("status=?")
        params.append(PermitStatus(status).value)
    q_norm = (q or "").strip().lower()
    if q_norm:
        where.append("(lower(permit_code) LIKE ? OR lower(location) LIKE ? OR lower(description) LIKE ?)")
        params.extend([f"%{q_norm}%"] * 3)

    sql = "SELECT * FROM permits"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY id DESC"

    with db() as conn:
        rows = conn.execute(sql, params).fetchall()
        return [Permit.from_row(r, _history(conn, int(r["id"]))) for r in rows]


def create_permit(data: dict[str, Any], actor: User) -> Permit:
    fields = _clean_updates(data)
    fields.setdefault("permit_type", PermitType.GENERAL.value)
    fields.setdefault("requestor_name", actor.username)
    _check_dates(fields.get("start_date"), fields.get("end_date"))

    now = utc_now_iso()
    with db() as conn:
        fields["permit_code"] = _next_permit_code(conn, PermitType(fields["permit_type"]))
        fields.update(status=PermitStatus.DRAFT.value, created_at=now, updated_at=now)
        cols = list(fields)
        cur = conn.execute(
            f"INSERT INTO permits({', '.join(cols)}) VALUES ({','.join('?' * len(cols))})",
            [fields[c] for c in cols],
        )
        permit_id = int(cur.lastrowid)
        _add_history(conn, permit_id, PermitStatus.DRAFT, actor, "Permit created", now)
        audit("permit", permit_id, "create", actor.username, note=fields["permit_code"], conn=conn)
        permit = _load(conn, permit_id)

    logger.info("permit %s (%s) created by %s", permit.id, permit.permit_code, actor.username)
    return permit


def update_permit(permit_id: int, data: dict[str, Any], actor: User) -> Permit:
    updates = _clean_updates(data)
    with db() as conn:
        current = _load(conn, permit_id)
        if current.status != PermitStatus.DRAFT:
            for f in IDENTITY_FIELDS:
                if f not in updates:
                    continue
                old = getattr(current, f)
                old = getattr(old, "value", old)
                if updates[f] != old:
                    raise PermitLocked(f"'{f}' cannot change once a permit has been submitted; withdraw it to draft first")

        _check_dates(updates.get("start_date", current.start_date), updates.get("end_date", current.end_date))
        if not updates:
            return current

        updates["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{c}=?" for c in updates)
        conn.execute(f"UPDATE permits SET {assignments} WHERE id=?", [*updates.values(), permit_id])
        audit("permit", permit_id, "update", actor.username, note=",".join(sorted(updates)), conn=conn)
        return _load(conn, permit_id)


def apply_transition(permit_id: int, next_status: PermitStatus, actor: User, comment: str | None = None) -> Permit:
    """Persist a workflow transition: status, its timestamp column, one history entry."""
    next_status = PermitStatus(next_status)
    now = utc_now_iso()
    with db() as conn:
        current = _load(conn, permit_id)

        sets = {"status": next_status.value, "updated_at": now}
        ts_col = STATUS_TIMESTAMPS.get(next_status)
        if ts_col:
            sets[ts_col] = now
        if next_status == PermitStatus.PENDING:
            sets["submitted_by"] = actor.id
        if next_status == PermitStatus.REJECTED and comment:
            sets["additional_comments"] = comment
        if next_status == PermitStatus.DRAFT:
            # Sign-offs apply to the submitted revision only.
            for slot in ApproverSlot:
                sets[slot.flag_field] = 0
                sets[slot.date_field] = None

        assignments = ", ".join(f"{c}=?" for c in sets)
        conn.execute(f"UPDATE permits SET {assignments} WHERE id=?", [*sets.values(), permit_id])
        _add_history(conn, permit_id, next_status, actor, comment, now)
        audit(
            "permit",
            permit_id,
            f"status:{current.status.value}->{next_status.value}",
            actor.username,
            note=comment,
            conn=conn,
        )
        return _load(conn, permit_id)


def record_approval(permit_id: int, slot: ApproverSlot, actor: User) -> Permit:
    slot = ApproverSlot(slot)
    now = utc_now_iso()
    with db() as conn:
        _load(conn, permit_id)
        conn.execute(
            f"UPDATE permits SET {slot.flag_field}=1, {slot.date_field}=?, updated_at=? WHERE id=?",
            (now, now, permit_id),
        )
        audit("permit", permit_id, f"approval:{slot.value}", actor.username, conn=conn)
        return _load(conn, permit_id)


def delete_permit(permit_id: int, actor: User) -> None:
    with db() as conn:
        permit = _load(conn, permit_id)
        conn.execute("DELETE FROM permits WHERE id=?", (permit_id,))
        audit("permit", permit_id, "delete", actor.username, note=permit.permit_code, conn=conn)
    logger.info("permit %s (%s) deleted by %s", permit_id, permit.permit_code, actor.username)


def permit_stats(today: date | None = None) -> dict[str, int]:
    """Dashboard counters; `expiredToday` only counts expired permits ending on `today` (UTC)."""
    today = today or datetime.now(timezone.utc).date()
    with db() as conn:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM permits GROUP BY status").fetchall()
        expired_ends = conn.execute(
            "SELECT end_date FROM permits WHERE status=? AND end_date IS NOT NULL",
            (PermitStatus.EXPIRED.value,),
        ).fetchall()
    counts = {str(r["status"]): int(r["n"]) for r in rows}
    expired_today = sum(
        1 for r in expired_ends if datetime.fromisoformat(r["end_date"]).astimezone(timezone.utc).date() == today
    )
    return {
        "activePermits": counts.get(PermitStatus.ACTIVE.value, 0),
        "pendingApproval": counts.get(PermitStatus.PENDING.value, 0),
        "expiredToday": expired_today,
        "completed": counts.get(PermitStatus.COMPLETED.value, 0),
    }
