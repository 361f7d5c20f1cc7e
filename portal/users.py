from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import bcrypt

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT,
    email TEXT,
    password TEXT,
    email_verified INTEGER DEFAULT 0,
    verification_code TEXT
);
CREATE TABLE IF NOT EXISTS login_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    username TEXT,
    email TEXT,
    login_time TEXT,
    logout_time TEXT,
    duration_seconds INTEGER
);
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def hash_password(password: str, rounds: int | None = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds) if rounds is not None else bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


@dataclass(slots=True)
class User:
    id: int
    username: Optional[str]
    email: Optional[str]
    password_hash: Optional[str]  # None for OAuth-only accounts
    email_verified: bool
    verification_code: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password"],
            email_verified=bool(row["email_verified"]),
            verification_code=row["verification_code"],
        )

    @property
    def display_name(self) -> str:
        return self.username or self.email or f"user-{self.id}"

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "email_verified": self.email_verified,
            "oauth_only": self.password_hash is None,
        }


@dataclass(slots=True)
class LoginRecord:
    id: int
    user_id: Optional[int]
    username: Optional[str]
    email: Optional[str]
    login_time: str
    logout_time: Optional[str]
    duration_seconds: Optional[int]


class UserStore:
    """SQLite-backed user accounts and login history.

    A connection is opened per call so the store can be shared between the
    event loop and FastAPI's threadpool.
    """

    def __init__(self, db_path: str | Path, bcrypt_rounds: int | None = None) -> None:
        self._db_path = Path(db_path)
        self._bcrypt_rounds = bcrypt_rounds
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.info("Opened user database at %s", self._db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _one(self, query: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return User.from_row(row) if row else None

    # --- lookups -----------------------------------------------------------

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self._one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_by_username(self, username: str) -> Optional[User]:
        return self._one("SELECT * FROM users WHERE username = ?", (username,))

    def get_by_email(self, email: str) -> Optional[User]:
        return self._one("SELECT * FROM users WHERE email = ?", (email,))

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [User.from_row(r) for r in rows]

    # --- accounts ----------------------------------------------------------

    def create_user(
        self,
        *,
        username: str | None = None,
        email: str | None = None,
        password: str | None = None,
        email_verified: bool = False,
        verification_code: str | None = None,
    ) -> User:
        password_hash = hash_password(password, self._bcrypt_rounds) if password else None
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO users (username, email, password, email_verified, verification_code) "
                "VALUES (?, ?, ?, ?, ?)",
                (username, email, password_hash, int(email_verified), verification_code),
            )
            user_id = cur.lastrowid
        return self.get_by_id(user_id)

    @staticmethod
    def check_password(user: User, password: str) -> bool:
        if not user.password_hash or not password:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), user.password_hash.encode("utf-8"))
        except ValueError:
            # stored value is not a bcrypt hash
            return False

    def authenticate_username(self, username: str, password: str) -> Optional[User]:
        user = self.get_by_username(username)
        if user and self.check_password(user, password):
            return user
        return None

    def create_pending_email_user(self, email: str, password: str) -> tuple[User, str]:
        """Create an unverified email account. Returns (user, 6-digit code)."""
        code = f"{secrets.randbelow(900000) + 100000}"
        user = self.create_user(email=email, password=password, verification_code=code)
        logger.info("Created pending account %d for %s", user.id, email)
        return user, code

    def verify_email(self, email: str, code: str) -> Optional[User]:
        """Mark the account verified if ``code`` matches. Returns the user or None."""
        user = self.get_by_email(email)
        if user is None or not user.verification_code:
            return None
        if not secrets.compare_digest(user.verification_code.encode("utf-8"), code.strip().encode("utf-8")):
            return None
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET email_verified = 1, verification_code = NULL WHERE id = ?",
                (user.id,),
            )
        logger.info("Verified email for user %d", user.id)
        return self.get_by_id(user.id)

    def find_or_create_oauth_user(self, email: str, display_name: str | None) -> User:
        existing = self.get_by_email(email)
        if existing is not None:
            return existing
        user = self.create_user(username=display_name or email, email=email, email_verified=True)
        logger.info("Created OAuth account %d for %s", user.id, email)
        return user

    def migrate_legacy_users(self, path: str | Path) -> int:
        """Import a legacy users.json list when the users table is empty.

        The whole file is validated first and imported in one transaction,
        so a bad file leaves the table empty. Returns the number of imported
        accounts.
        """
        p = Path(path)
        if self.count() > 0 or not p.exists():
            return 0
        try:
            users = json.loads(p.read_text(encoding="utf-8"))
            if not isinstance(users, list) or not all(isinstance(u, dict) for u in users):
                raise ValueError("users.json must be a list of objects")
            rows = [
                (u["username"], hash_password(u["password"], self._bcrypt_rounds))
                for u in users
                if isinstance(u.get("username"), str) and u["username"]
                and isinstance(u.get("password"), str) and u["password"]
            ]
            with self._connect() as conn:
                conn.executemany(
                    "INSERT INTO users (username, password, email_verified) VALUES (?, ?, 1)", rows,
                )
        except Exception:
            logger.exception("Failed to migrate users from %s", p)
            return 0
        logger.info("Migrated %d users from %s", len(rows), p)
        return len(rows)

    # --- login history -----------------------------------------------------

    def log_login(self, user: User) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO login_logs (user_id, username, email, login_time) VALUES (?, ?, ?, ?)",
                (user.id, user.username, user.email, _now_iso()),
            )

    def log_logout(self, user: User) -> Optional[int]:
        """Close the user's latest open login row. Returns the session length in seconds."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, login_time FROM login_logs "
                "WHERE (user_id = ? OR username = ? OR email = ?) AND logout_time IS NULL "
                "ORDER BY login_time DESC LIMIT 1",
                (user.id, user.username, user.email),
            ).fetchone()
            if row is None:
                return None
            logout_time = _now_iso()
            duration = int((_parse_iso(logout_time) - _parse_iso(row["login_time"])).total_seconds())
            conn.execute(
                "UPDATE login_logs SET logout_time = ?, duration_seconds = ? WHERE id = ?",
                (logout_time, duration, row["id"]),
            )
        return duration

    def recent_logins(self, limit: int = 20) -> list[LoginRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM login_logs ORDER BY login_time DESC, id DESC LIMIT ?", (limit,),
            ).fetchall()
        return [
            LoginRecord(
                id=r["id"], user_id=r["user_id"], username=r["username"], email=r["email"],
                login_time=r["login_time"], logout_time=r["logout_time"],
                duration_seconds=r["duration_seconds"],
            )
            for r in rows
        ]
