# src/taskpilot/backend/sqlite_backend.py

from __future__ import annotations

import contextlib
import hashlib
import hmac
import logging
import secrets
import sqlite3
import time
import uuid
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from ..core.ports import AuthSession, ChangeEvent, Row
from ..sync.errors import AuthError, BackendError
from .object_storage import LocalObjectStorage
from .realtime import RealtimeHub

logger = logging.getLogger(__name__)

# table -> column -> (SQL declaration, python kind)
# kind drives row decoding: "bool" columns are stored as 0/1.
SCHEMA: dict[str, dict[str, tuple[str, str]]] = {
    "categories": {
        "name": ("TEXT NOT NULL DEFAULT ''", "str"),
        "color": ("TEXT NOT NULL DEFAULT ''", "str"),
        "created_at": ("REAL NOT NULL DEFAULT 0", "float"),
        "updated_at": ("REAL NOT NULL DEFAULT 0", "float"),
    },
    "tasks": {
        "title": ("TEXT NOT NULL DEFAULT ''", "str"),
        "completed": ("INTEGER NOT NULL DEFAULT 0", "bool"),
        "priority": ("TEXT NOT NULL DEFAULT 'medium'", "str"),
        "status": ("TEXT NOT NULL DEFAULT 'todo'", "str"),
        "due_at": ("REAL", "float"),
        "category_id": ("TEXT REFERENCES categories(id) ON DELETE SET NULL", "str"),
        "description": ("TEXT", "str"),
        "created_at": ("REAL NOT NULL DEFAULT 0", "float"),
        "updated_at": ("REAL NOT NULL DEFAULT 0", "float"),
        "order": ("INTEGER NOT NULL DEFAULT 0", "int"),
    },
    "attachments": {
        "task_id": ("TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE", "str"),
        "file_name": ("TEXT NOT NULL DEFAULT ''", "str"),
        "file_type": ("TEXT NOT NULL DEFAULT ''", "str"),
        "storage_path": ("TEXT NOT NULL DEFAULT ''", "str"),
        "file_size": ("INTEGER", "int"),
        "created_at": ("REAL NOT NULL DEFAULT 0", "float"),
    },
    "reminders": {
        "task_id": ("TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE", "str"),
        "remind_at": ("REAL NOT NULL DEFAULT 0", "float"),
        "message": ("TEXT", "str"),
        "triggered": ("INTEGER NOT NULL DEFAULT 0", "bool"),
        "created_at": ("REAL NOT NULL DEFAULT 0", "float"),
    },
    "notifications": {
        "task_id": ("TEXT REFERENCES tasks(id) ON DELETE SET NULL", "str"),
        "title": ("TEXT NOT NULL DEFAULT ''", "str"),
        "message": ("TEXT", "str"),
        "type": ("TEXT NOT NULL DEFAULT 'info'", "str"),
        "read": ("INTEGER NOT NULL DEFAULT 0", "bool"),
        "created_at": ("REAL NOT NULL DEFAULT 0", "float"),
    },
}

# Creation order matters for the REFERENCES clauses.
_TABLE_ORDER = ("categories", "tasks", "attachments", "reminders", "notifications")

PASSWORD_MIN_LENGTH = 6
RESET_TOKEN_TTL_SECONDS = 3600


def _q(name: str) -> str:
    # "order" and "read" are keywords; quote every identifier.
    return '"' + name.replace('"', '""') + '"'


def hash_password(password: str, *, iterations: int = 120_000) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algo, iterations, salt_hex, digest_hex = encoded.split("$")
        if algo != "pbkdf2_sha256":
            return False
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations)
        )
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


class SqliteDatabase:
    """
    SQLite file holding users and the five collections.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "taskpilot.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("SqliteDatabase ready db=%s", self._db_path)

    @property
    def path(self) -> Path:
        return self._db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self.connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS password_resets (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    expires_at REAL NOT NULL
                )
                """
            )

            for table in _TABLE_ORDER:
                columns = SCHEMA[table]
                decls = ",\n".join(f"{_q(name)} {decl}" for name, (decl, _kind) in columns.items())
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        {decls}
                    )
                    """
                )

                # Migrations (safe): add missing columns.
                cur.execute(f"PRAGMA table_info({table})")
                existing = {row["name"] for row in cur.fetchall()}
                for name, (decl, _kind) in columns.items():
                    if name in existing:
                        continue
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {_q(name)} {decl}")
                    logger.info("SqliteDatabase migration: added column %s.%s", table, name)

                cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_user ON {table}(user_id)")

            cur.execute('CREATE INDEX IF NOT EXISTS idx_tasks_order ON tasks(user_id, "order")')
            cur.execute("CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders(triggered, remind_at)")
            conn.commit()
        finally:
            conn.close()


class SqliteAuth:
    """
    Email/password accounts stored next to the data.

    Holds the single current session of this process.
    """

    def __init__(self, db: SqliteDatabase, *, hash_iterations: int = 120_000) -> None:
        self._db = db
        self._iterations = int(hash_iterations)
        self._session: AuthSession | None = None

    def current_session(self) -> AuthSession | None:
        return self._session

    @staticmethod
    def _normalize_email(email: str) -> str:
        value = (email or "").strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise AuthError("Invalid email address", status=422)
        return value

    def _open_session(self, user_id: str, email: str) -> AuthSession:
        self._session = AuthSession(user_id=user_id, email=email, access_token=secrets.token_urlsafe(24))
        return self._session

    async def sign_up(self, email: str, password: str) -> AuthSession:
        email = self._normalize_email(email)
        if len(password or "") < PASSWORD_MIN_LENGTH:
            raise AuthError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters", status=422)

        user_id = uuid.uuid4().hex
        conn = self._db.connect()
        try:
            conn.execute(
                "INSERT INTO users(id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (user_id, email, hash_password(password, iterations=self._iterations), time.time()),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise AuthError("User already registered", status=422) from e
        finally:
            conn.close()

        logger.info("User signed up user_id=%s", user_id)
        return self._open_session(user_id, email)

    async def sign_in(self, email: str, password: str) -> AuthSession:
        email = self._normalize_email(email)
        conn = self._db.connect()
        try:
            row = conn.execute("SELECT id, password_hash FROM users WHERE email = ?", (email,)).fetchone()
        finally:
            conn.close()

        if row is None or not verify_password(password or "", row["password_hash"]):
            raise AuthError("Invalid login credentials", status=400)

        logger.info("User signed in user_id=%s", row["id"])
        return self._open_session(str(row["id"]), email)

    async def sign_out(self) -> None:
        if self._session is not None:
            logger.info("User signed out user_id=%s", self._session.user_id)
        self._session = None

    async def request_password_reset(self, email: str) -> None:
        """
        Issue a reset token if the account exists.

        Always succeeds silently so callers cannot tell which emails are registered.
        Delivery of the token (email) is outside this backend.
        """
        email = self._normalize_email(email)
        conn = self._db.connect()
        try:
            row = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
            if row is None:
                return
            conn.execute(
                "INSERT INTO password_resets(token, user_id, expires_at) VALUES (?, ?, ?)",
                (secrets.token_urlsafe(32), row["id"], time.time() + RESET_TOKEN_TTL_SECONDS),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Password reset requested user_id=%s", row["id"])

    async def reset_password(self, token: str, new_password: str) -> None:
        if len(new_password or "") < PASSWORD_MIN_LENGTH:
            raise AuthError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters", status=422)

        conn = self._db.connect()
        try:
            row = conn.execute(
                "SELECT user_id, expires_at FROM password_resets WHERE token = ?", (token,)
            ).fetchone()
            if row is None or float(row["expires_at"]) < time.time():
                raise AuthError("Reset link is invalid or has expired", status=400)
            conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (hash_password(new_password, iterations=self._iterations), row["user_id"]),
            )
            conn.execute("DELETE FROM password_resets WHERE token = ?", (token,))
            conn.commit()
        finally:
            conn.close()


class SqliteTableStore:
    """
    Row-level CRUD scoped to the signed-in user.

    - every statement carries "user_id = <session user>"
    - ids are uuid4 hex, created_at / updated_at are stamped here
    - committed changes are published to the realtime hub
    """

    def __init__(self, db: SqliteDatabase, auth: SqliteAuth, hub: RealtimeHub | None = None) -> None:
        self._db = db
        self._auth = auth
        self._hub = hub

    # ---- low-level helpers ----

    def _user_id(self) -> str:
        session = self._auth.current_session()
        if session is None:
            raise AuthError("Not signed in", status=401)
        return session.user_id

    @staticmethod
    def _columns(table: str) -> dict[str, tuple[str, str]]:
        try:
            return SCHEMA[table]
        except KeyError:
            raise BackendError(f"unknown table: {table}", status=404) from None

    def _check_columns(self, table: str, names: Any) -> None:
        known = set(self._columns(table)) | {"id", "user_id"}
        unknown = [n for n in names if n not in known]
        if unknown:
            raise BackendError(f"unknown column(s) for {table}: {', '.join(unknown)}", status=400)

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        return value

    def _where(self, table: str, filters: Mapping[str, Any] | None) -> tuple[str, list[Any]]:
        filters = dict(filters or {})
        self._check_columns(table, filters)
        clauses = ["user_id = ?"]
        params: list[Any] = [self._user_id()]
        for name, value in filters.items():
            if name == "user_id":
                # Scoping already pins the owner; a foreign user id simply matches nothing.
                if value != params[0]:
                    clauses.append("0")
                continue
            if value is None:
                clauses.append(f"{_q(name)} IS NULL")
            else:
                clauses.append(f"{_q(name)} = ?")
                params.append(self._encode(value))
        return " AND ".join(clauses), params

    def _decode(self, table: str, row: sqlite3.Row) -> Row:
        columns = self._columns(table)
        out: Row = {"id": row["id"], "user_id": row["user_id"]}
        for name, (_decl, kind) in columns.items():
            value = row[name]
            if value is not None:
                if kind == "bool":
                    value = bool(value)
                elif kind == "float":
                    value = float(value)
                elif kind == "int":
                    value = int(value)
            out[name] = value
        return out

    def _fetch(self, conn: sqlite3.Connection, table: str, ids: Sequence[str]) -> list[Row]:
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = conn.execute(f"SELECT * FROM {table} WHERE id IN ({placeholders})", list(ids)).fetchall()
        by_id = {r["id"]: self._decode(table, r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def _publish(self, table: str, event: str, rows: Sequence[Row], *, old: bool = False) -> None:
        if self._hub is None:
            return
        for row in rows:
            self._hub.publish(
                ChangeEvent(table=table, event=event, new=None if old else row, old=row if old else None)
            )

    # ---- TableStore ----

    async def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        where, params = self._where(table, filters)
        sql = f"SELECT * FROM {table} WHERE {where}"
        if order_by is not None:
            self._check_columns(table, [order_by])
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {_q(order_by)} {direction}, created_at {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        conn = self._db.connect()
        try:
            return [self._decode(table, r) for r in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise BackendError(f"select {table} failed: {e}") from e
        finally:
            conn.close()

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        columns = self._columns(table)
        user_id = self._user_id()
        now = time.time()

        prepared: list[dict[str, Any]] = []
        for i, row in enumerate(rows):
            values = {k: v for k, v in row.items() if k not in ("id", "user_id")}
            self._check_columns(table, values)
            # Distinct stamps: a multi-row insert keeps its order under ORDER BY created_at.
            values["created_at"] = now + i * 1e-4
            if "updated_at" in columns:
                values["updated_at"] = values["created_at"]
            values["id"] = uuid.uuid4().hex
            values["user_id"] = user_id
            prepared.append(values)

        conn = self._db.connect()
        try:
            for values in prepared:
                names = list(values)
                sql = (
                    f"INSERT INTO {table}({', '.join(_q(n) for n in names)}) "
                    f"VALUES ({', '.join('?' for _ in names)})"
                )
                conn.execute(sql, [self._encode(values[n]) for n in names])
            conn.commit()
            inserted = self._fetch(conn, table, [v["id"] for v in prepared])
        except sqlite3.Error as e:
            conn.rollback()
            raise BackendError(f"insert {table} failed: {e}") from e
        finally:
            conn.close()

        logger.debug("Inserted %d row(s) into %s", len(inserted), table)
        self._publish(table, "INSERT", inserted)
        return inserted

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> list[Row]:
        changes = {k: v for k, v in values.items() if k not in ("id", "user_id")}
        self._check_columns(table, changes)
        if not changes:
            return []
        if "updated_at" in self._columns(table):
            changes["updated_at"] = time.time()

        where, params = self._where(table, filters)
        assignments = ", ".join(f"{_q(n)} = ?" for n in changes)

        conn = self._db.connect()
        try:
            ids = [r["id"] for r in conn.execute(f"SELECT id FROM {table} WHERE {where}", params).fetchall()]
            if not ids:
                return []
            placeholders = ",".join("?" for _ in ids)
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id IN ({placeholders})",
                [self._encode(v) for v in changes.values()] + ids,
            )
            conn.commit()
            updated = self._fetch(conn, table, ids)
        except sqlite3.Error as e:
            conn.rollback()
            raise BackendError(f"update {table} failed: {e}") from e
        finally:
            conn.close()

        self._publish(table, "UPDATE", updated)
        return updated

    async def delete(self, table: str, *, filters: Mapping[str, Any]) -> int:
        where, params = self._where(table, filters)

        conn = self._db.connect()
        try:
            doomed = [self._decode(table, r) for r in conn.execute(f"SELECT * FROM {table} WHERE {where}", params)]
            if not doomed:
                return 0
            placeholders = ",".join("?" for _ in doomed)
            conn.execute(f"DELETE FROM {table} WHERE id IN ({placeholders})", [r["id"] for r in doomed])
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise BackendError(f"delete {table} failed: {e}") from e
        finally:
            conn.close()

        self._publish(table, "DELETE", doomed, old=True)
        return len(doomed)

    def count(self, table: str) -> int:
        """Rows owned by the current user (diagnostics and tests)."""
        where, params = self._where(table, None)
        conn = self._db.connect()
        try:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()
            return int(n)
        finally:
            conn.close()


class SqliteBackend:
    """Embedded backend: SQLite tables + local object storage + in-process realtime."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        storage_dir: str | Path,
        signing_key: str | bytes,
        storage_base_url: str = "taskpilot://objects",
        hash_iterations: int = 120_000,
    ) -> None:
        self.db = SqliteDatabase(db_path)
        self.hub = RealtimeHub()
        self.auth = SqliteAuth(self.db, hash_iterations=hash_iterations)
        self.tables = SqliteTableStore(self.db, self.auth, self.hub)
        self.storage = LocalObjectStorage(storage_dir, signing_key=signing_key, base_url=storage_base_url)
        self.realtime = self.hub

    async def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return
