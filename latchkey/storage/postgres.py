from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import (
    DEFAULT_SESSION_DATA,
    EmailToken,
    Session,
    TokenKind,
    User,
)

# Unique constraint name -> (request field, message)
_UNIQUE_CONSTRAINTS = {
    "users_username_key": ("username", "username taken"),
    "users_email_key": ("email", "email taken"),
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT users_username_key UNIQUE (username),
        CONSTRAINT users_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (id),
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        expiry_date TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_verification_token (
        id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (id),
        active_expires TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (id),
        active_expires TIMESTAMPTZ NOT NULL
    )
    """,
]


class PostgresStore:
    """Postgres-backed credential store.

    Each method runs in its own pooled connection; leaving the ``with`` block
    commits, so every call is a single transaction.
    """

    def __init__(
        self, dsn: str, *, min_size: int = 2, max_size: int = 10, ensure_schema: bool = True
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, username: str, email: str, password_hash: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, username, email, password_hash)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = exc.diag.constraint_name
            field, message = _UNIQUE_CONSTRAINTS.get(
                constraint, ("user", "user already exists")
            )
            raise ConstraintViolation(message, {"field": field}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET email_verified = TRUE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # sessions
    def create_session(
        self, user_id: str, expiry_date: datetime, data: Optional[Dict] = None
    ) -> Session:
        sess = Session.new(user_id, expiry_date, data)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, data, expiry_date)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (sess.id, sess.user_id, Jsonb(sess.data), sess.expiry_date),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": user_id}) from exc
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, user_id, data, expiry_date FROM sessions WHERE id = %s",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        data = row.get("data")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            data=data if isinstance(data, dict) else dict(DEFAULT_SESSION_DATA),
            expiry_date=row["expiry_date"],
        )

    # emailed tokens
    def insert_token(
        self, kind: TokenKind, token: str, user_id: str, active_expires: datetime
    ) -> EmailToken:
        query = sql.SQL(
            "INSERT INTO {} (id, user_id, active_expires) VALUES (%s, %s, %s)"
        ).format(sql.Identifier(kind.table))
        try:
            with self._connect() as conn:
                conn.execute(query, (token, user_id, active_expires))
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("token already exists", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return EmailToken(
            id=token, user_id=user_id, active_expires=active_expires, kind=kind
        )

    def get_token(self, kind: TokenKind, token: str) -> Optional[EmailToken]:
        query = sql.SQL(
            "SELECT id, user_id, active_expires FROM {} WHERE id = %s"
        ).format(sql.Identifier(kind.table))
        with self._connect() as conn:
            row = conn.execute(query, (token,)).fetchone()
        return self._token_from_row(kind, row) if row else None

    def consume_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[EmailToken]:
        """Delete and return ``token`` if it is still live at ``now``.

        The conditional DELETE takes the row lock, so of two concurrent
        consumers only one gets the row back.
        """
        query = sql.SQL(
            """
            DELETE FROM {}
            WHERE id = %s AND active_expires > %s
            RETURNING id, user_id, active_expires
            """
        ).format(sql.Identifier(kind.table))
        with self._connect() as conn:
            row = conn.execute(query, (token, now)).fetchone()
        return self._token_from_row(kind, row) if row else None

    def count_expired_tokens(self, kind: TokenKind, now: datetime) -> int:
        query = sql.SQL("SELECT COUNT(*) AS expired FROM {} WHERE active_expires <= %s").format(
            sql.Identifier(kind.table)
        )
        with self._connect() as conn:
            row = conn.execute(query, (now,)).fetchone()
        return int(row["expired"]) if row else 0

    def purge_expired_tokens(self, kind: TokenKind, now: datetime) -> int:
        query = sql.SQL("DELETE FROM {} WHERE active_expires <= %s").format(
            sql.Identifier(kind.table)
        )
        with self._connect() as conn:
            result = conn.execute(query, (now,))
            return result.rowcount

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            email_verified=bool(row.get("email_verified", False)),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _token_from_row(kind: TokenKind, row: Dict[str, Any]) -> EmailToken:
        return EmailToken(
            id=row["id"],
            user_id=str(row["user_id"]),
            active_expires=row["active_expires"],
            kind=kind,
        )
