from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import (
    EmailToken,
    Session,
    TokenKind,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store used for tests and local development.

    Every public method takes the data lock for its whole body, so each call
    is atomic with respect to the others. Rows are handed out as copies; the
    only way to change stored state is through the store's own methods.

    When ``fs_root`` is given the state is also written to
    ``<fs_root>/state/memory_store.json`` after every mutation and reloaded on
    construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[TokenKind, Dict[str, EmailToken]] = {
            kind: {} for kind in TokenKind
        }
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_user(self, username: str, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username taken", {"field": "username"})
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email taken", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                email_verified=False,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # sessions
    def create_session(
        self, user_id: str, expiry_date: datetime, data: Optional[Dict] = None
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id, expiry_date, data)
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess, data=dict(sess.data))

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess, data=dict(sess.data)) if sess else None

    # emailed tokens
    def insert_token(
        self, kind: TokenKind, token: str, user_id: str, active_expires: datetime
    ) -> EmailToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            table = self.tokens[kind]
            if token in table:
                raise ConstraintViolation("token already exists", {"field": "token"})
            row = EmailToken(
                id=token, user_id=user_id, active_expires=active_expires, kind=kind
            )
            table[token] = row
            self._persist_state()
            return replace(row)

    def get_token(self, kind: TokenKind, token: str) -> Optional[EmailToken]:
        with self._data_lock:
            row = self.tokens[kind].get(token)
            return replace(row) if row else None

    def consume_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[EmailToken]:
        """Delete and return ``token`` if it is still live at ``now``.

        Expired rows are left untouched and ``None`` is returned for them.
        """
        with self._data_lock:
            table = self.tokens[kind]
            row = table.get(token)
            if row is None or row.is_expired(now):
                return None
            del table[token]
            self._persist_state()
            return replace(row)

    def count_expired_tokens(self, kind: TokenKind, now: datetime) -> int:
        with self._data_lock:
            return sum(1 for row in self.tokens[kind].values() if row.is_expired(now))

    def purge_expired_tokens(self, kind: TokenKind, now: datetime) -> int:
        with self._data_lock:
            table = self.tokens[kind]
            stale = [tok for tok, row in table.items() if row.is_expired(now)]
            for tok in stale:
                table.pop(tok, None)
            if stale:
                self._persist_state()
            return len(stale)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "tokens": [
                self._serialize_token(row)
                for table in self.tokens.values()
                for row in table.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.tokens = {kind: {} for kind in TokenKind}
        for raw in data.get("tokens", []):
            row = self._deserialize_token(raw)
            self.tokens[row.kind][row.id] = row
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "data": sess.data,
            "expiry_date": self._serialize_datetime(sess.expiry_date),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            data=data.get("data") or {},
            expiry_date=self._deserialize_datetime(data["expiry_date"]),
        )

    def _serialize_token(self, row: EmailToken) -> dict:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "kind": row.kind.value,
            "active_expires": self._serialize_datetime(row.active_expires),
        }

    def _deserialize_token(self, data: dict) -> EmailToken:
        return EmailToken(
            id=data["id"],
            user_id=str(data["user_id"]),
            kind=TokenKind(data["kind"]),
            active_expires=self._deserialize_datetime(data["active_expires"]),
        )
