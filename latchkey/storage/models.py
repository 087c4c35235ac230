from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_SESSION_DATA: Dict = {"settings": "DUMMY"}


class TokenKind(str, Enum):
    """The two emailed single-use token kinds, each stored in its own table."""

    VERIFICATION = "verification"
    RESET = "reset"

    @property
    def table(self) -> str:
        return _TOKEN_TABLES[self]


_TOKEN_TABLES = {
    TokenKind.VERIFICATION: "email_verification_token",
    TokenKind.RESET: "password_reset_token",
}


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    expiry_date: datetime
    data: Dict = field(default_factory=lambda: dict(DEFAULT_SESSION_DATA))

    @classmethod
    def new(
        cls, user_id: str, expiry_date: datetime, data: Dict | None = None
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            expiry_date=expiry_date,
            data=dict(data) if data is not None else dict(DEFAULT_SESSION_DATA),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date <= now


@dataclass
class EmailToken:
    id: str
    user_id: str
    active_expires: datetime
    kind: TokenKind

    def is_expired(self, now: datetime) -> bool:
        return now >= self.active_expires
