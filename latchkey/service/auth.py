from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.email import EmailSender
from latchkey.service.errors import (
    InternalError,
    NotVerified,
    TokenError,
    Unauthorized,
    UnprocessableEntity,
)
from latchkey.service.passwords import PasswordHasher
from latchkey.service.tokens import TokenLifecycle
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import (
    DEFAULT_SESSION_DATA,
    EmailToken,
    Session,
    TokenKind,
    User,
    utcnow,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, username: str, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def create_session(
        self, user_id: str, expiry_date: datetime, data: Optional[Dict] = None
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def insert_token(
        self, kind: TokenKind, token: str, user_id: str, active_expires: datetime
    ) -> EmailToken: ...

    def get_token(self, kind: TokenKind, token: str) -> Optional[EmailToken]: ...

    def consume_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[EmailToken]: ...

    def count_expired_tokens(self, kind: TokenKind, now: datetime) -> int: ...

    def purge_expired_tokens(self, kind: TokenKind, now: datetime) -> int: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: str


class AuthService:
    """Registration, login, email verification and password reset flows.

    Blocking work (store calls, password hashing) is pushed to the default
    thread pool so the event loop never waits on it. None of the flows retry.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenLifecycle,
        hasher: PasswordHasher,
        email: EmailSender,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.email = email
        self.settings = settings
        self._clock = clock
        self._timing_hash: Optional[str] = None
        self.logger = logger

    def _session_ttl(self, remember: bool) -> int:
        if remember:
            return self.settings.long_session_time
        return self.settings.short_session_time

    async def _dummy_verify(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost the same time."""
        if self._timing_hash is None:
            self._timing_hash = await asyncio.to_thread(
                self.hasher.hash, secrets.token_urlsafe(16)
            )
        await asyncio.to_thread(self.hasher.verify, password, self._timing_hash)

    async def _find_user_by_email(self, email: str) -> Optional[User]:
        return await asyncio.to_thread(self.store.get_user_by_email, email)

    async def _consume(self, kind: TokenKind, token: str) -> str:
        try:
            return await self.tokens.validate_and_consume(kind, token)
        except TokenError as exc:
            raise UnprocessableEntity.single(None, exc.reason) from exc

    async def register(self, username: str, email: str, password: str) -> User:
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user, username, email, password_hash
            )
        except ConstraintViolation as exc:
            self.logger.warning("register_conflict", field=exc.field)
            raise UnprocessableEntity.single(exc.field, exc.message) from exc
        self.logger.info("user_registered", user_id=user.id)

        token = await self.tokens.issue(
            TokenKind.VERIFICATION, user.id, self.settings.verification_token_ttl
        )
        sent = await self.email.send_verification_email(user.username, user.email, token)
        if not sent:
            self.logger.error("verification_email_failed", user_id=user.id)
            raise InternalError()
        return user

    async def login(
        self, email: str, password: str, remember: bool = False
    ) -> Tuple[User, Session]:
        user = await self._find_user_by_email(email)
        if user is None:
            await self._dummy_verify(password)
            self.logger.warning("login_unknown_email")
            raise UnprocessableEntity.single("email", "email does not exist")
        if not user.email_verified:
            self.logger.warning("login_not_verified", user_id=user.id)
            raise NotVerified()
        ok = await asyncio.to_thread(self.hasher.verify, password, user.password_hash)
        if not ok:
            self.logger.warning("login_bad_password", user_id=user.id)
            raise Unauthorized()

        expiry_date = self._clock() + timedelta(seconds=self._session_ttl(remember))
        session = await asyncio.to_thread(
            self.store.create_session, user.id, expiry_date, dict(DEFAULT_SESSION_DATA)
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            remember=remember,
            expires=expiry_date.isoformat(),
        )
        return user, session

    async def request_password_reset(self, email: str) -> None:
        user = await self._find_user_by_email(email)
        if user is None:
            self.logger.warning("password_reset_unknown_email")
            raise UnprocessableEntity.single("email", "email does not exist")
        if not user.email_verified:
            self.logger.warning("password_reset_not_verified", user_id=user.id)
            raise NotVerified()
        token = await self.tokens.issue(
            TokenKind.RESET, user.id, self.settings.reset_token_ttl
        )
        sent = await self.email.send_reset_password_email(user.username, user.email, token)
        if not sent:
            self.logger.error("reset_email_failed", user_id=user.id)
            raise InternalError()
        self.logger.info("password_reset_requested", user_id=user.id)

    async def confirm_password_reset(self, token: str, new_password: str) -> User:
        user_id = await self._consume(TokenKind.RESET, token)
        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        user = await asyncio.to_thread(self.store.update_password, user_id, password_hash)
        if user is None:
            self.logger.error("password_reset_user_missing", user_id=user_id)
            raise InternalError()
        self.logger.info("password_reset_completed", user_id=user_id)
        return user

    async def verify_email(self, token: str) -> User:
        user_id = await self._consume(TokenKind.VERIFICATION, token)
        user = await asyncio.to_thread(self.store.mark_email_verified, user_id)
        if user is None:
            self.logger.error("email_verification_user_missing", user_id=user_id)
            raise InternalError()
        self.logger.info("email_verified", user_id=user_id)
        return user
