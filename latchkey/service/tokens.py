from __future__ import annotations

import asyncio
import secrets
import string
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from latchkey.logging import get_logger
from latchkey.service.errors import TokenExpired, TokenNotFound
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import TokenKind, utcnow

if TYPE_CHECKING:
    from latchkey.service.auth import AuthStore

logger = get_logger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits

# Fresh tokens to try when an insert collides with an existing primary key
_MAX_ISSUE_ATTEMPTS = 3


def generate(length: int) -> str:
    """Return ``length`` characters drawn uniformly from ``[A-Za-z0-9]``."""
    if length < 1:
        raise ValueError("token length must be positive")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class TokenLifecycle:
    """Issues and consumes the emailed single-use tokens.

    A token is valid only while ``now < active_expires``. Consuming deletes
    the row through ``store.consume_token``, which is atomic, so a token can
    be redeemed at most once even under concurrent requests. Expired rows are
    reported as ``TokenExpired`` and left in place.
    """

    def __init__(
        self,
        store: "AuthStore",
        *,
        length: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if length < 1:
            raise ValueError("token length must be positive")
        self.store = store
        self.length = length
        self._clock = clock

    def generate(self) -> str:
        return generate(self.length)

    async def issue(self, kind: TokenKind, user_id: str, ttl_seconds: int) -> str:
        active_expires = self._clock() + timedelta(seconds=ttl_seconds)
        attempt = 0
        while True:
            attempt += 1
            token = self.generate()
            try:
                await asyncio.to_thread(
                    self.store.insert_token, kind, token, user_id, active_expires
                )
            except ConstraintViolation as exc:
                if exc.field != "token" or attempt >= _MAX_ISSUE_ATTEMPTS:
                    raise
                logger.warning("token_collision", kind=kind.value, attempt=attempt)
                continue
            logger.info(
                "token_issued",
                kind=kind.value,
                user_id=user_id,
                active_expires=active_expires.isoformat(),
            )
            return token

    async def validate_and_consume(self, kind: TokenKind, token: str) -> str:
        """Redeem ``token`` and return the owning user id."""
        now = self._clock()
        row = await asyncio.to_thread(self.store.consume_token, kind, token, now)
        if row is not None:
            logger.info("token_consumed", kind=kind.value, user_id=row.user_id)
            return row.user_id
        stale = await asyncio.to_thread(self.store.get_token, kind, token)
        if stale is not None and stale.is_expired(now):
            logger.warning("token_expired", kind=kind.value, user_id=stale.user_id)
            raise TokenExpired(kind.value)
        logger.warning("token_not_found", kind=kind.value, token_prefix=token[:2])
        raise TokenNotFound(kind.value)
