from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Callable, Optional

from latchkey.logging import get_logger
from latchkey.service.auth import AuthContext, AuthStore
from latchkey.service.errors import Forbidden, MalformedSessionId, NotFound
from latchkey.storage.models import utcnow

logger = get_logger(__name__)


class AuthenticationGate:
    """Turns a ``session_id`` cookie value into an ``AuthContext``.

    One store lookup per call and no caching, so an expired session is
    rejected on the first request after ``expiry_date``.
    """

    def __init__(self, store: AuthStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    async def resolve(self, cookie_value: Optional[str]) -> AuthContext:
        if cookie_value is None:
            raise NotFound()
        try:
            session_id = str(uuid.UUID(cookie_value))
        except ValueError as exc:
            logger.warning("session_id_malformed")
            raise MalformedSessionId() from exc

        session = await asyncio.to_thread(self.store.get_session, session_id)
        if session is None:
            logger.warning("session_unknown")
            raise Forbidden()
        if session.is_expired(self._clock()):
            logger.info("session_expired", user_id=session.user_id)
            raise Forbidden()
        return AuthContext(user_id=session.user_id, session_id=session.id)
