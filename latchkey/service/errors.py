from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import List, Optional


@dataclass(frozen=True)
class FieldError:
    """One field-level problem reported in an error envelope."""

    message: str
    domain: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class AuthError(Exception):
    """Base class for errors returned to the client.

    The set of subclasses is closed: ``latchkey.api.error_handling`` maps
    each of them to a status code and body, and a test walks ``ERROR_KINDS``
    to make sure none is missing.
    """

    default_message: str = "error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        errors: Optional[List[FieldError]] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.errors: List[FieldError] = list(errors or [])


class Unauthorized(AuthError):
    """Wrong password for an existing account."""

    default_message = "authentication required"


class NotVerified(AuthError):
    """The account exists but its email address was never confirmed."""

    default_message = "email must be verified"


class Forbidden(AuthError):
    """Unknown or expired session."""

    default_message = "user may not perform that action"


class NotFound(AuthError):
    default_message = "request path not found"


class BadRequest(AuthError):
    default_message = "bad request"


class UnprocessableEntity(AuthError):
    default_message = "error in the request body"

    @classmethod
    def single(cls, domain: Optional[str], message: str) -> "UnprocessableEntity":
        return cls(errors=[FieldError(message=message, domain=domain)])


class InternalError(AuthError):
    """Storage, network or unexpected failures; details stay server-side."""

    default_message = "an internal server error occurred"


class MalformedSessionId(InternalError):
    """The session cookie is present but does not parse as a UUID."""

    default_message = "malformed session id"


ERROR_KINDS = (
    Unauthorized,
    NotVerified,
    Forbidden,
    NotFound,
    BadRequest,
    MalformedSessionId,
    UnprocessableEntity,
    InternalError,
)


class TokenError(Exception):
    """Raised by the token lifecycle; converted before it reaches HTTP."""

    reason: str = "token invalid"

    def __init__(self, kind: str) -> None:
        super().__init__(f"{kind} {self.reason}")
        self.kind = kind


class TokenNotFound(TokenError):
    reason = "token not found"


class TokenExpired(TokenError):
    reason = "token expired"


__all__ = [
    "FieldError",
    "AuthError",
    "Unauthorized",
    "NotVerified",
    "Forbidden",
    "NotFound",
    "BadRequest",
    "MalformedSessionId",
    "UnprocessableEntity",
    "InternalError",
    "ERROR_KINDS",
    "TokenError",
    "TokenNotFound",
    "TokenExpired",
]
