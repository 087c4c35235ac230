from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from latchkey.api.schemas import ErrorBody, ErrorEnvelope, FieldErrorBody
from latchkey.logging import get_correlation_id, get_logger
from latchkey.service.errors import (
    AuthError,
    BadRequest,
    FieldError,
    Forbidden,
    InternalError,
    NotFound,
    NotVerified,
    Unauthorized,
    UnprocessableEntity,
)
from latchkey.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# error class -> (status, message, fixed field errors)
_ERROR_TABLE: Dict[type, Tuple[int, str, Optional[List[FieldError]]]] = {
    Unauthorized: (
        401,
        "Invalid user credential",
        [FieldError(message="Invalid username or password", domain="auth")],
    ),
    NotVerified: (
        401,
        "Not Verified",
        [FieldError(message="Email not verified", domain="email")],
    ),
    Forbidden: (
        403,
        "Unauthorized",
        [FieldError(message="Not Permitted", domain="auth")],
    ),
    NotFound: (404, "Not found", None),
    UnprocessableEntity: (422, "Unprocessable entity", None),
    BadRequest: (400, "Bad request", None),
    InternalError: (500, "Internal server error", None),
}

# Also applied by the uncaught-exception handler, which runs outside the http middlewares
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}

_STATUS_MESSAGES = {
    400: "Bad request",
    401: "Invalid user credential",
    403: "Unauthorized",
    404: "Not found",
    405: "Method not allowed",
    422: "Unprocessable entity",
    500: "Internal server error",
}


def _envelope(message: str, errors: Optional[List[FieldError]]) -> dict:
    body = ErrorBody(
        message=message,
        errors=[FieldErrorBody(**e.to_dict()) for e in errors] if errors else None,
    )
    return ErrorEnvelope(error=body).model_dump()


def error_response(exc: AuthError) -> Tuple[int, dict]:
    """Map a service error to its status code and JSON body."""
    for cls in type(exc).__mro__:
        if cls in _ERROR_TABLE:
            status, message, fixed = _ERROR_TABLE[cls]
            break
    else:
        raise KeyError(f"no response mapping for {type(exc).__name__}")

    errors = fixed if fixed is not None else (exc.errors or None)
    if cls is BadRequest and errors:
        message = "Form error"
    return status, _envelope(message, errors)


def _validation_field_errors(exc: RequestValidationError) -> List[FieldError]:
    errors = []
    for err in exc.errors():
        loc = [part for part in err.get("loc", ()) if part != "body"]
        domain = str(loc[-1]) if loc else None
        message = err.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append(FieldError(message=message, domain=domain))
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error envelope for service, validation and storage errors."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        status, body = error_response(exc)
        log_fn = logger.error if status >= 500 else logger.warning
        log_fn(
            "auth_error",
            path=request.url.path,
            method=request.method,
            status_code=status,
            error_type=type(exc).__name__,
        )
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        if any(err.get("type") == "json_invalid" for err in exc.errors()):
            logger.warning("malformed_json", path=request.url.path, method=request.method)
            status, body = error_response(BadRequest())
            return JSONResponse(status_code=status, content=body)
        field_errors = _validation_field_errors(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[e.domain for e in field_errors],
        )
        return JSONResponse(status_code=422, content=_envelope("Form error", field_errors))

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        status, body = error_response(UnprocessableEntity.single(exc.field, exc.message))
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = _STATUS_MESSAGES.get(exc.status_code, str(exc.detail))
        if exc.status_code >= 500:
            logger.error(
                "http_error", path=request.url.path, method=request.method, status_code=exc.status_code
            )
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_envelope(message, None),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        status, body = error_response(InternalError())
        headers = dict(SECURITY_HEADERS)
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id
        return JSONResponse(status_code=status, content=body, headers=headers)
