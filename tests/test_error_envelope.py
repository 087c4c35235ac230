"""Tests for the error envelope:

{"error": {"message": "<text>", "errors": [{"message": ..., "domain": ...}] | null}}
"""

import pytest
from fastapi.testclient import TestClient

from latchkey import app as app_module
from latchkey.api.error_handling import error_response
from latchkey.service.errors import (
    ERROR_KINDS,
    AuthError,
    BadRequest,
    FieldError,
    Forbidden,
    InternalError,
    MalformedSessionId,
    NotFound,
    NotVerified,
    Unauthorized,
    UnprocessableEntity,
)


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


EXPECTED = {
    Unauthorized: (
        401,
        "Invalid user credential",
        [{"message": "Invalid username or password", "domain": "auth"}],
    ),
    NotVerified: (401, "Not Verified", [{"message": "Email not verified", "domain": "email"}]),
    Forbidden: (403, "Unauthorized", [{"message": "Not Permitted", "domain": "auth"}]),
    NotFound: (404, "Not found", None),
    UnprocessableEntity: (422, "Unprocessable entity", None),
    BadRequest: (400, "Bad request", None),
    MalformedSessionId: (500, "Internal server error", None),
    InternalError: (500, "Internal server error", None),
}


def test_every_error_kind_is_mapped():
    assert set(EXPECTED) == set(ERROR_KINDS)


@pytest.mark.parametrize("kind", ERROR_KINDS, ids=lambda k: k.__name__)
def test_error_response_table(kind):
    status, body = error_response(kind())
    expected_status, expected_message, expected_errors = EXPECTED[kind]

    assert status == expected_status
    assert body == {"error": {"message": expected_message, "errors": expected_errors}}


def test_unmapped_error_raises():
    class Unknown(Exception):
        pass

    with pytest.raises(KeyError):
        error_response(Unknown())


def test_subclass_uses_parent_mapping():
    class Gone(NotFound):
        pass

    status, _ = error_response(Gone())
    assert status == 404


def test_unprocessable_entity_carries_field_errors():
    status, body = error_response(UnprocessableEntity.single("email", "email taken"))

    assert status == 422
    assert body["error"]["errors"] == [{"message": "email taken", "domain": "email"}]


def test_bad_request_with_fields_is_form_error():
    _, body = error_response(
        BadRequest(errors=[FieldError(message="required", domain="email")])
    )
    assert body["error"]["message"] == "Form error"


def test_internal_error_hides_message():
    _, body = error_response(InternalError("database password leaked here"))
    assert "leaked" not in str(body)


def test_auth_error_base_is_not_directly_mapped():
    with pytest.raises(KeyError):
        error_response(AuthError())


def test_validation_error_envelope(client):
    response = client.post(
        "/api/auth/register",
        json={"username": "alice", "email": "not-an-email", "password": "weak"},
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["message"] == "Form error"
    domains = {e["domain"] for e in error["errors"]}
    assert domains == {"email", "password"}


def test_missing_field_is_reported_by_name(client):
    response = client.post("/api/auth/login", json={"email": "alice@example.com"})

    assert response.status_code == 422
    assert response.json()["error"]["errors"][0]["domain"] == "password"


def test_malformed_json_is_bad_request(client):
    response = client.post(
        "/api/auth/login",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": {"message": "Bad request", "errors": None}}


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/auth/nope")

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Not found"


def test_unexpected_exception_is_opaque_500(client, monkeypatch):
    from latchkey.service.runtime import get_runtime

    def boom(email):
        raise RuntimeError("connection refused to db.internal")

    monkeypatch.setattr(get_runtime().store, "get_user_by_email", boom)
    response = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "Secret1!"}
    )

    assert response.status_code == 500
    assert response.json() == {"error": {"message": "Internal server error", "errors": None}}


def test_unexpected_exception_keeps_request_id_and_security_headers(client, monkeypatch):
    from latchkey.service.runtime import get_runtime

    def boom(email):
        raise RuntimeError("connection refused to db.internal")

    monkeypatch.setattr(get_runtime().store, "get_user_by_email", boom)
    response = client.post(
        "/api/auth/login",
        json={"email": "alice@example.com", "password": "Secret1!"},
        headers={"X-Request-ID": "req-500"},
    )

    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "req-500"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"] == "no-store"
