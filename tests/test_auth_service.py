"""Unit tests for the registration, login, verification and reset flows."""

import asyncio

import pytest

from latchkey.service.auth import AuthService
from latchkey.service.errors import (
    FieldError,
    InternalError,
    NotVerified,
    Unauthorized,
    UnprocessableEntity,
)
from latchkey.storage.models import TokenKind

PASSWORD = "Secret1!"


async def _verified_user(auth_service, outbox, username="alice"):
    email = f"{username}@example.com"
    await auth_service.register(username, email, PASSWORD)
    await auth_service.verify_email(outbox.last_token("verification", email))
    return email


async def test_register_hashes_password_and_emails_token(auth_service, store, outbox):
    user = await auth_service.register("alice", "alice@example.com", PASSWORD)

    stored = store.get_user(user.id)
    assert stored.password_hash != PASSWORD
    assert stored.email_verified is False
    message = outbox.sent[-1]
    assert message["kind"] == "verification"
    assert message["username"] == "alice"
    assert store.get_token(TokenKind.VERIFICATION, message["token"]).user_id == user.id


async def test_register_duplicate_email_is_field_error(auth_service):
    await auth_service.register("alice", "alice@example.com", PASSWORD)

    with pytest.raises(UnprocessableEntity) as excinfo:
        await auth_service.register("alice2", "alice@example.com", PASSWORD)
    assert excinfo.value.errors == [FieldError(message="email taken", domain="email")]


async def test_register_email_failure_keeps_user(
    store, tokens, fast_hasher, settings, clock, failing_outbox
):
    service = AuthService(
        store, tokens, fast_hasher, failing_outbox, settings, clock=clock
    )
    with pytest.raises(InternalError):
        await service.register("alice", "alice@example.com", PASSWORD)
    assert store.get_user_by_email("alice@example.com") is not None


async def test_verify_email_is_single_use(auth_service, outbox, store):
    user = await auth_service.register("alice", "alice@example.com", PASSWORD)
    token = outbox.last_token("verification")

    verified = await auth_service.verify_email(token)
    assert verified.email_verified is True
    assert verified.updated_at >= user.updated_at

    with pytest.raises(UnprocessableEntity) as excinfo:
        await auth_service.verify_email(token)
    assert excinfo.value.errors == [FieldError(message="token not found", domain=None)]


async def test_verify_email_expired_token(auth_service, outbox, store, clock, settings):
    user = await auth_service.register("alice", "alice@example.com", PASSWORD)
    clock.advance(settings.verification_token_ttl)

    with pytest.raises(UnprocessableEntity) as excinfo:
        await auth_service.verify_email(outbox.last_token("verification"))
    assert excinfo.value.errors[0].message == "token expired"
    assert store.get_user(user.id).email_verified is False


async def test_login_requires_verified_email(auth_service):
    await auth_service.register("alice", "alice@example.com", PASSWORD)

    with pytest.raises(NotVerified):
        await auth_service.login("alice@example.com", PASSWORD)


async def test_login_wrong_password(auth_service, outbox):
    email = await _verified_user(auth_service, outbox)

    with pytest.raises(Unauthorized):
        await auth_service.login(email, "Wrong1!pass")


async def test_login_unknown_email(auth_service):
    with pytest.raises(UnprocessableEntity) as excinfo:
        await auth_service.login("nobody@example.com", PASSWORD)
    assert excinfo.value.errors == [FieldError(message="email does not exist", domain="email")]


def _count_calls(monkeypatch, hasher, name):
    calls = []
    original = getattr(hasher, name)

    def wrapper(*args):
        calls.append(args)
        return original(*args)

    monkeypatch.setattr(hasher, name, wrapper)
    return calls


async def test_login_unknown_email_costs_one_verify(auth_service, fast_hasher, monkeypatch):
    verifies = _count_calls(monkeypatch, fast_hasher, "verify")
    hashes = _count_calls(monkeypatch, fast_hasher, "hash")

    for expected in (1, 2):
        with pytest.raises(UnprocessableEntity):
            await auth_service.login("nobody@example.com", PASSWORD)
        assert len(verifies) == expected

    # the throwaway hash is computed once and reused
    assert len(hashes) == 1


async def test_login_wrong_password_costs_one_verify(auth_service, outbox, fast_hasher, monkeypatch):
    email = await _verified_user(auth_service, outbox)
    verifies = _count_calls(monkeypatch, fast_hasher, "verify")

    with pytest.raises(Unauthorized):
        await auth_service.login(email, "Wrong1!pass")
    assert len(verifies) == 1


async def test_login_session_lifetime(auth_service, outbox, clock, settings, store):
    email = await _verified_user(auth_service, outbox)

    user, short = await auth_service.login(email, PASSWORD)
    assert (short.expiry_date - clock()).total_seconds() == settings.short_session_time
    assert short.data == {"settings": "DUMMY"}
    assert store.get_session(short.id).user_id == user.id

    _, long = await auth_service.login(email, PASSWORD, remember=True)
    assert (long.expiry_date - clock()).total_seconds() == settings.long_session_time
    assert long.id != short.id


async def test_password_reset_round_trip(auth_service, outbox, store):
    email = await _verified_user(auth_service, outbox)
    await auth_service.request_password_reset(email)
    token = outbox.last_token("reset", email)

    user = await auth_service.confirm_password_reset(token, "Another2@")
    assert store.get_user(user.id).password_hash != "Another2@"

    await auth_service.login(email, "Another2@")
    with pytest.raises(Unauthorized):
        await auth_service.login(email, PASSWORD)
    with pytest.raises(UnprocessableEntity):
        await auth_service.confirm_password_reset(token, "Third3#pw")


async def test_password_reset_requires_verified_user(auth_service):
    await auth_service.register("alice", "alice@example.com", PASSWORD)

    with pytest.raises(NotVerified):
        await auth_service.request_password_reset("alice@example.com")


async def test_password_reset_unknown_email(auth_service):
    with pytest.raises(UnprocessableEntity):
        await auth_service.request_password_reset("nobody@example.com")


async def test_expired_reset_token_leaves_password(auth_service, outbox, store, clock, settings):
    email = await _verified_user(auth_service, outbox)
    before = store.get_user_by_email(email).password_hash
    await auth_service.request_password_reset(email)
    clock.advance(settings.reset_token_ttl + 1)

    with pytest.raises(UnprocessableEntity) as excinfo:
        await auth_service.confirm_password_reset(outbox.last_token("reset"), "Another2@")
    assert excinfo.value.errors[0].message == "token expired"
    assert store.get_user_by_email(email).password_hash == before


async def test_concurrent_confirm_reset_single_winner(auth_service, outbox):
    email = await _verified_user(auth_service, outbox)
    await auth_service.request_password_reset(email)
    token = outbox.last_token("reset")

    results = await asyncio.gather(
        auth_service.confirm_password_reset(token, "First1!pw"),
        auth_service.confirm_password_reset(token, "Second2@pw"),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, UnprocessableEntity)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].errors[0].message == "token not found"
