from datetime import timedelta

import pytest

from latchkey.service.errors import Forbidden, InternalError, MalformedSessionId, NotFound


def _session(store, clock, ttl_seconds=3600):
    user = store.create_user("alice", "alice@example.com", "hash")
    return store.create_session(user.id, clock() + timedelta(seconds=ttl_seconds))


async def test_missing_cookie_is_not_found(gate):
    with pytest.raises(NotFound):
        await gate.resolve(None)


@pytest.mark.parametrize("value", ["", "not-a-uuid", "1234"])
async def test_malformed_cookie(gate, value):
    with pytest.raises(MalformedSessionId) as excinfo:
        await gate.resolve(value)
    assert isinstance(excinfo.value, InternalError)
    assert excinfo.value.errors == []


async def test_unknown_session_is_forbidden(gate):
    with pytest.raises(Forbidden):
        await gate.resolve("6f1c2a5e-0a7d-4d0e-9d55-0d6c1c3b2a11")


async def test_live_session_resolves(gate, store, clock):
    sess = _session(store, clock)

    ctx = await gate.resolve(sess.id)
    assert ctx.user_id == sess.user_id
    assert ctx.session_id == sess.id


async def test_uppercase_uuid_is_accepted(gate, store, clock):
    sess = _session(store, clock)

    ctx = await gate.resolve(sess.id.upper())
    assert ctx.session_id == sess.id


@pytest.mark.parametrize("elapsed", [3600, 3601, 86400 * 365])
async def test_expired_session_is_forbidden(gate, store, clock, elapsed):
    sess = _session(store, clock, ttl_seconds=3600)
    clock.advance(elapsed)

    with pytest.raises(Forbidden):
        await gate.resolve(sess.id)


async def test_session_valid_one_second_before_expiry(gate, store, clock):
    sess = _session(store, clock, ttl_seconds=3600)
    clock.advance(3599)

    assert (await gate.resolve(sess.id)).user_id == sess.user_id
