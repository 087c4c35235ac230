import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any import that might initialise the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.pop("EMAIL_KEY", None)
os.environ.pop("EMAIL_SERVICE_URL_TEMPLATE", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from latchkey.config import Settings  # noqa: E402
from latchkey.service.auth import AuthService  # noqa: E402
from latchkey.service.gate import AuthenticationGate  # noqa: E402
from latchkey.service.passwords import Argon2PasswordHasher  # noqa: E402
from latchkey.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from latchkey.service.tokens import TokenLifecycle  # noqa: E402
from latchkey.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable clock shared by the token manager, gate and auth service."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingEmail:
    """Captures outgoing mail instead of sending it."""

    is_configured = False

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    async def send_template(self, recipient, template_key, merge_info):
        self.sent.append(
            {"to": recipient.address, "template_key": template_key, "merge_info": merge_info}
        )
        return not self.fail

    async def send_verification_email(self, username, email, token):
        self.sent.append({"kind": "verification", "to": email, "username": username, "token": token})
        return not self.fail

    async def send_reset_password_email(self, username, email, token):
        self.sent.append({"kind": "reset", "to": email, "username": username, "token": token})
        return not self.fail

    def last_token(self, kind: str, to: str | None = None) -> str:
        for message in reversed(self.sent):
            if message.get("kind") == kind and (to is None or message["to"] == to):
                return message["token"]
        raise AssertionError(f"no {kind} email sent")

    async def aclose(self):
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fast_hasher():
    return Argon2PasswordHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def outbox():
    return RecordingEmail()


@pytest.fixture
def failing_outbox():
    return RecordingEmail(fail=True)


@pytest.fixture
def tokens(store, clock):
    return TokenLifecycle(store, clock=clock)


@pytest.fixture
def gate(store, clock):
    return AuthenticationGate(store, clock=clock)


@pytest.fixture
def auth_service(store, tokens, fast_hasher, outbox, settings, clock):
    return AuthService(store, tokens, fast_hasher, outbox, settings, clock=clock)


@pytest.fixture
def runtime_outbox(fast_hasher):
    """Swap the live runtime's mailer and hasher for test doubles."""
    runtime = get_runtime()
    fake = RecordingEmail()
    runtime.email = fake
    runtime.auth.email = fake
    runtime.hasher = fast_hasher
    runtime.auth.hasher = fast_hasher
    return fake


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
