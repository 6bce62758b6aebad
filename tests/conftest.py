import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports authcore.config
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.email import EmailService  # noqa: E402
from authcore.service.rate_limit import RateLimiter  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STRONG_PASSWORD = "Correct-Horse-42"


class RecordingEmailService(EmailService):
    """Captures outgoing notifications instead of delivering them."""

    def __init__(self, *, fail: bool = False):
        super().__init__(base_url="https://auth.test")
        self.sent = []
        self.fail = fail

    def _send_email(self, to_email, subject, text_body, *, kind):
        if self.fail:
            raise OSError("smtp down")
        self.sent.append({"kind": kind, "to": to_email, "subject": subject, "body": text_body})
        return True

    def kinds(self):
        return [message["kind"] for message in self.sent]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key=TEST_SECRET)


@pytest.fixture
def email_outbox():
    return RecordingEmailService()


@pytest.fixture
def auth_service(memory_store, settings, email_outbox):
    return AuthService(
        memory_store, settings, rate_limiter=RateLimiter(), email_service=email_outbox
    )


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
