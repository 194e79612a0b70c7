import asyncio
import inspect
import os
import shutil
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="pixora_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
# No Redis in tests: the runtime falls back to the in-process cache under TEST_MODE
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pixora_auth.service.auth import SessionManager  # noqa: E402
from pixora_auth.service.email import EmailService  # noqa: E402
from pixora_auth.service.notifier import Notifier  # noqa: E402
from pixora_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from pixora_auth.service.tokens import TokenService  # noqa: E402
from pixora_auth.storage.memory import MemoryStore  # noqa: E402
from pixora_auth.storage.redis_cache import MemoryCache  # noqa: E402

ACCESS_SECRET = os.environ["JWT_ACCESS_SECRET"]
REFRESH_SECRET = os.environ["JWT_REFRESH_SECRET"]
PASSWORD = "Str0ng@Passw0rd"


def _clear_memory_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
    reset_runtime_for_tests()


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


class FakeClock:
    """Manually advanced epoch clock shared by tokens, cache and lockout checks."""

    def __init__(self, start: float | None = None):
        self.now = float(int(start if start is not None else time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmailService(EmailService):
    """Captures outgoing mail instead of talking to SMTP."""

    def __init__(self):
        super().__init__(base_url="https://app.pixora.test")
        self.outbox: list[dict] = []
        self.fail = False

    def _send_email(self, to_email, subject, html_body, text_body=None):
        if self.fail:
            raise OSError("smtp unreachable")
        self.outbox.append({"to": to_email, "subject": subject, "text": text_body or ""})
        return True

    def last_token(self) -> str:
        text = self.outbox[-1]["text"]
        return text.split("?token=", 1)[1].split()[0]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=ACCESS_SECRET)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def tokens(clock):
    return TokenService(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        issuer="pixora-craftt",
        audience="pixora-craftt-app",
        clock=clock,
    )


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def notifier(email_service):
    return Notifier(email_service)


@pytest.fixture
def manager(store, cache, tokens, notifier):
    # Cheap argon2 parameters keep the suite fast; production uses the library defaults
    return SessionManager(
        store,
        cache,
        tokens,
        notifier,
        password_hasher=PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID),
    )


@pytest.fixture
def password():
    return PASSWORD
