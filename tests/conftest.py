import asyncio
import inspect
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

# Configure settings before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-client-id")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from identity_engine.service.email import EmailKind  # noqa: E402
from identity_engine.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@dataclass
class SentEmail:
    kind: EmailKind
    recipient: str
    token: Optional[str] = None
    name: Optional[str] = None


class RecordingEmailSender:
    """EmailSender that keeps every message instead of talking to SMTP."""

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []
        self.fail = False

    def send(self, kind, recipient, *, token=None, name=None) -> bool:
        if self.fail:
            return False
        self.sent.append(SentEmail(kind=kind, recipient=recipient, token=token, name=name))
        return True

    def of_kind(self, kind: EmailKind) -> List[SentEmail]:
        return [message for message in self.sent if message.kind == kind]

    def last_token(self, kind: EmailKind) -> Optional[str]:
        matching = self.of_kind(kind)
        return matching[-1].token if matching else None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests(sender=RecordingEmailSender())
    yield
    reset_runtime_for_tests(sender=RecordingEmailSender())


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def outbox(runtime) -> RecordingEmailSender:
    return runtime.sender


@pytest.fixture
def strong_password() -> str:
    return "Str0ng!Passw0rd"


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
