import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-testing-only")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.audit import AuditRecorder, LoggingAuditSink  # noqa: E402
from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.crypto import EncryptionCodec  # noqa: E402
from authcore.service.fields import FieldEncryptor  # noqa: E402
from authcore.service.hashing import SecretHasher  # noqa: E402
from authcore.service.identity import IdentityLinker  # noqa: E402
from authcore.service.mfa import MfaEngine  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.tokens import TokenIssuer  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_ENCRYPTION_KEY = "unit-test-encryption-key"


class FakeClock:
    """Controllable replacement for the services' ``now`` callable."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Captures outgoing security emails instead of sending them."""

    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    def _record(self, kind, email, *args):
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.sent.append((kind, email) + args)
        return True

    def send_password_reset_email(self, email, token):
        return self._record("reset", email, token)

    def send_mfa_setup_email(self, email, qr_code_url, secret):
        return self._record("mfa_setup", email, qr_code_url, secret)

    def send_email_verification_link(self, email, token):
        return self._record("verify", email, token)

    def last(self, kind):
        for entry in reversed(self.sent):
            if entry[0] == kind:
                return entry
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        encryption_key=TEST_ENCRYPTION_KEY,
        jwt_secret=TEST_JWT_SECRET,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec():
    # low scrypt cost; the layout and failure behaviour do not depend on it
    return EncryptionCodec(TEST_ENCRYPTION_KEY, scrypt_n=2**10)


@pytest.fixture
def field_encryptor(codec):
    return FieldEncryptor(codec)


@pytest.fixture
def hasher():
    return SecretHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def tokens(settings, clock):
    return TokenIssuer(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        session_ttl_minutes=settings.session_ttl_minutes,
        extended_session_ttl_minutes=settings.session_extended_ttl_minutes,
        now=clock,
    )


@pytest.fixture
def audit(memory_store):
    return AuditRecorder([LoggingAuditSink(), memory_store])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mfa_engine(memory_store, codec, hasher, audit, notifier, clock):
    return MfaEngine(memory_store, codec, hasher, audit, notifier, now=clock)


@pytest.fixture
def auth_service(
    memory_store, settings, tokens, mfa_engine, field_encryptor, hasher, audit, notifier, clock
):
    return AuthService(
        memory_store,
        settings,
        tokens=tokens,
        mfa=mfa_engine,
        fields=field_encryptor,
        hasher=hasher,
        audit=audit,
        notifier=notifier,
        seeder=memory_store,
        now=clock,
    )


@pytest.fixture
def identity_linker(memory_store, tokens, field_encryptor, hasher, audit, clock):
    return IdentityLinker(
        memory_store,
        tokens=tokens,
        fields=field_encryptor,
        hasher=hasher,
        audit=audit,
        allowed_providers=("google", "facebook", "apple", "github", "microsoft"),
        seeder=memory_store,
        facebook_app_id="fb-app",
        facebook_app_secret="fb-secret",
        apple_client_id="com.example.app",
        now=clock,
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
