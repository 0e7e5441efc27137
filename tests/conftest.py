import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Seed the environment before any imports that might read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tessera.config import DEFAULT_APP_ID, Settings  # noqa: E402
from tessera.service.auth import AuthService  # noqa: E402
from tessera.service.crypto import (  # noqa: E402
    Argon2PasswordHasher,
    HmacTokenSigner,
    TotpGenerator,
)
from tessera.service.social import ProviderClient, SocialIdentityResolver  # noqa: E402
from tessera.service.tenancy import TenantScope  # noqa: E402
from tessera.service.tokens import TokenService  # noqa: E402
from tessera.service.twofactor import TwoFactorEngine  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402
from tessera.storage.sessions import MemorySessionStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
APP_A = "11111111-1111-1111-1111-111111111111"
APP_B = "22222222-2222-2222-2222-222222222222"
# offers email codes as well as TOTP
APP_MAIL = "44444444-4444-4444-4444-444444444444"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingSender:
    """Keeps second-factor codes instead of emailing them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send_two_factor_code(self, app_id: str, email: str, code: str) -> None:
        self.sent.append((app_id, email, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


class Services:
    """Everything one test needs, wired against in-memory stores."""

    def __init__(self, settings: Settings, clock: ManualClock, transport=None) -> None:
        self.settings = settings
        self.clock = clock
        self.store = MemoryStore(encryption_key=settings.jwt_secret)
        self.store.create_application("default", app_id=DEFAULT_APP_ID)
        self.store.create_application("Tenant A", app_id=APP_A)
        self.store.create_application("Tenant B", app_id=APP_B)
        self.store.create_application(
            "Tenant Mail",
            app_id=APP_MAIL,
            two_factor_methods=["totp", "email"],
            email_two_factor_enabled=True,
        )
        self.sessions = MemorySessionStore(clock=clock)
        self.hasher = Argon2PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)
        self.signer = HmacTokenSigner(settings.jwt_secret)
        self.otp = TotpGenerator()
        self.sender = RecordingSender()
        self.tenants = TenantScope(self.store, default_app_id=DEFAULT_APP_ID)
        self.tokens = TokenService(self.sessions, self.signer, settings, clock=clock)
        self.two_factor = TwoFactorEngine(
            self.store,
            self.sessions,
            self.tokens,
            settings,
            otp=self.otp,
            clock=clock,
            code_sender=self.sender,
        )
        self.providers = ProviderClient(self.store, settings, transport=transport)
        self.social = SocialIdentityResolver(self.store, self.tokens, self.tenants, settings)
        self.auth = AuthService(
            self.store,
            self.tenants,
            self.tokens,
            self.two_factor,
            self.social,
            settings,
            hasher=self.hasher,
            providers=self.providers,
        )

    def totp_now(self, secret: str) -> str:
        return self.otp.code_at(secret, self.clock.now().timestamp())


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(jwt_secret=TEST_SECRET, test_mode=True, use_memory_store=True)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def services(settings, clock):
    return Services(settings, clock)


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
