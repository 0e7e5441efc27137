from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tessera.config import Settings, get_settings, reset_settings_cache
from tessera.logging import get_logger
from tessera.service.auth import AuthService
from tessera.service.crypto import (
    Argon2PasswordHasher,
    Clock,
    HmacTokenSigner,
    SystemClock,
    TotpGenerator,
)
from tessera.service.social import ProviderClient, SocialIdentityResolver
from tessera.service.tenancy import TenantScope
from tessera.service.tokens import TokenService
from tessera.service.twofactor import TwoFactorCodeSender, TwoFactorEngine
from tessera.storage.memory import MemoryStore
from tessera.storage.postgres import PostgresStore
from tessera.storage.redis_cache import RedisSessionStore
from tessera.storage.sessions import MemorySessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the stores, capability objects and services of one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        code_sender: Optional[TwoFactorCodeSender] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        encryption_key = self.settings.field_encryption_key or self.settings.jwt_secret

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(encryption_key=encryption_key)
                # A fresh memory store has no tenants; seed the default one
                self.store.create_application("default", app_id=self.settings.default_app_id)
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    encryption_key=encryption_key,
                    timeout_seconds=self.settings.datastore_timeout_seconds,
                )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sessions = self._build_session_store()

        self.hasher = Argon2PasswordHasher()
        self.signer = HmacTokenSigner(self.settings.jwt_secret)
        self.otp = TotpGenerator(
            digits=self.settings.totp_digits, interval=self.settings.totp_interval_seconds
        )
        self.tenants = TenantScope(
            self.store,
            default_app_id=self.settings.default_app_id,
            timeout_seconds=self.settings.datastore_timeout_seconds,
        )
        self.tokens = TokenService(self.sessions, self.signer, self.settings, clock=self.clock)
        self.two_factor = TwoFactorEngine(
            self.store,
            self.sessions,
            self.tokens,
            self.settings,
            otp=self.otp,
            clock=self.clock,
            code_sender=code_sender,
        )
        self.providers = ProviderClient(self.store, self.settings)
        self.social = SocialIdentityResolver(
            self.store, self.tokens, self.tenants, self.settings
        )
        self.auth = AuthService(
            self.store,
            self.tenants,
            self.tokens,
            self.two_factor,
            self.social,
            self.settings,
            hasher=self.hasher,
            providers=self.providers,
        )
        logger.info(
            "runtime_initialized",
            session_store=type(self.sessions).__name__,
            replay_policy=self.settings.refresh_replay_policy.value,
            totp_single_use=self.settings.totp_single_use,
        )

    def _build_session_store(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisSessionStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.session_store_timeout_seconds,
                )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions and revocation; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and revocations "
                "are held in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemorySessionStore(clock=self.clock)

    async def open(self) -> None:
        await self.sessions.open()

    async def close(self) -> None:
        """Close the session store and the identity store's connections."""
        await self.sessions.close()
        await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# close() tasks scheduled on a running loop, held until they finish
_pending_closes: set[asyncio.Task] = set()


def _close_finished(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("runtime_close_failed", error=str(task.exception()))


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")

        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    task = loop.create_task(runtime.close())
                    _pending_closes.add(task)
                    task.add_done_callback(_close_finished)
                else:
                    asyncio.run(runtime.close())
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        runtime = Runtime(settings)
        return runtime
