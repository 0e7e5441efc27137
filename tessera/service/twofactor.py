from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, List, Optional, Protocol, TypeVar

from tessera.config import Settings
from tessera.logging import get_logger, sanitize_error_message
from tessera.service.crypto import Clock, OTPGenerator, SystemClock, TotpGenerator
from tessera.service.deadlines import call_session_store, call_store
from tessera.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    TokenError,
    TwoFactorError,
    ValidationError,
)
from tessera.service.tokens import TokenPair, TokenService
from tessera.storage.common import IdentityStore
from tessera.storage.models import Application, TwoFactorMethod, TwoFactorState, User
from tessera.storage.sessions import SessionStore

logger = get_logger(__name__)

T = TypeVar("T")

RECOVERY_CODE_BYTES = 8
EMAIL_CODE_DIGITS = 6


def generate_recovery_code() -> str:
    """16 hex characters grouped as ``xxxx-xxxx-xxxx-xxxx``."""
    raw = secrets.token_hex(RECOVERY_CODE_BYTES)
    return "-".join(raw[i : i + 4] for i in range(0, len(raw), 4))


def normalize_recovery_code(code: str) -> str:
    return "".join((code or "").split()).replace("-", "").lower()


def hash_recovery_code(code: str) -> str:
    return hashlib.sha256(normalize_recovery_code(code).encode()).hexdigest()


def generate_email_code() -> str:
    return f"{secrets.randbelow(10 ** EMAIL_CODE_DIGITS):0{EMAIL_CODE_DIGITS}d}"


def hash_email_code(code: str) -> str:
    return hashlib.sha256("".join((code or "").split()).encode()).hexdigest()


class TwoFactorCodeSender(Protocol):
    """Delivers an email second-factor code to the user."""

    async def send_two_factor_code(self, app_id: str, email: str, code: str) -> None: ...


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    expires_at: datetime


@dataclass
class TwoFactorStatus:
    state: TwoFactorState
    recovery_codes_remaining: int
    method: Optional[TwoFactorMethod] = None

    @property
    def enabled(self) -> bool:
        return self.state == TwoFactorState.ENABLED


class TwoFactorEngine:
    """Second-factor enrollment and verification with single-use recovery codes.

    TOTP, per user: ``disabled`` -> (``generate_secret``: pending secret held
    in the session store) -> ``verify_setup`` -> ``pending_setup`` ->
    ``enable`` -> ``enabled`` -> ``disable`` -> ``disabled``.

    Email codes skip the secret: ``enable_email`` moves a user straight to
    ``enabled``, and each login sends a short-lived code through the
    injected ``TwoFactorCodeSender``.
    """

    def __init__(
        self,
        store: IdentityStore,
        sessions: SessionStore,
        tokens: TokenService,
        settings: Settings,
        *,
        otp: Optional[OTPGenerator] = None,
        clock: Optional[Clock] = None,
        code_sender: Optional[TwoFactorCodeSender] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.settings = settings
        self.otp = otp or TotpGenerator(
            digits=settings.totp_digits, interval=settings.totp_interval_seconds
        )
        self.clock = clock or SystemClock()
        self.code_sender = code_sender
        self.pending_secret_ttl = timedelta(minutes=settings.pending_two_factor_ttl_minutes)
        self.email_code_ttl = timedelta(seconds=settings.email_code_ttl_seconds)

    def _now(self) -> datetime:
        return self.clock.now()

    async def _db(self, func, *args, operation: str, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.datastore_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    async def _kv(self, awaitable: Awaitable[T], operation: str) -> T:
        return await call_session_store(
            awaitable,
            timeout=self.settings.session_store_timeout_seconds,
            operation=operation,
        )

    async def _load_user(self, app_id: str, user_id: str) -> User:
        user = await self._db(self.store.get_user, app_id, user_id, operation="get_user")
        if user is None:
            raise NotFoundError("user not found")
        return user

    # -- attempt limiting ----------------------------------------------------

    async def _ensure_not_locked(self, app_id: str, user_id: str) -> None:
        if await self._kv(self.sessions.is_locked_out(app_id, user_id), "is_locked_out"):
            logger.warning("mfa_locked_out", app_id=app_id, user_id=user_id)
            raise RateLimitedError("too many attempts, try again later")

    async def _record_failure(self, app_id: str, user_id: str) -> None:
        locked, attempts = await self._kv(
            self.sessions.record_failed_attempt(
                app_id,
                user_id,
                self.settings.mfa_max_attempts,
                self.settings.mfa_lockout_seconds,
            ),
            "record_failed_attempt",
        )
        if locked and attempts >= 0:
            logger.warning(
                "mfa_lockout_triggered", app_id=app_id, user_id=user_id, attempts=attempts
            )

    async def _clear_failures(self, app_id: str, user_id: str) -> None:
        await self._kv(
            self.sessions.clear_failed_attempts(app_id, user_id), "clear_failed_attempts"
        )

    # -- code checks ---------------------------------------------------------

    async def _check_totp(self, app_id: str, user_id: str, secret: str, code: str) -> bool:
        step = self.otp.match_step(secret, code, self._now(), self.settings.totp_drift_steps)
        if step is None:
            return False
        if not self.settings.totp_single_use:
            return True
        window = self.otp.interval * (2 * self.settings.totp_drift_steps + 1)
        claimed = await self._kv(
            self.sessions.claim_once(app_id, f"totp:{user_id}:{step}", window), "claim_once"
        )
        if not claimed:
            logger.warning("totp_code_reused", app_id=app_id, user_id=user_id)
        return claimed

    async def _check_email_code(self, app_id: str, user_id: str, code: str) -> bool:
        if not self._looks_like_code(code, EMAIL_CODE_DIGITS):
            return False
        return await self._kv(
            self.sessions.consume_email_code(app_id, user_id, hash_email_code(code)),
            "consume_email_code",
        )

    @staticmethod
    def _looks_like_code(code: str, digits: int) -> bool:
        candidate = "".join((code or "").split())
        return candidate.isdigit() and len(candidate) == digits

    def _new_recovery_codes(self) -> tuple[List[str], List[str]]:
        codes = [generate_recovery_code() for _ in range(self.settings.recovery_code_count)]
        return codes, [hash_recovery_code(code) for code in codes]

    # -- enrollment ----------------------------------------------------------

    async def generate_secret(self, app_id: str, user_id: str) -> TwoFactorSetup:
        """Create a pending secret and its provisioning URI.

        The secret is not the user's until ``verify_setup`` accepts a code
        for it; it expires after ``pending_two_factor_ttl_minutes``.
        """
        app = await self._db(self.store.get_application, app_id, operation="get_application")
        if app is None or not app.two_factor_enabled:
            raise ForbiddenError("two-factor authentication is not available")
        user = await self._load_user(app_id, user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = self.otp.generate_secret()
        now = self._now()
        expires_at = now + self.pending_secret_ttl
        await self._kv(
            self.sessions.set_pending_secret(
                app_id, user_id, secret, int(self.pending_secret_ttl.total_seconds())
            ),
            "set_pending_secret",
        )
        issuer = app.two_factor_issuer or self.settings.two_factor_issuer
        logger.info("two_factor_secret_generated", app_id=app_id, user_id=user_id)
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=self.otp.provisioning_uri(secret, user.email, issuer),
            expires_at=expires_at,
        )

    async def verify_setup(self, app_id: str, user_id: str, code: str) -> None:
        """Confirm the pending secret with a code from the authenticator.

        The pending secret is discarded whether or not the code matches.
        """
        await self._ensure_not_locked(app_id, user_id)
        secret = await self._kv(
            self.sessions.pop_pending_secret(app_id, user_id), "pop_pending_secret"
        )
        if secret is None:
            raise TwoFactorError("no pending two-factor setup")
        user = await self._load_user(app_id, user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not await self._check_totp(app_id, user_id, secret, code):
            await self._record_failure(app_id, user_id)
            logger.info("two_factor_setup_rejected", app_id=app_id, user_id=user_id)
            raise TwoFactorError("invalid code")
        await self._db(
            self.store.set_two_factor_secret,
            app_id,
            user_id,
            secret,
            operation="set_two_factor_secret",
        )
        await self._clear_failures(app_id, user_id)
        logger.info("two_factor_setup_verified", app_id=app_id, user_id=user_id)

    async def enable(self, app_id: str, user_id: str) -> List[str]:
        """Turn on two-factor login and return the recovery codes.

        The plaintext codes are returned here only; the store keeps digests.
        """
        user = await self._load_user(app_id, user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        codes, hashes = self._new_recovery_codes()
        enabled = await self._db(
            self.store.enable_two_factor, app_id, user_id, hashes, operation="enable_two_factor"
        )
        if not enabled:
            raise ValidationError("two-factor setup has not been verified")
        logger.info("two_factor_enabled", app_id=app_id, user_id=user_id, codes=len(codes))
        return codes

    async def disable(self, app_id: str, user_id: str) -> None:
        await self._load_user(app_id, user_id)
        await self._db(
            self.store.disable_two_factor, app_id, user_id, operation="disable_two_factor"
        )
        await self._clear_failures(app_id, user_id)
        logger.info("two_factor_disabled", app_id=app_id, user_id=user_id)

    async def regenerate_recovery_codes(
        self, app_id: str, user_id: str, code: str
    ) -> List[str]:
        """Replace all recovery codes after checking a current TOTP code."""
        await self._ensure_not_locked(app_id, user_id)
        user = await self._load_user(app_id, user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise ValidationError("two-factor authentication is not enabled")
        if not await self._check_totp(app_id, user_id, user.two_factor_secret, code):
            await self._record_failure(app_id, user_id)
            raise TwoFactorError("invalid code")
        codes, hashes = self._new_recovery_codes()
        await self._db(
            self.store.replace_recovery_codes,
            app_id,
            user_id,
            hashes,
            operation="replace_recovery_codes",
        )
        await self._clear_failures(app_id, user_id)
        logger.info("recovery_codes_regenerated", app_id=app_id, user_id=user_id)
        return codes

    async def status(self, app_id: str, user_id: str) -> TwoFactorStatus:
        user = await self._load_user(app_id, user_id)
        remaining = 0
        if user.two_factor_state == TwoFactorState.ENABLED:
            remaining = await self._db(
                self.store.count_recovery_codes,
                app_id,
                user_id,
                operation="count_recovery_codes",
            )
        return TwoFactorStatus(
            state=user.two_factor_state,
            recovery_codes_remaining=remaining,
            method=user.active_two_factor_method,
        )

    # -- methods -------------------------------------------------------------

    @staticmethod
    def _email_allowed(app: Application) -> bool:
        return (
            app.email_two_factor_enabled
            and TwoFactorMethod.EMAIL.value in app.two_factor_methods
        )

    async def available_methods(self, app_id: str) -> List[TwoFactorMethod]:
        """Methods the application offers; TOTP when nothing usable is configured."""
        app = await self._db(self.store.get_application, app_id, operation="get_application")
        if app is None:
            return [TwoFactorMethod.TOTP]
        if not app.two_factor_enabled:
            return []
        methods: List[TwoFactorMethod] = []
        for name in app.two_factor_methods:
            try:
                method = TwoFactorMethod(name.strip())
            except ValueError:
                logger.warning("two_factor_method_unknown", app_id=app_id, method=name)
                continue
            if method == TwoFactorMethod.EMAIL and not app.email_two_factor_enabled:
                continue
            if method not in methods:
                methods.append(method)
        return methods or [TwoFactorMethod.TOTP]

    async def user_method(self, app_id: str, user_id: str) -> TwoFactorMethod:
        user = await self._load_user(app_id, user_id)
        method = user.active_two_factor_method
        if method is None:
            raise ValidationError("two-factor authentication is not enabled")
        return method

    # -- email codes ---------------------------------------------------------

    async def enable_email(self, app_id: str, user_id: str) -> List[str]:
        """Turn on email codes as the second factor and return recovery codes."""
        app = await self._db(self.store.get_application, app_id, operation="get_application")
        if app is None or not app.two_factor_enabled:
            raise ForbiddenError("two-factor authentication is not available")
        if not self._email_allowed(app):
            raise ForbiddenError("email two-factor authentication is not available")
        user = await self._load_user(app_id, user_id)
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        codes, hashes = self._new_recovery_codes()
        enabled = await self._db(
            self.store.enable_two_factor,
            app_id,
            user_id,
            hashes,
            method=TwoFactorMethod.EMAIL,
            operation="enable_two_factor",
        )
        if not enabled:
            raise ConflictError("two-factor authentication is already enabled")
        logger.info(
            "two_factor_enabled", app_id=app_id, user_id=user_id, method="email", codes=len(codes)
        )
        return codes

    async def send_email_code(self, app_id: str, user_id: str) -> datetime:
        """Store a fresh email code, replacing any earlier one, and deliver it.

        Returns when the code expires.
        """
        user = await self._load_user(app_id, user_id)
        if user.active_two_factor_method != TwoFactorMethod.EMAIL:
            raise ValidationError("email two-factor authentication is not enabled")
        await self._ensure_not_locked(app_id, user_id)
        if self.code_sender is None:
            logger.error("two_factor_code_sender_missing", app_id=app_id)
            raise ServerError("two-factor email delivery is not configured")
        code = generate_email_code()
        await self._kv(
            self.sessions.set_email_code(
                app_id,
                user_id,
                hash_email_code(code),
                int(self.email_code_ttl.total_seconds()),
            ),
            "set_email_code",
        )
        try:
            await self.code_sender.send_two_factor_code(app_id, user.email, code)
        except Exception as exc:
            logger.error(
                "two_factor_code_delivery_failed",
                app_id=app_id,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ServerError("failed to send two-factor code") from exc
        logger.info("two_factor_code_sent", app_id=app_id, user_id=user_id)
        return self._now() + self.email_code_ttl

    async def resend_email_code(self, pending_token: str, app_id: str) -> datetime:
        """Send a new code for a login that is waiting on its second factor."""
        claims = await self.tokens.validate_pending(pending_token, app_id)
        return await self.send_email_code(app_id, claims.user_id)

    async def verify_email_code(self, app_id: str, user_id: str, code: str) -> None:
        await self._ensure_not_locked(app_id, user_id)
        if not await self._check_email_code(app_id, user_id, code):
            await self._record_failure(app_id, user_id)
            raise TwoFactorError("invalid code")
        await self._clear_failures(app_id, user_id)

    async def _restore_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> None:
        try:
            restored = await self._db(
                self.store.restore_recovery_code,
                app_id,
                user_id,
                code_hash,
                operation="restore_recovery_code",
            )
        except ServerError:
            logger.error("recovery_code_restore_failed", app_id=app_id, user_id=user_id)
            return
        logger.warning(
            "recovery_code_restored", app_id=app_id, user_id=user_id, restored=restored
        )

    # -- login ---------------------------------------------------------------

    async def login_verify(self, pending_token: str, code: str, app_id: str) -> TokenPair:
        """Finish a password login with a TOTP code, an email code or a recovery code.

        A recovery code is consumed by a single atomic delete; of two
        concurrent submissions of the same code exactly one succeeds. If the
        login then fails to complete, the code is put back.
        """
        claims = await self.tokens.validate_pending(pending_token, app_id)
        user_id = claims.user_id
        await self._ensure_not_locked(app_id, user_id)
        user = await self._db(self.store.get_user, app_id, user_id, operation="get_user")
        if user is None or not user.is_active or not user.two_factor_enabled:
            raise TwoFactorError("invalid code")

        method = user.active_two_factor_method
        consumed_hash: Optional[str] = None
        if method == TwoFactorMethod.EMAIL and self._looks_like_code(code, EMAIL_CODE_DIGITS):
            used = "email"
            accepted = await self._check_email_code(app_id, user_id, code)
        elif method == TwoFactorMethod.TOTP and self._looks_like_code(
            code, self.settings.totp_digits
        ):
            used = "totp"
            accepted = await self._check_totp(
                app_id, user_id, user.two_factor_secret or "", code
            )
        else:
            used = "recovery_code"
            code_hash = hash_recovery_code(code)
            accepted = bool(normalize_recovery_code(code)) and await self._db(
                self.store.consume_recovery_code,
                app_id,
                user_id,
                code_hash,
                operation="consume_recovery_code",
            )
            if accepted:
                consumed_hash = code_hash
        if not accepted:
            await self._record_failure(app_id, user_id)
            logger.info("two_factor_login_rejected", app_id=app_id, user_id=user_id)
            raise TwoFactorError("invalid code")

        try:
            if not await self.tokens.consume_pending(claims):
                raise TokenError("token no longer valid", detail={"reason": "revoked"})
            pair = await self.tokens.issue_pair(user_id, app_id)
        except Exception:
            if consumed_hash is not None:
                await self._restore_recovery_code(app_id, user_id, consumed_hash)
            raise
        await self._clear_failures(app_id, user_id)
        logger.info("two_factor_login_verified", app_id=app_id, user_id=user_id, method=used)
        return pair
