from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.crypto import Argon2PasswordHasher, PasswordHasher
from tessera.service.deadlines import call_store
from tessera.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from tessera.service.social import ProviderClient, SocialIdentityResolver, SocialLoginResult
from tessera.service.tenancy import TenantScope
from tessera.service.tokens import PendingAuth, TokenClaims, TokenPair, TokenService
from tessera.service.twofactor import TwoFactorEngine
from tessera.storage.common import IdentityStore, clean_profile, normalize_email
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import TwoFactorMethod, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


@dataclass
class LoginResult:
    user: User
    tokens: Optional[TokenPair] = None
    pending: Optional[PendingAuth] = None
    two_factor_method: Optional[TwoFactorMethod] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.pending is not None


class AuthService:
    """Account flows that tie the identity store to the token components.

    Every entry point resolves the application first; unknown and inactive
    applications fail before any account lookup.
    """

    def __init__(
        self,
        store: IdentityStore,
        tenants: TenantScope,
        tokens: TokenService,
        two_factor: TwoFactorEngine,
        social: SocialIdentityResolver,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        providers: Optional[ProviderClient] = None,
    ) -> None:
        self.store = store
        self.tenants = tenants
        self.tokens = tokens
        self.two_factor = two_factor
        self.social = social
        self.settings = settings
        self.hasher = hasher or Argon2PasswordHasher()
        self.providers = providers or ProviderClient(store, settings)
        # Verified against when the email is unknown so both failure paths cost the same
        self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))

    async def _db(self, func, *args, operation: str, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.datastore_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    @staticmethod
    def _check_password_policy(password: str) -> None:
        if not isinstance(password, str) or not (
            MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH
        ):
            raise ValidationError(
                f"password must be between {MIN_PASSWORD_LENGTH} and "
                f"{MAX_PASSWORD_LENGTH} characters"
            )

    async def register(self, app_id: str, email: str, password: str, **profile) -> User:
        app = await self.tenants.resolve(app_id)
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email")
        self._check_password_policy(password)
        password_hash = self.hasher.hash(password)
        try:
            user = await self._db(
                self.store.create_user,
                app.id,
                normalized,
                password_hash=password_hash,
                profile=clean_profile(profile),
                operation="create_user",
            )
        except ConstraintViolation as exc:
            logger.info("register_conflict", app_id=app.id)
            raise ConflictError("email already registered") from exc
        logger.info("user_registered", app_id=app.id, user_id=user.id)
        return user

    async def login(self, app_id: str, email: str, password: str) -> LoginResult:
        """Password login.

        Unknown email, wrong password, a disabled account and (when required)
        an unverified email all raise the same ``AuthenticationError``.
        """
        app = await self.tenants.resolve(app_id)
        user = await self._db(
            self.store.get_user_by_email,
            app.id,
            normalize_email(email),
            operation="get_user_by_email",
        )
        stored_hash = user.password_hash if user and user.password_hash else self._dummy_hash
        password_ok = self.hasher.verify(stored_hash, password or "")
        if user is None or not user.password_hash or not password_ok:
            logger.info("login_failed", app_id=app.id, reason="credentials")
            raise AuthenticationError("invalid credentials")
        if not user.is_active:
            logger.info("login_failed", app_id=app.id, user_id=user.id, reason="inactive")
            raise AuthenticationError("invalid credentials")
        if self.settings.require_verified_email and not user.email_verified:
            logger.info("login_failed", app_id=app.id, user_id=user.id, reason="unverified")
            raise AuthenticationError("invalid credentials")

        await self._maybe_rehash(user, password)

        if user.two_factor_enabled:
            method = user.active_two_factor_method
            pending = await self.tokens.issue_pending(user.id, app.id)
            if method == TwoFactorMethod.EMAIL:
                await self.two_factor.send_email_code(app.id, user.id)
            logger.info(
                "login_requires_two_factor", app_id=app.id, user_id=user.id, method=method.value
            )
            return LoginResult(user=user, pending=pending, two_factor_method=method)
        tokens = await self.tokens.issue_pair(user.id, app.id)
        logger.info("login_succeeded", app_id=app.id, user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    async def _maybe_rehash(self, user: User, password: str) -> None:
        if not self.hasher.needs_rehash(user.password_hash or ""):
            return
        try:
            await self._db(
                self.store.set_password_hash,
                user.app_id,
                user.id,
                self.hasher.hash(password),
                operation="set_password_hash",
            )
        except (ServerError, ConstraintViolation) as exc:
            logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))

    async def verify_two_factor(self, app_id: str, pending_token: str, code: str) -> TokenPair:
        app = await self.tenants.resolve(app_id)
        return await self.two_factor.login_verify(pending_token, code, app.id)

    async def resend_two_factor_code(self, app_id: str, pending_token: str) -> datetime:
        app = await self.tenants.resolve(app_id)
        return await self.two_factor.resend_email_code(pending_token, app.id)

    async def authenticate(self, app_id: str, access_token: str) -> TokenClaims:
        app = await self.tenants.resolve(app_id)
        return await self.tokens.validate_access(access_token, app.id)

    async def refresh(self, app_id: str, refresh_token: str) -> TokenPair:
        app = await self.tenants.resolve(app_id)
        return await self.tokens.rotate(refresh_token, app.id)

    async def logout(self, app_id: str, refresh_token: str) -> None:
        app = await self.tenants.resolve(app_id)
        await self.tokens.revoke(refresh_token, app.id)

    async def change_password(
        self, app_id: str, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every session of the user.

        Returns the number of sessions revoked.
        """
        app = await self.tenants.resolve(app_id)
        user = await self._db(self.store.get_user, app.id, user_id, operation="get_user")
        if user is None:
            raise NotFoundError("user not found")
        if not user.password_hash or not self.hasher.verify(
            user.password_hash, current_password or ""
        ):
            logger.info("change_password_rejected", app_id=app.id, user_id=user_id)
            raise AuthenticationError("invalid credentials")
        self._check_password_policy(new_password)
        await self._db(
            self.store.set_password_hash,
            app.id,
            user_id,
            self.hasher.hash(new_password),
            operation="set_password_hash",
        )
        revoked = await self.tokens.revoke_all_for_user(app.id, user_id)
        logger.info("password_changed", app_id=app.id, user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def social_login(
        self,
        app_id: str,
        provider: str,
        code: str,
        redirect_uri: Optional[str] = None,
    ) -> SocialLoginResult:
        app = await self.tenants.resolve(app_id)
        profile = await self.providers.exchange_code(app.id, provider, code, redirect_uri)
        result = await self.social.login(app.id, provider, profile)
        logger.info(
            "social_login_succeeded",
            app_id=app.id,
            provider=provider,
            user_id=result.user.id,
            is_new_account=result.is_new_account,
        )
        return result
