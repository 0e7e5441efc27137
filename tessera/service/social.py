from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import httpx

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.deadlines import call_store
from tessera.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServerError,
    SocialProviderError,
    ValidationError,
)
from tessera.service.tenancy import TenantScope
from tessera.service.tokens import TokenPair, TokenService
from tessera.storage.common import IdentityStore, normalize_email
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import PROFILE_FIELDS, ProviderProfile, SocialAccount, User

logger = get_logger(__name__)

# OAuth provider endpoints
OAUTH_PROVIDERS = {
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "github": {
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
    "facebook": {
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/v18.0/me",
        "fields": "id,name,email,first_name,last_name,picture.type(large),locale",
    },
}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_provider_profile(provider: str, userinfo: dict) -> ProviderProfile:
    """Normalize a provider's user-info payload."""
    if provider == "google":
        return ProviderProfile(
            provider_user_id=_text(userinfo.get("id") or userinfo.get("sub")) or "",
            email=_text(userinfo.get("email")),
            email_verified=bool(
                userinfo.get("verified_email", userinfo.get("email_verified", False))
            ),
            name=_text(userinfo.get("name")),
            first_name=_text(userinfo.get("given_name")),
            last_name=_text(userinfo.get("family_name")),
            avatar_url=_text(userinfo.get("picture")),
            locale=_text(userinfo.get("locale")),
            raw=dict(userinfo),
        )
    if provider == "github":
        name = _text(userinfo.get("name"))
        first_name, last_name = None, None
        if name:
            parts = name.split(" ", 1)
            first_name = parts[0]
            last_name = parts[1] if len(parts) > 1 else None
        # GitHub only publishes verified addresses
        return ProviderProfile(
            provider_user_id=_text(userinfo.get("id")) or "",
            email=_text(userinfo.get("email")),
            email_verified=bool(_text(userinfo.get("email"))),
            name=name,
            first_name=first_name,
            last_name=last_name,
            avatar_url=_text(userinfo.get("avatar_url")),
            username=_text(userinfo.get("login")),
            raw=dict(userinfo),
        )
    if provider == "facebook":
        picture = userinfo.get("picture")
        avatar = None
        if isinstance(picture, dict) and isinstance(picture.get("data"), dict):
            avatar = _text(picture["data"].get("url"))
        return ProviderProfile(
            provider_user_id=_text(userinfo.get("id")) or "",
            email=_text(userinfo.get("email")),
            email_verified=bool(_text(userinfo.get("email"))),
            name=_text(userinfo.get("name")),
            first_name=_text(userinfo.get("first_name")),
            last_name=_text(userinfo.get("last_name")),
            avatar_url=avatar,
            locale=_text(userinfo.get("locale")),
            raw=dict(userinfo),
        )
    raise ValidationError("unsupported provider")


class ProviderClient:
    """Exchanges an authorization code for a normalized provider profile."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_timeout_seconds,
            follow_redirects=False,
            transport=self.transport,
        )

    async def _credentials(
        self, app_id: str, provider: str
    ) -> tuple[str, str, Optional[str]]:
        config = await call_store(
            self.store.get_oauth_provider_config,
            app_id,
            provider,
            timeout=self.settings.datastore_timeout_seconds,
            operation="get_oauth_provider_config",
        )
        if config is not None:
            if not config.is_enabled:
                raise ForbiddenError("provider not enabled for this application")
            client_id, client_secret = config.client_id, config.client_secret
            redirect_url = config.redirect_url
        else:
            client_id, client_secret = self.settings.oauth_credentials(provider)
            redirect_url = None
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider, app_id=app_id)
            raise SocialProviderError("provider not configured")
        return client_id, client_secret, redirect_url or self.settings.oauth_redirect_uri

    async def exchange_code(
        self,
        app_id: str,
        provider: str,
        code: str,
        redirect_uri: Optional[str] = None,
    ) -> ProviderProfile:
        provider = (provider or "").lower()
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError("unsupported provider")
        if not code:
            raise ValidationError("authorization code is required")
        client_id, client_secret, configured_redirect = await self._credentials(
            app_id, provider
        )
        token_data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
        }
        redirect = redirect_uri or configured_redirect
        if redirect:
            token_data["redirect_uri"] = redirect

        try:
            async with self._client() as client:
                token_response = await client.post(
                    OAUTH_PROVIDERS[provider]["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise SocialProviderError("provider returned no access token")
                profile = await self._fetch_profile(client, provider, access_token)
        except httpx.TimeoutException as exc:
            logger.warning("oauth_exchange_timeout", provider=provider, error=str(exc))
            raise SocialProviderError("provider timed out", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("oauth_exchange_http_error", provider=provider, status_code=status)
            raise SocialProviderError(
                "provider request failed", retryable=status >= 500
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("oauth_exchange_transport_error", provider=provider, error=str(exc))
            raise SocialProviderError("provider unreachable", retryable=True) from exc
        except ValueError as exc:
            logger.error("oauth_payload_parse_error", provider=provider, error=str(exc))
            raise SocialProviderError("provider returned an invalid response") from exc

        logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_user_id=profile.provider_user_id,
        )
        return profile

    async def fetch_profile(self, provider: str, access_token: str) -> ProviderProfile:
        """Fetch the profile for an access token the caller already holds."""
        provider = (provider or "").lower()
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError("unsupported provider")
        try:
            async with self._client() as client:
                return await self._fetch_profile(client, provider, access_token)
        except httpx.TimeoutException as exc:
            logger.warning("oauth_profile_timeout", provider=provider)
            raise SocialProviderError("provider timed out", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("oauth_profile_http_error", provider=provider, status_code=status)
            raise SocialProviderError(
                "provider request failed", retryable=status >= 500
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("oauth_profile_transport_error", provider=provider, error=str(exc))
            raise SocialProviderError("provider unreachable", retryable=True) from exc
        except ValueError as exc:
            logger.error("oauth_payload_parse_error", provider=provider, error=str(exc))
            raise SocialProviderError("provider returned an invalid response") from exc

    async def _fetch_profile(
        self, client: httpx.AsyncClient, provider: str, access_token: str
    ) -> ProviderProfile:
        config = OAUTH_PROVIDERS[provider]
        headers = {"Authorization": f"Bearer {access_token}"}
        params: Dict[str, str] = {}
        if provider == "github":
            headers["Accept"] = "application/vnd.github+json"
        if provider == "facebook":
            params["fields"] = config["fields"]

        response = await client.get(config["userinfo_url"], headers=headers, params=params)
        response.raise_for_status()
        userinfo = response.json()
        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=provider)
            raise SocialProviderError("provider returned an invalid response")
        profile = parse_provider_profile(provider, userinfo)

        if provider == "github" and not profile.email:
            emails_response = await client.get(config["emails_url"], headers=headers)
            emails = emails_response.json() if emails_response.status_code == 200 else []
            for entry in emails if isinstance(emails, list) else []:
                if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
                    profile = replace(profile, email=_text(entry.get("email")), email_verified=True)
                    break

        if not profile.provider_user_id:
            logger.error("oauth_identity_missing_uid", provider=provider)
            raise SocialProviderError("provider returned an invalid response")
        return replace(profile, access_token=access_token)


@dataclass
class SocialLoginResult:
    user: User
    is_new_account: bool
    tokens: TokenPair


class SocialIdentityResolver:
    """Maps a provider identity to a local user of one application.

    Lookup order: linked social account, then a user with the same email in
    the application, then a new user. Profile sync on the first two paths is
    best-effort and never fails the login.
    """

    def __init__(
        self,
        store: IdentityStore,
        tokens: TokenService,
        tenants: TenantScope,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.tenants = tenants
        self.settings = settings

    async def _db(self, func, *args, operation: str, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.datastore_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    async def login(
        self, app_id: str, provider: str, profile: ProviderProfile
    ) -> SocialLoginResult:
        app = await self.tenants.resolve(app_id)
        user, is_new = await self.resolve_or_create(app.id, provider, profile)
        tokens = await self.tokens.issue_pair(user.id, app.id)
        return SocialLoginResult(user=user, is_new_account=is_new, tokens=tokens)

    async def resolve_or_create(
        self, app_id: str, provider: str, profile: ProviderProfile
    ) -> tuple[User, bool]:
        """Return ``(user, is_new_account)`` for a provider identity.

        Calling this twice with the same identity returns the same user and
        leaves exactly one linked social account.
        """
        provider = (provider or "").lower()
        provider_user_id = _text(profile.provider_user_id)
        email = normalize_email(profile.email or "")
        if not provider_user_id:
            raise SocialProviderError("provider profile has no user id")
        if not email or "@" not in email:
            logger.warning(
                "social_profile_missing_email", provider=provider, app_id=app_id
            )
            raise SocialProviderError(
                "provider profile has no usable email", detail={"reason": "missing_email"}
            )

        # A constraint violation means a concurrent login created the rows
        # first; the second pass finds them.
        for attempt in range(2):
            account = await self._db(
                self.store.get_social_account,
                app_id,
                provider,
                provider_user_id,
                operation="get_social_account",
            )
            if account is not None:
                user = await self._db(
                    self.store.get_user, app_id, account.user_id, operation="get_user"
                )
                if user is None:
                    logger.error(
                        "social_account_orphaned", app_id=app_id, account_id=account.id
                    )
                    raise ServerError("internal error")
                self._ensure_active(user)
                user = await self._sync_linked(user, account, profile, email)
                logger.info(
                    "social_login_existing", app_id=app_id, provider=provider, user_id=user.id
                )
                return user, False

            existing = await self._db(
                self.store.get_user_by_email, app_id, email, operation="get_user_by_email"
            )
            try:
                if existing is not None:
                    self._ensure_active(existing)
                    await self._db(
                        self.store.create_social_account,
                        self._new_account(
                            app_id, existing.id, provider, provider_user_id, email, profile
                        ),
                        operation="create_social_account",
                    )
                    user = await self._fill_empty_fields(existing, profile)
                    logger.info(
                        "social_account_linked",
                        app_id=app_id,
                        provider=provider,
                        user_id=user.id,
                    )
                    return user, False

                user, _ = await self._db(
                    self.store.create_social_user,
                    app_id,
                    email,
                    self._new_account(app_id, "", provider, provider_user_id, email, profile),
                    email_verified=profile.email_verified,
                    profile={name: getattr(profile, name) for name in PROFILE_FIELDS},
                    operation="create_social_user",
                )
                logger.info(
                    "social_user_created", app_id=app_id, provider=provider, user_id=user.id
                )
                return user, True
            except ConstraintViolation as exc:
                if attempt:
                    logger.error(
                        "social_link_conflict", app_id=app_id, provider=provider, error=str(exc)
                    )
                    raise ConflictError("social account could not be linked") from exc
                logger.info("social_link_race_retry", app_id=app_id, provider=provider)
        raise ConflictError("social account could not be linked")

    @staticmethod
    def _ensure_active(user: User) -> None:
        if not user.is_active:
            logger.info("social_login_inactive_user", user_id=user.id)
            raise AuthenticationError("account disabled")

    @staticmethod
    def _new_account(
        app_id: str,
        user_id: str,
        provider: str,
        provider_user_id: str,
        email: str,
        profile: ProviderProfile,
    ) -> SocialAccount:
        return SocialAccount(
            id=str(uuid.uuid4()),
            app_id=app_id,
            user_id=user_id,
            provider=provider,
            provider_user_id=provider_user_id,
            email=email,
            username=profile.username,
            raw_data=dict(profile.raw),
            access_token=profile.access_token,
            **{name: getattr(profile, name) for name in PROFILE_FIELDS},
        )

    async def _sync_linked(
        self, user: User, account: SocialAccount, profile: ProviderProfile, email: str
    ) -> User:
        # A field changed on the provider side when the incoming value differs
        # from the value cached on the account at the previous login.
        changed: Dict[str, Optional[str]] = {}
        for name in PROFILE_FIELDS:
            incoming = getattr(profile, name)
            if incoming and incoming != getattr(account, name) and incoming != getattr(user, name):
                changed[name] = incoming
        mark_verified = (
            True
            if profile.email_verified and not user.email_verified and email == user.email
            else None
        )
        updated_account = replace(
            account,
            email=email,
            username=profile.username or account.username,
            raw_data=dict(profile.raw) or account.raw_data,
            access_token=profile.access_token or account.access_token,
            **{
                name: getattr(profile, name) or getattr(account, name)
                for name in PROFILE_FIELDS
            },
        )
        try:
            await self._db(
                self.store.update_social_account,
                updated_account,
                operation="update_social_account",
            )
            if changed or mark_verified:
                refreshed = await self._db(
                    self.store.update_user_profile,
                    user.app_id,
                    user.id,
                    changed,
                    email_verified=mark_verified,
                    operation="update_user_profile",
                )
                if refreshed is not None:
                    user = refreshed
        except (ServerError, ConstraintViolation) as exc:
            logger.warning(
                "social_profile_sync_failed",
                user_id=user.id,
                provider=account.provider,
                error=str(exc),
            )
        return user

    async def _fill_empty_fields(self, user: User, profile: ProviderProfile) -> User:
        fields = {
            name: getattr(profile, name)
            for name in PROFILE_FIELDS
            if getattr(profile, name) and not getattr(user, name)
        }
        mark_verified = True if profile.email_verified and not user.email_verified else None
        if not fields and not mark_verified:
            return user
        try:
            refreshed = await self._db(
                self.store.update_user_profile,
                user.app_id,
                user.id,
                fields,
                email_verified=mark_verified,
                operation="update_user_profile",
            )
        except (ServerError, ConstraintViolation) as exc:
            logger.warning("social_profile_fill_failed", user_id=user.id, error=str(exc))
            return user
        return refreshed or user
