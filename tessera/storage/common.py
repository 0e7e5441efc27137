"""Identity persistence interface shared by the memory and postgres stores.

Every method takes the application id first and filters by it; no method
reads or writes across tenants.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from tessera.storage.models import (
    PROFILE_FIELDS,
    Application,
    OAuthProviderConfig,
    SocialAccount,
    TwoFactorMethod,
    User,
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def clean_profile(fields: Optional[Dict[str, Optional[str]]]) -> Dict[str, Optional[str]]:
    """Keep only known profile fields."""
    if not fields:
        return {}
    return {name: fields.get(name) for name in PROFILE_FIELDS if name in fields}


class IdentityStore(Protocol):
    # applications
    def create_application(
        self,
        name: str,
        *,
        app_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        description: str = "",
        two_factor_enabled: bool = True,
        two_factor_issuer: Optional[str] = None,
        two_factor_methods: Optional[Iterable[str]] = None,
        email_two_factor_enabled: bool = False,
    ) -> Application: ...

    def get_application(self, app_id: str) -> Optional[Application]: ...

    def set_oauth_provider_config(self, config: OAuthProviderConfig) -> OAuthProviderConfig: ...

    def get_oauth_provider_config(
        self, app_id: str, provider: str
    ) -> Optional[OAuthProviderConfig]: ...

    # users
    def create_user(
        self,
        app_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        email_verified: bool = False,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> User: ...

    def get_user(self, app_id: str, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, app_id: str, email: str) -> Optional[User]: ...

    def update_user_profile(
        self,
        app_id: str,
        user_id: str,
        fields: Dict[str, Optional[str]],
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]: ...

    def set_password_hash(self, app_id: str, user_id: str, password_hash: str) -> None: ...

    def set_user_active(self, app_id: str, user_id: str, is_active: bool) -> Optional[User]: ...

    # second factor
    def set_two_factor_secret(self, app_id: str, user_id: str, secret: str) -> None: ...

    def enable_two_factor(
        self,
        app_id: str,
        user_id: str,
        code_hashes: Sequence[str],
        *,
        method: TwoFactorMethod = TwoFactorMethod.TOTP,
    ) -> bool: ...

    def disable_two_factor(self, app_id: str, user_id: str) -> None: ...

    def replace_recovery_codes(
        self, app_id: str, user_id: str, code_hashes: Sequence[str]
    ) -> None: ...

    def consume_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> bool: ...

    def restore_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> bool: ...

    def count_recovery_codes(self, app_id: str, user_id: str) -> int: ...

    # social accounts
    def get_social_account(
        self, app_id: str, provider: str, provider_user_id: str
    ) -> Optional[SocialAccount]: ...

    def create_social_account(self, account: SocialAccount) -> SocialAccount: ...

    def update_social_account(self, account: SocialAccount) -> SocialAccount: ...

    def list_social_accounts(self, app_id: str, user_id: str) -> List[SocialAccount]: ...

    def create_social_user(
        self,
        app_id: str,
        email: str,
        account: SocialAccount,
        *,
        email_verified: bool = False,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> tuple[User, SocialAccount]: ...

    def close(self) -> None: ...
