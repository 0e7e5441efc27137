from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from tessera.logging import get_logger
from tessera.storage.common import clean_profile, normalize_email
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    Application,
    OAuthProviderConfig,
    SocialAccount,
    TwoFactorState,
    TwoFactorMethod,
    User,
    utcnow,
)
from tessera.storage.secrets import FieldCipher


class MemoryStore:
    """In-memory identity store for tests and local development.

    Secrets are kept encrypted exactly as the postgres store keeps them, and
    callers always receive copies, so mutating a returned entity never
    bypasses the store.
    """

    def __init__(self, *, encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.applications: Dict[str, Application] = {}
        self.oauth_configs: Dict[Tuple[str, str], OAuthProviderConfig] = {}
        self.users: Dict[str, User] = {}
        # (app_id, email) -> user id
        self.emails: Dict[Tuple[str, str], str] = {}
        self.recovery_codes: Dict[Tuple[str, str], Set[str]] = {}
        self.social_accounts: Dict[Tuple[str, str, str], SocialAccount] = {}
        # RLock so compound operations can reuse the single-entity helpers
        self._data_lock = threading.RLock()
        self._cipher = FieldCipher(encryption_key)

    def close(self) -> None:
        return None

    # applications

    @staticmethod
    def _application_copy(app: Application) -> Application:
        return replace(app, two_factor_methods=list(app.two_factor_methods))

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
    ) -> Application:
        with self._data_lock:
            new_id = app_id or str(uuid.uuid4())
            if new_id in self.applications:
                raise ConstraintViolation("application already exists", {"field": "id"})
            app = Application(
                id=new_id,
                name=name,
                tenant_id=tenant_id,
                description=description,
                two_factor_enabled=two_factor_enabled,
                two_factor_issuer=two_factor_issuer,
                email_two_factor_enabled=email_two_factor_enabled,
            )
            if two_factor_methods is not None:
                app.two_factor_methods = list(two_factor_methods)
            self.applications[new_id] = app
            return self._application_copy(app)

    def get_application(self, app_id: str) -> Optional[Application]:
        with self._data_lock:
            app = self.applications.get(app_id)
            return self._application_copy(app) if app else None

    def set_application_active(self, app_id: str, is_active: bool) -> Optional[Application]:
        with self._data_lock:
            app = self.applications.get(app_id)
            if not app:
                return None
            app.is_active = is_active
            return self._application_copy(app)

    def set_oauth_provider_config(self, config: OAuthProviderConfig) -> OAuthProviderConfig:
        with self._data_lock:
            if config.app_id not in self.applications:
                raise ConstraintViolation("application not found", {"app_id": config.app_id})
            stored = replace(config, client_secret=self._cipher.encrypt(config.client_secret))
            self.oauth_configs[(config.app_id, config.provider)] = stored
            return replace(config)

    def get_oauth_provider_config(
        self, app_id: str, provider: str
    ) -> Optional[OAuthProviderConfig]:
        with self._data_lock:
            stored = self.oauth_configs.get((app_id, provider))
            if not stored:
                return None
            return replace(stored, client_secret=self._cipher.decrypt(stored.client_secret))

    # users

    def _user_copy(self, user: User) -> User:
        return replace(user, two_factor_secret=self._cipher.decrypt(user.two_factor_secret))

    def _get_user_locked(self, app_id: str, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        if not user or user.app_id != app_id:
            return None
        return user

    def _insert_user_locked(
        self,
        app_id: str,
        email: str,
        password_hash: Optional[str],
        email_verified: bool,
        profile: Optional[Dict[str, Optional[str]]],
    ) -> User:
        if app_id not in self.applications:
            raise ConstraintViolation("application not found", {"app_id": app_id})
        normalized = normalize_email(email)
        if (app_id, normalized) in self.emails:
            raise ConstraintViolation("email already exists", {"field": "email"})
        user = User(
            id=str(uuid.uuid4()),
            app_id=app_id,
            email=normalized,
            password_hash=password_hash,
            email_verified=email_verified,
            **clean_profile(profile),
        )
        self.users[user.id] = user
        self.emails[(app_id, normalized)] = user.id
        return user

    def create_user(
        self,
        app_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        email_verified: bool = False,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> User:
        with self._data_lock:
            user = self._insert_user_locked(
                app_id, email, password_hash, email_verified, profile
            )
            return self._user_copy(user)

    def get_user(self, app_id: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            return self._user_copy(user) if user else None

    def get_user_by_email(self, app_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self.emails.get((app_id, normalize_email(email)))
            if not user_id:
                return None
            return self._user_copy(self.users[user_id])

    def update_user_profile(
        self,
        app_id: str,
        user_id: str,
        fields: Dict[str, Optional[str]],
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user:
                return None
            for name, value in clean_profile(fields).items():
                setattr(user, name, value)
            if email_verified is not None:
                user.email_verified = email_verified
            user.updated_at = utcnow()
            return self._user_copy(user)

    def set_password_hash(self, app_id: str, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            user.password_hash = password_hash
            user.updated_at = utcnow()

    def set_user_active(self, app_id: str, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            return self._user_copy(user)

    # second factor

    def set_two_factor_secret(self, app_id: str, user_id: str, secret: str) -> None:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            user.two_factor_secret = self._cipher.encrypt(secret)
            user.two_factor_state = TwoFactorState.PENDING_SETUP
            self.recovery_codes.pop((app_id, user_id), None)
            user.updated_at = utcnow()

    def enable_two_factor(
        self,
        app_id: str,
        user_id: str,
        code_hashes: Sequence[str],
        *,
        method: TwoFactorMethod = TwoFactorMethod.TOTP,
    ) -> bool:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user:
                return False
            if method == TwoFactorMethod.TOTP:
                if user.two_factor_state != TwoFactorState.PENDING_SETUP:
                    return False
            else:
                if user.two_factor_state == TwoFactorState.ENABLED:
                    return False
                user.two_factor_secret = None
            user.two_factor_state = TwoFactorState.ENABLED
            user.two_factor_method = method
            self.recovery_codes[(app_id, user_id)] = set(code_hashes)
            user.updated_at = utcnow()
            return True

    def disable_two_factor(self, app_id: str, user_id: str) -> None:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user:
                return
            user.two_factor_state = TwoFactorState.DISABLED
            user.two_factor_secret = None
            user.two_factor_method = None
            self.recovery_codes.pop((app_id, user_id), None)
            user.updated_at = utcnow()

    def replace_recovery_codes(
        self, app_id: str, user_id: str, code_hashes: Sequence[str]
    ) -> None:
        with self._data_lock:
            if not self._get_user_locked(app_id, user_id):
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            self.recovery_codes[(app_id, user_id)] = set(code_hashes)

    def consume_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            codes = self.recovery_codes.get((app_id, user_id))
            if not codes or code_hash not in codes:
                return False
            codes.discard(code_hash)
            return True

    def restore_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            user = self._get_user_locked(app_id, user_id)
            if not user or user.two_factor_state != TwoFactorState.ENABLED:
                return False
            self.recovery_codes.setdefault((app_id, user_id), set()).add(code_hash)
            return True

    def count_recovery_codes(self, app_id: str, user_id: str) -> int:
        with self._data_lock:
            return len(self.recovery_codes.get((app_id, user_id), ()))

    # social accounts

    def _account_copy(self, account: SocialAccount) -> SocialAccount:
        return replace(
            account,
            access_token=self._cipher.decrypt(account.access_token),
            raw_data=dict(account.raw_data),
        )

    def _insert_account_locked(self, account: SocialAccount) -> SocialAccount:
        key = (account.app_id, account.provider, account.provider_user_id)
        if key in self.social_accounts:
            raise ConstraintViolation(
                "social account already linked", {"field": "provider_user_id"}
            )
        if not self._get_user_locked(account.app_id, account.user_id):
            raise ConstraintViolation("user not found for social account", {"user_id": account.user_id})
        stored = replace(
            account,
            id=account.id or str(uuid.uuid4()),
            access_token=self._cipher.encrypt(account.access_token),
            raw_data=dict(account.raw_data),
        )
        self.social_accounts[key] = stored
        return stored

    def get_social_account(
        self, app_id: str, provider: str, provider_user_id: str
    ) -> Optional[SocialAccount]:
        with self._data_lock:
            account = self.social_accounts.get((app_id, provider, provider_user_id))
            return self._account_copy(account) if account else None

    def create_social_account(self, account: SocialAccount) -> SocialAccount:
        with self._data_lock:
            return self._account_copy(self._insert_account_locked(account))

    def update_social_account(self, account: SocialAccount) -> SocialAccount:
        with self._data_lock:
            key = (account.app_id, account.provider, account.provider_user_id)
            if key not in self.social_accounts:
                raise ConstraintViolation("social account not found", {"id": account.id})
            stored = replace(
                account,
                access_token=self._cipher.encrypt(account.access_token),
                raw_data=dict(account.raw_data),
                updated_at=utcnow(),
            )
            self.social_accounts[key] = stored
            return self._account_copy(stored)

    def list_social_accounts(self, app_id: str, user_id: str) -> List[SocialAccount]:
        with self._data_lock:
            return [
                self._account_copy(account)
                for account in self.social_accounts.values()
                if account.app_id == app_id and account.user_id == user_id
            ]

    def create_social_user(
        self,
        app_id: str,
        email: str,
        account: SocialAccount,
        *,
        email_verified: bool = False,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> tuple[User, SocialAccount]:
        with self._data_lock:
            key = (app_id, account.provider, account.provider_user_id)
            if key in self.social_accounts:
                raise ConstraintViolation(
                    "social account already linked", {"field": "provider_user_id"}
                )
            user = self._insert_user_locked(app_id, email, None, email_verified, profile)
            stored = self._insert_account_locked(replace(account, app_id=app_id, user_id=user.id))
            return self._user_copy(user), self._account_copy(stored)
