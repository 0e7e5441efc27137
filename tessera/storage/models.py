from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Profile fields shared by User, SocialAccount and ProviderProfile
PROFILE_FIELDS = ("name", "first_name", "last_name", "avatar_url", "locale")


class TwoFactorState(str, Enum):
    DISABLED = "disabled"
    # secret confirmed by a setup code, recovery codes not yet issued
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"


class TwoFactorMethod(str, Enum):
    TOTP = "totp"
    EMAIL = "email"


@dataclass
class Application:
    id: str
    name: str
    tenant_id: Optional[str] = None
    description: str = ""
    is_active: bool = True
    two_factor_enabled: bool = True
    two_factor_issuer: Optional[str] = None
    # methods offered to users; "email" also needs email_two_factor_enabled
    two_factor_methods: List[str] = field(default_factory=lambda: [TwoFactorMethod.TOTP.value])
    email_two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthProviderConfig:
    app_id: str
    provider: str
    client_id: str
    client_secret: str
    redirect_url: Optional[str] = None
    is_enabled: bool = True


@dataclass
class User:
    id: str
    app_id: str
    email: str
    password_hash: Optional[str] = None
    email_verified: bool = False
    is_active: bool = True
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    locale: Optional[str] = None
    two_factor_state: TwoFactorState = TwoFactorState.DISABLED
    two_factor_secret: Optional[str] = None
    two_factor_method: Optional[TwoFactorMethod] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def two_factor_enabled(self) -> bool:
        return self.two_factor_state == TwoFactorState.ENABLED

    @property
    def active_two_factor_method(self) -> Optional[TwoFactorMethod]:
        if not self.two_factor_enabled:
            return None
        # accounts enrolled before methods were recorded use TOTP
        return self.two_factor_method or TwoFactorMethod.TOTP

    def profile(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in PROFILE_FIELDS}


@dataclass
class SocialAccount:
    id: str
    app_id: str
    user_id: str
    provider: str
    provider_user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    locale: Optional[str] = None
    username: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)
    access_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def profile(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in PROFILE_FIELDS}


@dataclass
class ProviderProfile:
    """Verified identity handed over by an OAuth provider."""

    provider_user_id: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    locale: Optional[str] = None
    username: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    access_token: Optional[str] = None

    def profile(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in PROFILE_FIELDS}


@dataclass
class SessionRecord:
    """One live refresh token. ``family_id`` is shared by every rotation of a login."""

    token_id: str
    user_id: str
    app_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    generation: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        app_id: str,
        issued_at: datetime,
        expires_at: datetime,
        *,
        family_id: Optional[str] = None,
        generation: int = 0,
    ) -> "SessionRecord":
        return cls(
            token_id=str(uuid.uuid4()),
            user_id=user_id,
            app_id=app_id,
            family_id=family_id or str(uuid.uuid4()),
            issued_at=issued_at,
            expires_at=expires_at,
            generation=generation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "user_id": self.user_id,
            "app_id": self.app_id,
            "family_id": self.family_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            token_id=data["token_id"],
            user_id=data["user_id"],
            app_id=data["app_id"],
            family_id=data["family_id"],
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            generation=int(data.get("generation", 0)),
        )
