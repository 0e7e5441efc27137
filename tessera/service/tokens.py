from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Optional, TypeVar

from tessera.config import ReplayPolicy, Settings
from tessera.logging import get_logger
from tessera.service.crypto import Clock, SystemClock, TokenSigner
from tessera.service.deadlines import call_session_store
from tessera.service.errors import TokenError
from tessera.service.tenancy import TenantScope
from tessera.storage.models import SessionRecord
from tessera.storage.sessions import (
    REVOKED_LOGOUT,
    REVOKED_ROTATED,
    SessionStore,
    ttl_until,
)

logger = get_logger(__name__)

T = TypeVar("T")

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_PENDING = "pending_2fa"


@dataclass
class TokenClaims:
    user_id: str
    app_id: str
    type: str
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None
    family_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
        }


@dataclass
class PendingAuth:
    token: str
    expires_at: datetime


class TokenService:
    """Issues, validates, rotates and revokes signed token pairs.

    Every refresh token has a live ``SessionRecord`` keyed by its ``token_id``.
    Rotation is a single check-and-replace in the session store, so exactly one
    caller presenting a given refresh token wins. Access tokens carry the
    ``family_id`` of the login they were minted for; revoking the family makes
    them fail validation before their natural expiry.
    """

    def __init__(
        self,
        sessions: SessionStore,
        signer: TokenSigner,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.sessions = sessions
        self.signer = signer
        self.settings = settings
        self.clock = clock or SystemClock()
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(hours=settings.refresh_token_ttl_hours)
        self.pending_ttl = timedelta(minutes=settings.pending_auth_ttl_minutes)
        self.replay_policy = ReplayPolicy(settings.refresh_replay_policy)
        self.timeout = settings.session_store_timeout_seconds

    def _now(self) -> datetime:
        return self.clock.now()

    async def _store(self, awaitable: Awaitable[T], operation: str) -> T:
        return await call_session_store(awaitable, timeout=self.timeout, operation=operation)

    # -- minting -------------------------------------------------------------

    def _claims(
        self, user_id: str, app_id: str, token_type: str, now: datetime, expires_at: datetime
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "user_id": user_id,
            "app_id": app_id,
            "type": token_type,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    def _mint_pair(self, record: SessionRecord, now: datetime) -> TokenPair:
        access_exp = now + self.access_ttl
        access_payload = self._claims(
            record.user_id, record.app_id, TOKEN_TYPE_ACCESS, now, access_exp
        )
        access_payload["family_id"] = record.family_id
        refresh_payload = self._claims(
            record.user_id, record.app_id, TOKEN_TYPE_REFRESH, now, record.expires_at
        )
        refresh_payload["token_id"] = record.token_id
        refresh_payload["family_id"] = record.family_id
        return TokenPair(
            access_token=self.signer.sign(access_payload),
            refresh_token=self.signer.sign(refresh_payload),
            access_expires_at=access_exp,
            refresh_expires_at=record.expires_at,
        )

    async def issue_pair(self, user_id: str, app_id: str) -> TokenPair:
        """Mint an access/refresh pair for a new login.

        The session record is written before either token is handed out; if
        the write fails no token leaves this method.
        """
        now = self._now()
        record = SessionRecord.new(user_id, app_id, now, now + self.refresh_ttl)
        stored = await self._store(
            self.sessions.put_session(record, ttl_until(record.expires_at, now)),
            "put_session",
        )
        if not stored:
            logger.error("session_id_collision", app_id=app_id, user_id=user_id)
            raise TokenError("could not issue tokens")
        logger.info(
            "token_pair_issued", user_id=user_id, app_id=app_id, family_id=record.family_id
        )
        return self._mint_pair(record, now)

    # -- decoding ------------------------------------------------------------

    def _decode(self, token: str, expected_type: str, app_id: str) -> TokenClaims:
        payload = self.signer.verify(token)
        if payload is None:
            logger.info("token_rejected", reason="malformed_or_bad_signature")
            raise TokenError("invalid token", detail={"reason": "invalid"})
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.info("token_rejected", reason="issuer")
            raise TokenError("invalid token", detail={"reason": "invalid"})
        TenantScope.authorize(payload.get("app_id"), app_id)
        token_type = payload.get("type")
        if token_type != expected_type:
            logger.warning(
                "token_type_mismatch", expected=expected_type, presented=token_type
            )
            raise TokenError("wrong token type", detail={"reason": "wrong_type"})
        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError):
            logger.info("token_rejected", reason="timestamps")
            raise TokenError("invalid token", detail={"reason": "invalid"})
        if expires_at <= self._now():
            raise TokenError("token expired", detail={"reason": "expired"})
        user_id = payload.get("user_id")
        token_id = payload.get("token_id")
        family_id = payload.get("family_id")
        needs_token_id = expected_type in (TOKEN_TYPE_REFRESH, TOKEN_TYPE_PENDING)
        needs_family = expected_type in (TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH)
        if (
            not user_id
            or (needs_token_id and not token_id)
            or (needs_family and not family_id)
        ):
            logger.info("token_rejected", reason="missing_claims")
            raise TokenError("invalid token", detail={"reason": "invalid"})
        return TokenClaims(
            user_id=user_id,
            app_id=payload["app_id"],
            type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=token_id,
            family_id=family_id,
            raw=payload,
        )

    async def validate_access(self, token: str, app_id: str) -> TokenClaims:
        """Return the claims of a valid access token presented for ``app_id``.

        A refresh or pending token raises ``TokenError`` with
        ``detail["reason"] == "wrong_type"``.
        """
        claims = self._decode(token, TOKEN_TYPE_ACCESS, app_id)
        revoked = await self._store(
            self.sessions.is_family_revoked(claims.app_id, claims.family_id),
            "is_family_revoked",
        )
        if revoked:
            raise TokenError("token revoked", detail={"reason": "revoked"})
        return claims

    # -- rotation ------------------------------------------------------------

    async def rotate(self, refresh_token: str, app_id: str) -> TokenPair:
        """Exchange a refresh token for a new pair, invalidating the old one.

        Presenting a token that was already rotated, including losing a race
        against a concurrent rotation of the same token, is treated as replay
        and handled according to ``refresh_replay_policy``.
        """
        claims = self._decode(refresh_token, TOKEN_TYPE_REFRESH, app_id)
        now = self._now()

        if await self._store(
            self.sessions.is_family_revoked(claims.app_id, claims.family_id),
            "is_family_revoked",
        ):
            logger.warning(
                "refresh_family_revoked", app_id=claims.app_id, family_id=claims.family_id
            )
            raise TokenError("token no longer valid", detail={"reason": "revoked"})

        await self._refuse_if_revoked(claims, now)

        current = await self._store(
            self.sessions.get_session(claims.app_id, claims.token_id), "get_session"
        )
        if (
            current is None
            or current.user_id != claims.user_id
            or current.family_id != claims.family_id
        ):
            # A concurrent rotation may have finished after the first check
            await self._refuse_if_revoked(claims, now)
            raise TokenError("token no longer valid", detail={"reason": "revoked"})

        new_record = SessionRecord.new(
            current.user_id,
            current.app_id,
            now,
            now + self.refresh_ttl,
            family_id=current.family_id,
            generation=current.generation + 1,
        )
        rotated = await self._store(
            self.sessions.rotate_session(
                claims.app_id,
                claims.token_id,
                new_record,
                ttl_until(new_record.expires_at, now),
                ttl_until(claims.expires_at, now),
            ),
            "rotate_session",
        )
        if not rotated:
            await self._handle_replay(claims, now)
            raise TokenError("token no longer valid", detail={"reason": "revoked"})
        logger.info(
            "refresh_token_rotated",
            user_id=new_record.user_id,
            app_id=new_record.app_id,
            family_id=new_record.family_id,
            generation=new_record.generation,
        )
        return self._mint_pair(new_record, now)

    async def _refuse_if_revoked(self, claims: TokenClaims, now: datetime) -> None:
        reason = await self._store(
            self.sessions.get_revocation(claims.app_id, claims.token_id), "get_revocation"
        )
        if reason == REVOKED_ROTATED:
            await self._handle_replay(claims, now)
        if reason is not None:
            raise TokenError("token no longer valid", detail={"reason": "revoked"})

    async def _handle_replay(self, claims: TokenClaims, now: datetime) -> None:
        logger.warning(
            "refresh_replay_detected",
            user_id=claims.user_id,
            app_id=claims.app_id,
            family_id=claims.family_id,
            policy=self.replay_policy.value,
        )
        if self.replay_policy is ReplayPolicy.REVOKE_FAMILY:
            await self._store(
                self.sessions.revoke_family(
                    claims.app_id,
                    claims.family_id,
                    int(self.refresh_ttl.total_seconds()),
                ),
                "revoke_family",
            )
        raise TokenError("token no longer valid", detail={"reason": "replayed"})

    # -- revocation ----------------------------------------------------------

    async def revoke(self, refresh_token: str, app_id: str) -> None:
        """Log out the login the refresh token belongs to.

        The record is deleted, the token id is denylisted for its remaining
        lifetime and the family is revoked so its access tokens stop working.
        """
        claims = self._decode(refresh_token, TOKEN_TYPE_REFRESH, app_id)
        now = self._now()
        ttl = ttl_until(claims.expires_at, now)
        await self._store(
            self.sessions.delete_session(claims.app_id, claims.token_id), "delete_session"
        )
        await self._store(
            self.sessions.revoke_token(claims.app_id, claims.token_id, ttl, REVOKED_LOGOUT),
            "revoke_token",
        )
        await self._store(
            self.sessions.revoke_family(claims.app_id, claims.family_id, ttl),
            "revoke_family",
        )
        logger.info(
            "refresh_token_revoked",
            user_id=claims.user_id,
            app_id=claims.app_id,
            family_id=claims.family_id,
        )

    async def revoke_all_for_user(self, app_id: str, user_id: str) -> int:
        revoked = await self._store(
            self.sessions.revoke_user_sessions(
                app_id, user_id, int(self.refresh_ttl.total_seconds())
            ),
            "revoke_user_sessions",
        )
        logger.info("user_sessions_revoked", app_id=app_id, user_id=user_id, count=revoked)
        return revoked

    # -- pending second-factor authentication ---------------------------------

    async def issue_pending(self, user_id: str, app_id: str) -> PendingAuth:
        """Mint a short-lived, single-use token for a login awaiting its second factor."""
        now = self._now()
        expires_at = now + self.pending_ttl
        token_id = str(uuid.uuid4())
        stored = await self._store(
            self.sessions.put_pending_auth(
                app_id, token_id, user_id, ttl_until(expires_at, now)
            ),
            "put_pending_auth",
        )
        if not stored:
            logger.error("pending_auth_collision", app_id=app_id, user_id=user_id)
            raise TokenError("could not issue tokens")
        payload = self._claims(user_id, app_id, TOKEN_TYPE_PENDING, now, expires_at)
        payload["token_id"] = token_id
        return PendingAuth(token=self.signer.sign(payload), expires_at=expires_at)

    async def validate_pending(self, token: str, app_id: str) -> TokenClaims:
        claims = self._decode(token, TOKEN_TYPE_PENDING, app_id)
        owner = await self._store(
            self.sessions.get_pending_auth(claims.app_id, claims.token_id),
            "get_pending_auth",
        )
        if owner != claims.user_id:
            raise TokenError("token no longer valid", detail={"reason": "revoked"})
        return claims

    async def consume_pending(self, claims: TokenClaims) -> bool:
        """Atomically use up a pending token. Only one caller gets ``True``."""
        owner = await self._store(
            self.sessions.pop_pending_auth(claims.app_id, claims.token_id),
            "pop_pending_auth",
        )
        return owner == claims.user_id
