"""Session store interface and an in-memory implementation.

The session store holds short-lived identity state: live refresh-token
records, revocation entries, pending second-factor material and attempt
counters. Every key is partitioned by application id. Implementations must
make ``put_session`` a set-if-absent, ``delete_session``/``pop_*`` an atomic
delete-and-check, and ``rotate_session`` a single atomic check-and-replace.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Set, Tuple

from tessera.logging import get_logger
from tessera.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)

# Revocation reasons
REVOKED_LOGOUT = "logout"
REVOKED_ROTATED = "rotated"
REVOKED_REPLAY = "replay"
REVOKED_ADMIN = "admin"


class SessionStore(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def put_session(self, record: SessionRecord, ttl_seconds: int) -> bool: ...

    async def get_session(self, app_id: str, token_id: str) -> Optional[SessionRecord]: ...

    async def rotate_session(
        self,
        app_id: str,
        old_token_id: str,
        new_record: SessionRecord,
        ttl_seconds: int,
        revoke_ttl_seconds: int,
    ) -> bool: ...

    async def delete_session(self, app_id: str, token_id: str) -> Optional[SessionRecord]: ...

    async def revoke_token(
        self, app_id: str, token_id: str, ttl_seconds: int, reason: str
    ) -> None: ...

    async def get_revocation(self, app_id: str, token_id: str) -> Optional[str]: ...

    async def revoke_family(self, app_id: str, family_id: str, ttl_seconds: int) -> int: ...

    async def is_family_revoked(self, app_id: str, family_id: str) -> bool: ...

    async def revoke_user_sessions(self, app_id: str, user_id: str, ttl_seconds: int) -> int: ...

    async def set_pending_secret(
        self, app_id: str, user_id: str, secret: str, ttl_seconds: int
    ) -> None: ...

    async def pop_pending_secret(self, app_id: str, user_id: str) -> Optional[str]: ...

    async def set_email_code(
        self, app_id: str, user_id: str, code_hash: str, ttl_seconds: int
    ) -> None: ...

    async def consume_email_code(self, app_id: str, user_id: str, code_hash: str) -> bool: ...

    async def put_pending_auth(
        self, app_id: str, token_id: str, user_id: str, ttl_seconds: int
    ) -> bool: ...

    async def get_pending_auth(self, app_id: str, token_id: str) -> Optional[str]: ...

    async def pop_pending_auth(self, app_id: str, token_id: str) -> Optional[str]: ...

    async def claim_once(self, app_id: str, key: str, ttl_seconds: int) -> bool: ...

    async def is_locked_out(self, app_id: str, user_id: str) -> bool: ...

    async def record_failed_attempt(
        self, app_id: str, user_id: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]: ...

    async def clear_failed_attempts(self, app_id: str, user_id: str) -> None: ...


class MemorySessionStore:
    """Lock-guarded in-process session store.

    Entries expire according to the injected clock, so tests can move time
    forward without sleeping. Each public operation runs entirely under one
    lock, which gives the same atomicity the Redis scripts provide.
    """

    def __init__(self, clock: Optional[Any] = None) -> None:
        self._now: Callable[[], datetime] = clock.now if clock is not None else utcnow
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[Any, Optional[datetime]]] = {}
        self._opened = False

    async def open(self) -> None:
        self._opened = True
        logger.info("session_store_opened", backend="memory")

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
        self._opened = False

    # -- primitives (caller holds the lock) ---------------------------------

    @staticmethod
    def _key(app_id: str, kind: str, ident: str) -> str:
        return f"{app_id}:{kind}:{ident}"

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._now() + timedelta(seconds=max(1, int(ttl_seconds)))
        self._values[key] = (value, expires_at)

    def _pop(self, key: str) -> Any:
        value = self._get(key)
        self._values.pop(key, None)
        return value

    def _index_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        index_key = self._key(record.app_id, "user_sessions", record.user_id)
        members: Set[str] = set(self._get(index_key) or set())
        members.add(record.token_id)
        self._set(index_key, members, ttl_seconds)
        self._set(self._key(record.app_id, "family", record.family_id), record.token_id, ttl_seconds)

    def _unindex_session(self, record: SessionRecord) -> None:
        index_key = self._key(record.app_id, "user_sessions", record.user_id)
        entry = self._values.get(index_key)
        if entry is not None:
            entry[0].discard(record.token_id)

    # -- refresh-token records ---------------------------------------------

    async def put_session(self, record: SessionRecord, ttl_seconds: int) -> bool:
        with self._lock:
            key = self._key(record.app_id, "session", record.token_id)
            if self._get(key) is not None:
                return False
            self._set(key, record, ttl_seconds)
            self._index_session(record, ttl_seconds)
            return True

    async def get_session(self, app_id: str, token_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._get(self._key(app_id, "session", token_id))

    async def rotate_session(
        self,
        app_id: str,
        old_token_id: str,
        new_record: SessionRecord,
        ttl_seconds: int,
        revoke_ttl_seconds: int,
    ) -> bool:
        with self._lock:
            old_key = self._key(app_id, "session", old_token_id)
            if self._get(self._key(app_id, "revoked", old_token_id)) is not None:
                return False
            if self._get(self._key(app_id, "family_revoked", new_record.family_id)) is not None:
                return False
            old = self._get(old_key)
            if old is None:
                return False
            self._set(self._key(app_id, "session", new_record.token_id), new_record, ttl_seconds)
            self._index_session(new_record, ttl_seconds)
            self._values.pop(old_key, None)
            self._unindex_session(old)
            self._set(
                self._key(app_id, "revoked", old_token_id),
                REVOKED_ROTATED,
                revoke_ttl_seconds,
            )
            return True

    async def delete_session(self, app_id: str, token_id: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._pop(self._key(app_id, "session", token_id))
            if record is not None:
                self._unindex_session(record)
            return record

    # -- revocation ---------------------------------------------------------

    async def revoke_token(
        self, app_id: str, token_id: str, ttl_seconds: int, reason: str
    ) -> None:
        with self._lock:
            self._set(self._key(app_id, "revoked", token_id), reason, ttl_seconds)

    async def get_revocation(self, app_id: str, token_id: str) -> Optional[str]:
        with self._lock:
            return self._get(self._key(app_id, "revoked", token_id))

    async def revoke_family(self, app_id: str, family_id: str, ttl_seconds: int) -> int:
        with self._lock:
            self._set(self._key(app_id, "family_revoked", family_id), "1", ttl_seconds)
            current = self._pop(self._key(app_id, "family", family_id))
            if current is None:
                return 0
            record = self._pop(self._key(app_id, "session", current))
            if record is None:
                return 0
            self._unindex_session(record)
            return 1

    async def is_family_revoked(self, app_id: str, family_id: str) -> bool:
        with self._lock:
            return self._get(self._key(app_id, "family_revoked", family_id)) is not None

    async def revoke_user_sessions(self, app_id: str, user_id: str, ttl_seconds: int) -> int:
        """Delete every live session of the user and revoke each one's family."""
        with self._lock:
            members = self._pop(self._key(app_id, "user_sessions", user_id)) or set()
            revoked = 0
            for token_id in members:
                record = self._pop(self._key(app_id, "session", token_id))
                if record is None:
                    continue
                self._values.pop(self._key(app_id, "family", record.family_id), None)
                self._set(self._key(app_id, "family_revoked", record.family_id), "1", ttl_seconds)
                self._set(self._key(app_id, "revoked", token_id), REVOKED_ADMIN, ttl_seconds)
                revoked += 1
            return revoked

    # -- second factor ------------------------------------------------------

    async def set_pending_secret(
        self, app_id: str, user_id: str, secret: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(self._key(app_id, "pending_2fa_secret", user_id), secret, ttl_seconds)

    async def pop_pending_secret(self, app_id: str, user_id: str) -> Optional[str]:
        with self._lock:
            return self._pop(self._key(app_id, "pending_2fa_secret", user_id))

    async def set_email_code(
        self, app_id: str, user_id: str, code_hash: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(self._key(app_id, "email_2fa_code", user_id), code_hash, ttl_seconds)

    async def consume_email_code(self, app_id: str, user_id: str, code_hash: str) -> bool:
        with self._lock:
            key = self._key(app_id, "email_2fa_code", user_id)
            if self._get(key) != code_hash:
                return False
            self._values.pop(key, None)
            return True

    async def put_pending_auth(
        self, app_id: str, token_id: str, user_id: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            key = self._key(app_id, "pending_auth", token_id)
            if self._get(key) is not None:
                return False
            self._set(key, user_id, ttl_seconds)
            return True

    async def get_pending_auth(self, app_id: str, token_id: str) -> Optional[str]:
        with self._lock:
            return self._get(self._key(app_id, "pending_auth", token_id))

    async def pop_pending_auth(self, app_id: str, token_id: str) -> Optional[str]:
        with self._lock:
            return self._pop(self._key(app_id, "pending_auth", token_id))

    async def claim_once(self, app_id: str, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            full_key = self._key(app_id, "claim", key)
            if self._get(full_key) is not None:
                return False
            self._set(full_key, "1", ttl_seconds)
            return True

    async def is_locked_out(self, app_id: str, user_id: str) -> bool:
        with self._lock:
            return self._get(self._key(app_id, "mfa_lockout", user_id)) is not None

    async def record_failed_attempt(
        self, app_id: str, user_id: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        with self._lock:
            lockout_key = self._key(app_id, "mfa_lockout", user_id)
            attempts_key = self._key(app_id, "mfa_attempts", user_id)
            if self._get(lockout_key) is not None:
                return True, -1
            attempts = int(self._get(attempts_key) or 0) + 1
            self._set(attempts_key, attempts, lockout_seconds)
            if attempts >= max_attempts:
                self._set(lockout_key, "1", lockout_seconds)
                self._values.pop(attempts_key, None)
                return True, attempts
            return False, attempts

    async def clear_failed_attempts(self, app_id: str, user_id: str) -> None:
        with self._lock:
            self._values.pop(self._key(app_id, "mfa_attempts", user_id), None)


def ttl_until(expires_at: datetime, now: datetime) -> int:
    """Seconds from ``now`` until ``expires_at``, clamped to at least 1."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - now).total_seconds()))
