from __future__ import annotations

import json
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from tessera.logging import get_logger
from tessera.storage.models import SessionRecord
from tessera.storage.sessions import REVOKED_ADMIN, REVOKED_ROTATED

logger = get_logger(__name__)


class RedisSessionStore:
    """Redis-backed session store.

    Keys embed the application id as a hash tag (``tessera:{<app_id>}:...``)
    so every key of one tenant lands in the same cluster slot and the
    multi-key scripts below stay valid.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Insert a session only if its id is unused, and index it by user and family
    _PUT_SESSION_SCRIPT = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX', 'EX', ARGV[2]) then
  return 0
end
redis.call('SADD', KEYS[2], ARGV[3])
redis.call('EXPIRE', KEYS[2], ARGV[2])
redis.call('SET', KEYS[3], ARGV[3], 'EX', ARGV[2])
return 1
"""

    # Check-and-replace: the new record is written before the old one is
    # deleted and marked rotated; any failed precondition changes nothing.
    _ROTATE_SCRIPT = """
if redis.call('EXISTS', KEYS[3]) == 1 then
  return 0
end
if redis.call('EXISTS', KEYS[4]) == 1 then
  return 0
end
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('SET', KEYS[2], ARGV[1], 'EX', ARGV[2])
redis.call('SADD', KEYS[5], ARGV[5])
redis.call('EXPIRE', KEYS[5], ARGV[2])
redis.call('SET', KEYS[6], ARGV[5], 'EX', ARGV[2])
redis.call('DEL', KEYS[1])
redis.call('SREM', KEYS[5], ARGV[4])
redis.call('SET', KEYS[3], ARGV[6], 'EX', ARGV[3])
return 1
"""

    _FAILED_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end
return {0, attempts}
"""

    # Delete a value only when it matches, so a wrong guess leaves the code in place
    _COMPARE_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    # Only KEYS[1] is declared. The session, family and revocation keys are
    # built from ARGV[1], the tenant prefix, which carries the same {app_id}
    # hash tag as KEYS[1]. Redis tolerates undeclared keys only while they
    # hash to the slot of the declared one, so every key this script touches
    # must stay under the tenant prefix.
    _REVOKE_USER_SCRIPT = """
local revoked = 0
for _, token_id in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  local session_key = ARGV[1] .. ':session:' .. token_id
  local raw = redis.call('GET', session_key)
  if raw then
    local family_id = cjson.decode(raw)['family_id']
    redis.call('DEL', session_key)
    redis.call('DEL', ARGV[1] .. ':family:' .. family_id)
    redis.call('SET', ARGV[1] .. ':family_revoked:' .. family_id, '1', 'EX', ARGV[2])
    redis.call('SET', ARGV[1] .. ':revoked:' .. token_id, ARGV[3], 'EX', ARGV[2])
    revoked = revoked + 1
  end
end
redis.call('DEL', KEYS[1])
return revoked
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "tessera",
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._put_session = self.client.register_script(self._PUT_SESSION_SCRIPT)
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._failed_attempt = self.client.register_script(self._FAILED_ATTEMPT_SCRIPT)
        self._revoke_user = self.client.register_script(self._REVOKE_USER_SCRIPT)
        self._compare_delete = self.client.register_script(self._COMPARE_DELETE_SCRIPT)

    def _tenant_prefix(self, app_id: str) -> str:
        return f"{self.prefix}:{{{app_id}}}"

    def _key(self, app_id: str, kind: str, ident: str) -> str:
        return f"{self._tenant_prefix(app_id)}:{kind}:{ident}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def open(self) -> None:
        await self.client.ping()
        logger.info("session_store_opened", backend="redis")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # -- refresh-token records ---------------------------------------------

    async def put_session(self, record: SessionRecord, ttl_seconds: int) -> bool:
        result = await self._put_session(
            keys=[
                self._key(record.app_id, "session", record.token_id),
                self._key(record.app_id, "user_sessions", record.user_id),
                self._key(record.app_id, "family", record.family_id),
            ],
            args=[json.dumps(record.to_dict()), max(1, int(ttl_seconds)), record.token_id],
        )
        return bool(int(result))

    async def get_session(self, app_id: str, token_id: str) -> Optional[SessionRecord]:
        raw = await self.client.get(self._key(app_id, "session", token_id))
        return self._load_record(raw)

    @staticmethod
    def _load_record(raw: Optional[str]) -> Optional[SessionRecord]:
        if not raw:
            return None
        try:
            return SessionRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt")
            return None

    async def rotate_session(
        self,
        app_id: str,
        old_token_id: str,
        new_record: SessionRecord,
        ttl_seconds: int,
        revoke_ttl_seconds: int,
    ) -> bool:
        result = await self._rotate(
            keys=[
                self._key(app_id, "session", old_token_id),
                self._key(app_id, "session", new_record.token_id),
                self._key(app_id, "revoked", old_token_id),
                self._key(app_id, "family_revoked", new_record.family_id),
                self._key(app_id, "user_sessions", new_record.user_id),
                self._key(app_id, "family", new_record.family_id),
            ],
            args=[
                json.dumps(new_record.to_dict()),
                max(1, int(ttl_seconds)),
                max(1, int(revoke_ttl_seconds)),
                old_token_id,
                new_record.token_id,
                REVOKED_ROTATED,
            ],
        )
        return bool(int(result))

    async def delete_session(self, app_id: str, token_id: str) -> Optional[SessionRecord]:
        raw = await self.client.getdel(self._key(app_id, "session", token_id))
        record = self._load_record(raw)
        if record is not None:
            await self.client.srem(
                self._key(app_id, "user_sessions", record.user_id), token_id
            )
        return record

    # -- revocation ---------------------------------------------------------

    async def revoke_token(
        self, app_id: str, token_id: str, ttl_seconds: int, reason: str
    ) -> None:
        await self.client.set(
            self._key(app_id, "revoked", token_id), reason, ex=max(1, int(ttl_seconds))
        )

    async def get_revocation(self, app_id: str, token_id: str) -> Optional[str]:
        return await self.client.get(self._key(app_id, "revoked", token_id))

    async def revoke_family(self, app_id: str, family_id: str, ttl_seconds: int) -> int:
        # Mark first so a rotation racing with this call cannot extend the family
        await self.client.set(
            self._key(app_id, "family_revoked", family_id), "1", ex=max(1, int(ttl_seconds))
        )
        current = await self.client.getdel(self._key(app_id, "family", family_id))
        if not current:
            return 0
        record = await self.delete_session(app_id, current)
        return 1 if record is not None else 0

    async def is_family_revoked(self, app_id: str, family_id: str) -> bool:
        return bool(await self.client.exists(self._key(app_id, "family_revoked", family_id)))

    async def revoke_user_sessions(self, app_id: str, user_id: str, ttl_seconds: int) -> int:
        """Delete every live session of the user and revoke each one's family."""
        result = await self._revoke_user(
            keys=[self._key(app_id, "user_sessions", user_id)],
            args=[
                self._tenant_prefix(app_id),
                max(1, int(ttl_seconds)),
                REVOKED_ADMIN,
            ],
        )
        return int(result)

    # -- second factor ------------------------------------------------------

    async def set_pending_secret(
        self, app_id: str, user_id: str, secret: str, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._key(app_id, "pending_2fa_secret", user_id),
            secret,
            ex=max(1, int(ttl_seconds)),
        )

    async def pop_pending_secret(self, app_id: str, user_id: str) -> Optional[str]:
        return await self.client.getdel(self._key(app_id, "pending_2fa_secret", user_id))

    async def set_email_code(
        self, app_id: str, user_id: str, code_hash: str, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._key(app_id, "email_2fa_code", user_id),
            code_hash,
            ex=max(1, int(ttl_seconds)),
        )

    async def consume_email_code(self, app_id: str, user_id: str, code_hash: str) -> bool:
        result = await self._compare_delete(
            keys=[self._key(app_id, "email_2fa_code", user_id)], args=[code_hash]
        )
        return bool(int(result))

    async def put_pending_auth(
        self, app_id: str, token_id: str, user_id: str, ttl_seconds: int
    ) -> bool:
        acquired = await self.client.set(
            self._key(app_id, "pending_auth", token_id),
            user_id,
            ex=max(1, int(ttl_seconds)),
            nx=True,
        )
        return bool(acquired)

    async def get_pending_auth(self, app_id: str, token_id: str) -> Optional[str]:
        return await self.client.get(self._key(app_id, "pending_auth", token_id))

    async def pop_pending_auth(self, app_id: str, token_id: str) -> Optional[str]:
        return await self.client.getdel(self._key(app_id, "pending_auth", token_id))

    async def claim_once(self, app_id: str, key: str, ttl_seconds: int) -> bool:
        acquired = await self.client.set(
            self._key(app_id, "claim", key), "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(acquired)

    async def is_locked_out(self, app_id: str, user_id: str) -> bool:
        return bool(await self.client.exists(self._key(app_id, "mfa_lockout", user_id)))

    async def record_failed_attempt(
        self, app_id: str, user_id: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        """Atomically count a failed attempt and trigger the lockout at the limit."""
        result = await self._failed_attempt(
            keys=[
                self._key(app_id, "mfa_lockout", user_id),
                self._key(app_id, "mfa_attempts", user_id),
            ],
            args=[max_attempts, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def clear_failed_attempts(self, app_id: str, user_id: str) -> None:
        await self.client.delete(self._key(app_id, "mfa_attempts", user_id))
