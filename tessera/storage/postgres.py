from __future__ import annotations

import contextlib
import json
import uuid
from dataclasses import replace
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from psycopg import errors, OperationalError
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from tessera.logging import get_logger
from tessera.storage.common import clean_profile, normalize_email
from tessera.storage.errors import ConstraintViolation, StoreUnavailable
from tessera.storage.models import (
    PROFILE_FIELDS,
    Application,
    OAuthProviderConfig,
    SocialAccount,
    TwoFactorState,
    TwoFactorMethod,
    User,
)
from tessera.storage.secrets import FieldCipher

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS application (
        id UUID PRIMARY KEY,
        tenant_id UUID,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        two_factor_issuer TEXT,
        two_factor_methods TEXT NOT NULL DEFAULT 'totp',
        email_two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_provider_config (
        app_id UUID NOT NULL REFERENCES application(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        client_id TEXT NOT NULL,
        client_secret TEXT NOT NULL,
        redirect_url TEXT,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        PRIMARY KEY (app_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        app_id UUID NOT NULL REFERENCES application(id),
        email TEXT NOT NULL,
        password_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        name TEXT,
        first_name TEXT,
        last_name TEXT,
        avatar_url TEXT,
        locale TEXT,
        two_factor_state TEXT NOT NULL DEFAULT 'disabled',
        two_factor_secret TEXT,
        two_factor_method TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (app_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recovery_code (
        app_id UUID NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (app_id, user_id, code_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS social_account (
        id UUID PRIMARY KEY,
        app_id UUID NOT NULL REFERENCES application(id),
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        email TEXT,
        name TEXT,
        first_name TEXT,
        last_name TEXT,
        avatar_url TEXT,
        locale TEXT,
        username TEXT,
        raw_data JSONB,
        access_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_user_id, app_id)
    )
    """,
]

_USER_COLUMNS = (
    "id, app_id, email, password_hash, email_verified, is_active, name, first_name, "
    "last_name, avatar_url, locale, two_factor_state, two_factor_secret, two_factor_method, created_at, updated_at"
)

_ACCOUNT_COLUMNS = (
    "id, app_id, user_id, provider, provider_user_id, email, name, first_name, last_name, "
    "avatar_url, locale, username, raw_data, access_token, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(
        self,
        dsn: str,
        *,
        encryption_key: str,
        timeout_seconds: float = 5.0,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = FieldCipher(encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        if ensure_schema:
            self.ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("identity store unavailable") from exc

    def ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            app_id=str(row["app_id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            email_verified=bool(row.get("email_verified", False)),
            is_active=bool(row.get("is_active", True)),
            name=row.get("name"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar_url=row.get("avatar_url"),
            locale=row.get("locale"),
            two_factor_state=TwoFactorState(row.get("two_factor_state") or "disabled"),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            two_factor_method=(
                TwoFactorMethod(row["two_factor_method"]) if row.get("two_factor_method") else None
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_account(self, row: Dict[str, Any]) -> SocialAccount:
        raw = row.get("raw_data") or {}
        if isinstance(raw, str):
            raw = json.loads(raw)
        return SocialAccount(
            id=str(row["id"]),
            app_id=str(row["app_id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            email=row.get("email"),
            name=row.get("name"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            avatar_url=row.get("avatar_url"),
            locale=row.get("locale"),
            username=row.get("username"),
            raw_data=raw,
            access_token=self._cipher.decrypt(row.get("access_token")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_application(row: Dict[str, Any]) -> Application:
        return Application(
            id=str(row["id"]),
            name=row["name"],
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            description=row.get("description") or "",
            is_active=bool(row.get("is_active", True)),
            two_factor_enabled=bool(row.get("two_factor_enabled", True)),
            two_factor_issuer=row.get("two_factor_issuer"),
            two_factor_methods=[
                method.strip()
                for method in (row.get("two_factor_methods") or "totp").split(",")
                if method.strip()
            ],
            email_two_factor_enabled=bool(row.get("email_two_factor_enabled", False)),
            created_at=row["created_at"],
        )

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
    ) -> Application:
        methods = ",".join(two_factor_methods or [TwoFactorMethod.TOTP.value])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO application (id, tenant_id, name, description, two_factor_enabled, two_factor_issuer, two_factor_methods, email_two_factor_enabled)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        app_id or str(uuid.uuid4()),
                        tenant_id,
                        name,
                        description,
                        two_factor_enabled,
                        two_factor_issuer,
                        methods,
                        email_two_factor_enabled,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("application already exists", {"field": "id"})
        return self._row_to_application(row)

    def get_application(self, app_id: str) -> Optional[Application]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM application WHERE id = %s", (app_id,)
            ).fetchone()
        return self._row_to_application(row) if row else None

    def set_application_active(self, app_id: str, is_active: bool) -> Optional[Application]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE application SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, app_id),
            ).fetchone()
        return self._row_to_application(row) if row else None

    def set_oauth_provider_config(self, config: OAuthProviderConfig) -> OAuthProviderConfig:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_provider_config (app_id, provider, client_id, client_secret, redirect_url, is_enabled)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (app_id, provider) DO UPDATE
                    SET client_id = EXCLUDED.client_id,
                        client_secret = EXCLUDED.client_secret,
                        redirect_url = EXCLUDED.redirect_url,
                        is_enabled = EXCLUDED.is_enabled
                    """,
                    (
                        config.app_id,
                        config.provider,
                        config.client_id,
                        self._cipher.encrypt(config.client_secret),
                        config.redirect_url,
                        config.is_enabled,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("application not found", {"app_id": config.app_id})
        return config

    def get_oauth_provider_config(
        self, app_id: str, provider: str
    ) -> Optional[OAuthProviderConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_provider_config WHERE app_id = %s AND provider = %s",
                (app_id, provider),
            ).fetchone()
        if not row:
            return None
        return OAuthProviderConfig(
            app_id=str(row["app_id"]),
            provider=row["provider"],
            client_id=row["client_id"],
            client_secret=self._cipher.decrypt(row["client_secret"]) or "",
            redirect_url=row.get("redirect_url"),
            is_enabled=bool(row.get("is_enabled", True)),
        )

    # users

    def _insert_user(
        self,
        conn: Any,
        app_id: str,
        email: str,
        password_hash: Optional[str],
        email_verified: bool,
        profile: Optional[Dict[str, Optional[str]]],
    ) -> User:
        fields = clean_profile(profile)
        row = conn.execute(
            f"""
            INSERT INTO app_user (id, app_id, email, password_hash, email_verified, name, first_name, last_name, avatar_url, locale)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_USER_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                app_id,
                normalize_email(email),
                password_hash,
                email_verified,
                *(fields.get(name) for name in PROFILE_FIELDS),
            ),
        ).fetchone()
        return self._row_to_user(row)

    def create_user(
        self,
        app_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        email_verified: bool = False,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                return self._insert_user(
                    conn, app_id, email, password_hash, email_verified, profile
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("application not found", {"app_id": app_id})

    def get_user(self, app_id: str, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE app_id = %s AND id = %s",
                (app_id, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, app_id: str, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE app_id = %s AND email = %s",
                (app_id, normalize_email(email)),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_profile(
        self,
        app_id: str,
        user_id: str,
        fields: Dict[str, Optional[str]],
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[User]:
        updates = clean_profile(fields)
        assignments = [f"{name} = %s" for name in updates]
        params: List[Any] = list(updates.values())
        if email_verified is not None:
            assignments.append("email_verified = %s")
            params.append(email_verified)
        if not assignments:
            return self.get_user(app_id, user_id)
        assignments.append("updated_at = now()")
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE app_id = %s AND id = %s RETURNING {_USER_COLUMNS}",
                (*params, app_id, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(self, app_id: str, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE app_id = %s AND id = %s",
                (password_hash, app_id, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def set_user_active(self, app_id: str, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET is_active = %s, updated_at = now() WHERE app_id = %s AND id = %s RETURNING {_USER_COLUMNS}",
                (is_active, app_id, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # second factor

    def set_two_factor_secret(self, app_id: str, user_id: str, secret: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user SET two_factor_secret = %s, two_factor_state = %s, updated_at = now()
                WHERE app_id = %s AND id = %s
                """,
                (
                    self._cipher.encrypt(secret),
                    TwoFactorState.PENDING_SETUP.value,
                    app_id,
                    user_id,
                ),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            conn.execute(
                "DELETE FROM recovery_code WHERE app_id = %s AND user_id = %s",
                (app_id, user_id),
            )

    def enable_two_factor(
        self,
        app_id: str,
        user_id: str,
        code_hashes: Sequence[str],
        *,
        method: TwoFactorMethod = TwoFactorMethod.TOTP,
    ) -> bool:
        with self._connect() as conn:
            if method == TwoFactorMethod.TOTP:
                row = conn.execute(
                    """
                    UPDATE app_user SET two_factor_state = %s, two_factor_method = %s, updated_at = now()
                    WHERE app_id = %s AND id = %s AND two_factor_state = %s
                    RETURNING id
                    """,
                    (
                        TwoFactorState.ENABLED.value,
                        method.value,
                        app_id,
                        user_id,
                        TwoFactorState.PENDING_SETUP.value,
                    ),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET two_factor_state = %s, two_factor_method = %s, two_factor_secret = NULL, updated_at = now()
                    WHERE app_id = %s AND id = %s AND two_factor_state <> %s
                    RETURNING id
                    """,
                    (
                        TwoFactorState.ENABLED.value,
                        method.value,
                        app_id,
                        user_id,
                        TwoFactorState.ENABLED.value,
                    ),
                ).fetchone()
            if not row:
                return False
            self._write_recovery_codes(conn, app_id, user_id, code_hashes)
        return True

    def disable_two_factor(self, app_id: str, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET two_factor_state = %s, two_factor_secret = NULL, two_factor_method = NULL, updated_at = now()
                WHERE app_id = %s AND id = %s
                """,
                (TwoFactorState.DISABLED.value, app_id, user_id),
            )
            conn.execute(
                "DELETE FROM recovery_code WHERE app_id = %s AND user_id = %s",
                (app_id, user_id),
            )

    @staticmethod
    def _write_recovery_codes(
        conn: Any, app_id: str, user_id: str, code_hashes: Sequence[str]
    ) -> None:
        conn.execute(
            "DELETE FROM recovery_code WHERE app_id = %s AND user_id = %s",
            (app_id, user_id),
        )
        with conn.cursor() as cur:
            cur.executemany(
                "INSERT INTO recovery_code (app_id, user_id, code_hash) VALUES (%s, %s, %s)",
                [(app_id, user_id, code_hash) for code_hash in code_hashes],
            )

    def replace_recovery_codes(
        self, app_id: str, user_id: str, code_hashes: Sequence[str]
    ) -> None:
        try:
            with self._connect() as conn:
                self._write_recovery_codes(conn, app_id, user_id, code_hashes)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})

    def consume_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> bool:
        # Single statement: concurrent submissions of one code see one deleted row
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM recovery_code
                WHERE app_id = %s AND user_id = %s AND code_hash = %s
                RETURNING code_hash
                """,
                (app_id, user_id, code_hash),
            ).fetchone()
        return row is not None

    def restore_recovery_code(self, app_id: str, user_id: str, code_hash: str) -> bool:
        """Put back a consumed code, provided two-factor login is still enabled."""
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO recovery_code (app_id, user_id, code_hash)
                SELECT %s, %s, %s
                WHERE EXISTS (
                    SELECT 1 FROM app_user
                    WHERE app_id = %s AND id = %s AND two_factor_state = %s
                )
                ON CONFLICT DO NOTHING
                """,
                (app_id, user_id, code_hash, app_id, user_id, TwoFactorState.ENABLED.value),
            )
        return result.rowcount == 1

    def count_recovery_codes(self, app_id: str, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS remaining FROM recovery_code WHERE app_id = %s AND user_id = %s",
                (app_id, user_id),
            ).fetchone()
        return int(row["remaining"]) if row else 0

    # social accounts

    def _insert_account(self, conn: Any, account: SocialAccount) -> SocialAccount:
        row = conn.execute(
            f"""
            INSERT INTO social_account (id, app_id, user_id, provider, provider_user_id, email, name,
                first_name, last_name, avatar_url, locale, username, raw_data, access_token)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (
                account.id or str(uuid.uuid4()),
                account.app_id,
                account.user_id,
                account.provider,
                account.provider_user_id,
                account.email,
                account.name,
                account.first_name,
                account.last_name,
                account.avatar_url,
                account.locale,
                account.username,
                Jsonb(account.raw_data or {}),
                self._cipher.encrypt(account.access_token),
            ),
        ).fetchone()
        return self._row_to_account(row)

    def get_social_account(
        self, app_id: str, provider: str, provider_user_id: str
    ) -> Optional[SocialAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS} FROM social_account
                WHERE provider = %s AND provider_user_id = %s AND app_id = %s
                """,
                (provider, provider_user_id, app_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def create_social_account(self, account: SocialAccount) -> SocialAccount:
        try:
            with self._connect() as conn:
                return self._insert_account(conn, account)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "social account already linked", {"field": "provider_user_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for social account", {"user_id": account.user_id}
            )

    def update_social_account(self, account: SocialAccount) -> SocialAccount:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE social_account
                SET email = %s, name = %s, first_name = %s, last_name = %s, avatar_url = %s,
                    locale = %s, username = %s, raw_data = %s, access_token = %s, updated_at = now()
                WHERE provider = %s AND provider_user_id = %s AND app_id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (
                    account.email,
                    account.name,
                    account.first_name,
                    account.last_name,
                    account.avatar_url,
                    account.locale,
                    account.username,
                    Jsonb(account.raw_data or {}),
                    self._cipher.encrypt(account.access_token),
                    account.provider,
                    account.provider_user_id,
                    account.app_id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("social account not found", {"id": account.id})
        return self._row_to_account(row)

    def list_social_accounts(self, app_id: str, user_id: str) -> List[SocialAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM social_account WHERE app_id = %s AND user_id = %s ORDER BY created_at",
                (app_id, user_id),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def create_social_user(
        self,
        app_id: str,
        email: str,
        account: SocialAccount,
        *,
        email_verified: bool = False,
        profile: Optional[Dict[str, Optional[str]]] = None,
    ) -> tuple[User, SocialAccount]:
        try:
            with self._connect() as conn:
                user = self._insert_user(conn, app_id, email, None, email_verified, profile)
                stored = self._insert_account(
                    conn, replace(account, app_id=app_id, user_id=user.id)
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user or social account already exists", {"field": "email"}
            )
        return user, stored
