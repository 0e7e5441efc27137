from __future__ import annotations

import uuid
from typing import Mapping, Optional

from tessera.logging import get_logger
from tessera.service.deadlines import call_store
from tessera.service.errors import NotFoundError, TenantMismatchError
from tessera.storage.common import IdentityStore
from tessera.storage.models import Application

logger = get_logger(__name__)

APP_ID_HEADER = "X-App-ID"
APP_ID_QUERY_PARAM = "app_id"


def parse_app_id(value: object) -> Optional[str]:
    """Canonical string form of a UUID app id, or None if it is not one."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        return None


class TenantScope:
    """Resolves the application a request acts for and guards tenant claims."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        default_app_id: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.default_app_id = default_app_id
        self.timeout_seconds = timeout_seconds

    async def resolve(self, identifier: Optional[object]) -> Application:
        """Return the active application for ``identifier``.

        A missing identifier falls back to the configured default application.
        Malformed, unknown and deactivated applications all raise the same
        ``NotFoundError``.
        """
        raw = identifier if identifier not in (None, "") else self.default_app_id
        app_id = parse_app_id(raw)
        if app_id is None:
            logger.info("tenant_identifier_invalid")
            raise NotFoundError("application not found")
        app = await call_store(
            self.store.get_application,
            app_id,
            timeout=self.timeout_seconds,
            operation="get_application",
        )
        if app is None or not app.is_active:
            logger.info("tenant_not_found", app_id=app_id)
            raise NotFoundError("application not found")
        return app

    async def resolve_from_request(
        self,
        headers: Optional[Mapping[str, str]] = None,
        query: Optional[Mapping[str, str]] = None,
    ) -> Application:
        """Resolve from the ``X-App-ID`` header, then the ``app_id`` query parameter."""
        identifier = None
        if headers:
            lowered = {k.lower(): v for k, v in headers.items()}
            identifier = lowered.get(APP_ID_HEADER.lower())
        if not identifier and query:
            identifier = query.get(APP_ID_QUERY_PARAM)
        return await self.resolve(identifier)

    @staticmethod
    def authorize(claimed_app_id: Optional[str], request_app_id: str) -> None:
        """Raise ``TenantMismatchError`` unless the claimed tenant is the request's."""
        claimed = parse_app_id(claimed_app_id)
        expected = parse_app_id(request_app_id)
        if claimed is None or expected is None or claimed != expected:
            logger.warning(
                "tenant_mismatch", claimed_app_id=claimed_app_id, request_app_id=request_app_id
            )
            raise TenantMismatchError("token not valid for this application")
