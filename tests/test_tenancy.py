import pytest

from tessera.config import DEFAULT_APP_ID
from tessera.service.errors import NotFoundError, ServerError, TenantMismatchError
from tessera.service.tenancy import TenantScope, parse_app_id

from conftest import APP_A, APP_B


class TestParseAppId:
    def test_canonicalizes_uuid(self):
        assert parse_app_id(APP_A.upper()) == APP_A
        assert parse_app_id(f"  {APP_A} ") == APP_A

    @pytest.mark.parametrize("value", [None, "", "   ", "tenant-a", 42])
    def test_rejects_non_uuid(self, value):
        assert parse_app_id(value) is None


class TestTenantScope:
    async def test_resolve_known_application(self, services):
        """An active application resolves to its record."""
        app = await services.tenants.resolve(APP_A)
        assert app.id == APP_A
        assert app.name == "Tenant A"

    async def test_missing_identifier_falls_back_to_default(self, services):
        app = await services.tenants.resolve(None)
        assert app.id == DEFAULT_APP_ID

    async def test_malformed_identifier_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.tenants.resolve("not-a-uuid")

    async def test_unknown_application_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.tenants.resolve("33333333-3333-3333-3333-333333333333")

    async def test_inactive_application_not_found(self, services):
        services.store.set_application_active(APP_B, False)
        with pytest.raises(NotFoundError):
            await services.tenants.resolve(APP_B)

    async def test_resolve_from_header_before_query(self, services):
        app = await services.tenants.resolve_from_request(
            headers={"x-app-id": APP_A}, query={"app_id": APP_B}
        )
        assert app.id == APP_A

    async def test_resolve_from_query(self, services):
        app = await services.tenants.resolve_from_request(headers={}, query={"app_id": APP_B})
        assert app.id == APP_B

    async def test_store_failure_is_generic(self, settings):
        class BrokenStore:
            def get_application(self, app_id):
                raise ConnectionError("db host 10.0.0.5 refused connection")

        scope = TenantScope(BrokenStore(), default_app_id=DEFAULT_APP_ID)
        with pytest.raises(ServerError) as exc_info:
            await scope.resolve(APP_A)
        assert "10.0.0.5" not in str(exc_info.value)


class TestAuthorize:
    def test_matching_tenant_passes(self):
        TenantScope.authorize(APP_A, APP_A.upper())

    def test_mismatch_rejected(self):
        with pytest.raises(TenantMismatchError):
            TenantScope.authorize(APP_A, APP_B)

    def test_missing_claim_rejected(self):
        with pytest.raises(TenantMismatchError):
            TenantScope.authorize(None, APP_A)
