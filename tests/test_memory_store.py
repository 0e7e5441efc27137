import pytest

from tessera.storage.errors import ConstraintViolation
from tessera.storage.memory import MemoryStore
from tessera.storage.models import (
    OAuthProviderConfig,
    SocialAccount,
    TwoFactorMethod,
    TwoFactorState,
)

from conftest import APP_A, APP_B, TEST_SECRET


@pytest.fixture
def store():
    store = MemoryStore(encryption_key=TEST_SECRET)
    store.create_application("Tenant A", app_id=APP_A)
    store.create_application("Tenant B", app_id=APP_B)
    return store


def _account(**overrides):
    values = dict(
        id="",
        app_id=APP_A,
        user_id="",
        provider="google",
        provider_user_id="g-1",
        access_token="provider-token",
    )
    values.update(overrides)
    return SocialAccount(**values)


def test_users_are_scoped_by_application(store):
    user = store.create_user(APP_A, "Alice@Example.com", password_hash="h")
    assert user.email == "alice@example.com"
    assert store.get_user(APP_B, user.id) is None
    assert store.get_user_by_email(APP_B, "alice@example.com") is None
    other = store.create_user(APP_B, "alice@example.com", password_hash="h2")
    assert other.id != user.id


def test_duplicate_email_in_application(store):
    store.create_user(APP_A, "alice@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user(APP_A, "ALICE@example.com")


def test_user_for_unknown_application(store):
    with pytest.raises(ConstraintViolation):
        store.create_user("33333333-3333-3333-3333-333333333333", "alice@example.com")


def test_returned_users_are_copies(store):
    user = store.create_user(APP_A, "alice@example.com")
    user.is_active = False
    assert store.get_user(APP_A, user.id).is_active


def test_two_factor_lifecycle(store):
    user = store.create_user(APP_A, "alice@example.com")
    assert store.enable_two_factor(APP_A, user.id, ["h1"]) is False

    store.set_two_factor_secret(APP_A, user.id, "JBSWY3DPEHPK3PXP")
    assert store.users[user.id].two_factor_secret != "JBSWY3DPEHPK3PXP"
    assert store.get_user(APP_A, user.id).two_factor_state == TwoFactorState.PENDING_SETUP

    assert store.enable_two_factor(APP_A, user.id, ["h1", "h2"]) is True
    assert store.count_recovery_codes(APP_A, user.id) == 2
    assert store.consume_recovery_code(APP_A, user.id, "h1") is True
    assert store.consume_recovery_code(APP_A, user.id, "h1") is False
    assert store.consume_recovery_code(APP_B, user.id, "h2") is False
    assert store.count_recovery_codes(APP_A, user.id) == 1

    store.disable_two_factor(APP_A, user.id)
    disabled = store.get_user(APP_A, user.id)
    assert disabled.two_factor_state == TwoFactorState.DISABLED
    assert disabled.two_factor_secret is None
    assert store.count_recovery_codes(APP_A, user.id) == 0


def test_restore_recovery_code(store):
    user = store.create_user(APP_A, "alice@example.com")
    assert store.restore_recovery_code(APP_A, user.id, "h1") is False
    store.set_two_factor_secret(APP_A, user.id, "JBSWY3DPEHPK3PXP")
    store.enable_two_factor(APP_A, user.id, ["h1", "h2"])
    assert store.consume_recovery_code(APP_A, user.id, "h1")
    assert store.restore_recovery_code(APP_A, user.id, "h1") is True
    assert store.count_recovery_codes(APP_A, user.id) == 2
    assert store.restore_recovery_code(APP_B, user.id, "h1") is False


def test_email_two_factor_needs_no_secret(store):
    user = store.create_user(APP_A, "alice@example.com")
    assert store.enable_two_factor(APP_A, user.id, ["h1"], method=TwoFactorMethod.EMAIL)
    enabled = store.get_user(APP_A, user.id)
    assert enabled.two_factor_method == TwoFactorMethod.EMAIL
    assert enabled.active_two_factor_method == TwoFactorMethod.EMAIL
    assert not store.enable_two_factor(APP_A, user.id, ["h2"], method=TwoFactorMethod.EMAIL)
    store.disable_two_factor(APP_A, user.id)
    assert store.get_user(APP_A, user.id).two_factor_method is None


def test_application_methods_are_copied(store):
    app = store.create_application(
        "Mail", two_factor_methods=["totp", "email"], email_two_factor_enabled=True
    )
    app.two_factor_methods.append("sms")
    stored = store.get_application(app.id)
    assert stored.two_factor_methods == ["totp", "email"]
    assert stored.email_two_factor_enabled


def test_provider_config_secret_encrypted(store):
    store.set_oauth_provider_config(
        OAuthProviderConfig(app_id=APP_A, provider="github", client_id="id", client_secret="s3cret")
    )
    assert store.oauth_configs[(APP_A, "github")].client_secret != "s3cret"
    assert store.get_oauth_provider_config(APP_A, "github").client_secret == "s3cret"
    assert store.get_oauth_provider_config(APP_B, "github") is None


def test_create_social_user_links_account(store):
    user, account = store.create_social_user(
        APP_A, "gina@example.com", _account(), email_verified=True, profile={"first_name": "Gina"}
    )
    assert user.password_hash is None
    assert user.email_verified
    assert user.first_name == "Gina"
    assert account.user_id == user.id
    assert account.id
    assert account.access_token == "provider-token"
    assert store.get_social_account(APP_A, "google", "g-1").user_id == user.id
    assert store.get_social_account(APP_B, "google", "g-1") is None


def test_create_social_user_is_all_or_nothing(store):
    store.create_user(APP_A, "gina@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_social_user(APP_A, "gina@example.com", _account())
    assert store.get_social_account(APP_A, "google", "g-1") is None


def test_social_account_unique_per_application(store):
    user = store.create_user(APP_A, "gina@example.com")
    store.create_social_account(_account(user_id=user.id))
    with pytest.raises(ConstraintViolation):
        store.create_social_account(_account(user_id=user.id))


def test_update_social_account(store):
    user = store.create_user(APP_A, "gina@example.com")
    account = store.create_social_account(_account(user_id=user.id))
    account.first_name = "Gina"
    account.access_token = "rotated-token"
    updated = store.update_social_account(account)
    assert updated.first_name == "Gina"
    assert store.get_social_account(APP_A, "google", "g-1").access_token == "rotated-token"
    assert store.social_accounts[(APP_A, "google", "g-1")].access_token != "rotated-token"
