import asyncio

import pytest

import tessera.service.runtime as runtime_module
from tessera.config import Settings, reset_settings_cache
from tessera.service.runtime import Runtime, _mask_url_password, reset_runtime_for_tests
from tessera.storage.memory import MemoryStore
from tessera.storage.sessions import MemorySessionStore

from conftest import TEST_SECRET


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:mypassword@localhost:6379", "redis://:***@localhost:6379"),
        ("postgresql://app:pw@db:5432/tessera", "postgresql://app:***@db:5432/tessera"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_memory_runtime_falls_back_without_redis():
    settings = Settings(
        jwt_secret=TEST_SECRET, use_memory_store=True, test_mode=True, redis_url=None
    )
    runtime = Runtime(settings)
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.sessions, MemorySessionStore)
    assert runtime.store.get_application(settings.default_app_id) is not None


def test_redis_required_outside_test_mode():
    settings = Settings(jwt_secret=TEST_SECRET, use_memory_store=True, redis_url=None)
    with pytest.raises(RuntimeError):
        Runtime(settings)


async def test_memory_runtime_login_round_trip():
    settings = Settings(
        jwt_secret=TEST_SECRET, use_memory_store=True, test_mode=True, redis_url=None
    )
    runtime = Runtime(settings)
    await runtime.open()
    try:
        await runtime.auth.register(None, "alice@example.com", "correct-horse-battery")
        result = await runtime.auth.login(None, "alice@example.com", "correct-horse-battery")
        claims = await runtime.auth.authenticate(None, result.tokens.access_token)
        assert claims.app_id == settings.default_app_id
    finally:
        await runtime.close()


def test_reset_refused_outside_test_mode_keeps_runtime(monkeypatch):
    current = Runtime(
        Settings(jwt_secret=TEST_SECRET, use_memory_store=True, test_mode=True, redis_url=None)
    )
    monkeypatch.setattr(runtime_module, "runtime", current)
    monkeypatch.setenv("TEST_MODE", "false")
    try:
        with pytest.raises(RuntimeError):
            reset_runtime_for_tests()
        assert runtime_module.runtime is current
        assert not runtime_module._pending_closes
    finally:
        monkeypatch.undo()
        reset_settings_cache()


async def test_reset_on_running_loop_closes_previous_runtime(monkeypatch):
    closed = []

    class Previous:
        async def close(self):
            closed.append(True)

    monkeypatch.setattr(runtime_module, "runtime", Previous())
    fresh = reset_runtime_for_tests()
    assert runtime_module.runtime is fresh
    assert len(runtime_module._pending_closes) == 1
    while runtime_module._pending_closes:
        await asyncio.sleep(0)
    assert closed == [True]
