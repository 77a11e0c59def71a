"""Tests for config-driven guard/provider resolution."""

import pytest

from gatehouse.config import Settings
from gatehouse.service.auth import AuthManager
from gatehouse.service.errors import ConfigurationError
from gatehouse.service.gate import GateRegistry
from gatehouse.service.guard import SessionGuard, TokenGuard
from gatehouse.storage.memory import MemoryCookieJar, MemorySession, MemoryUserStore


@pytest.fixture
def settings():
    return Settings(bcrypt_rounds=4, cookie_secure=False, remember_cookie_name="keep_me")


@pytest.fixture
def manager(settings, hasher):
    return AuthManager(settings, hasher=hasher)


class TestGuardResolution:
    def test_default_guard_is_session(self, manager):
        guard = manager.guard(session=MemorySession(), cookies=MemoryCookieJar())
        assert isinstance(guard, SessionGuard)
        assert guard.name == "web"
        assert guard.remember_cookie == "keep_me"
        assert guard.cookie_secure is False

    def test_token_guard(self, manager):
        guard = manager.guard("api", token="abc")
        assert isinstance(guard, TokenGuard)
        assert guard.token == "abc"
        assert guard.hash is False

    def test_guards_are_fresh_per_call(self, manager):
        session = MemorySession()
        assert manager.guard(session=session) is not manager.guard(session=session)

    def test_session_guard_requires_session(self, manager):
        with pytest.raises(ConfigurationError):
            manager.guard("web")

    def test_unknown_guard(self, manager):
        with pytest.raises(ConfigurationError, match="not defined"):
            manager.guard("admin")

    def test_unsupported_driver(self, hasher):
        settings = Settings(
            bcrypt_rounds=4,
            guards={"web": {"driver": "jwt", "provider": "users"}},
        )
        with pytest.raises(ConfigurationError, match="Unsupported auth driver"):
            AuthManager(settings, hasher=hasher).guard()

    def test_extend_guard(self, manager):
        manager.settings.guards["custom"] = {"driver": "header", "provider": "users"}
        manager.extend_guard(
            "header",
            lambda name, config, provider, context: TokenGuard(name, provider, context.token),
        )
        guard = manager.guard("custom", token="t")
        assert isinstance(guard, TokenGuard)
        assert guard.name == "custom"


class TestProviderResolution:
    def test_memory_provider_is_cached(self, manager):
        provider = manager.provider("users")
        assert isinstance(provider, MemoryUserStore)
        assert manager.provider("users") is provider

    def test_guards_share_provider(self, manager):
        web = manager.guard(session=MemorySession())
        api = manager.guard("api")
        assert web.provider is api.provider

    def test_unknown_provider(self, manager):
        with pytest.raises(ConfigurationError):
            manager.provider("admins")

    def test_unsupported_provider_driver(self, hasher):
        settings = Settings(bcrypt_rounds=4, providers={"users": {"driver": "ldap"}})
        with pytest.raises(ConfigurationError, match="ldap"):
            AuthManager(settings, hasher=hasher).provider("users")

    def test_extend_provider(self, hasher):
        custom = MemoryUserStore(hasher)
        settings = Settings(bcrypt_rounds=4, providers={"users": {"driver": "custom"}})
        manager = AuthManager(settings, hasher=hasher).extend_provider(
            "custom", lambda config: custom
        )
        assert manager.provider("users") is custom

    def test_set_provider_binds_instance(self, manager, hasher, alice):
        bound = MemoryUserStore(hasher)
        manager.set_provider("users", bound)
        guard = manager.guard(session=MemorySession())
        assert guard.provider is bound
        assert not guard.attempt({"email": "alice@example.com", "password": "correct horse"})


class TestRequestAuth:
    def test_guards_cached_within_request(self, manager):
        request = manager.for_request(session=MemorySession(), cookies=MemoryCookieJar())
        assert request.guard() is request.guard("web")

    def test_user_and_gate(self, manager):
        users = manager.provider("users")
        alice = users.create_user("alice@example.com", "pw", user_id=7)
        manager.gate_registry.define("is-seven", lambda user: user is not None and user.id == 7)

        request = manager.for_request(session=MemorySession({"auth_id": 7}))
        assert request.check()
        assert request.user() is alice
        assert request.id() == 7
        assert request.gate().check("is-seven")

    def test_guest_gate(self, manager):
        request = manager.for_request(session=MemorySession())
        gate = request.gate()
        assert gate.get_user() is None
        assert not gate.check("anything")

    def test_shared_registry(self, settings, hasher):
        registry = GateRegistry()
        manager = AuthManager(settings, hasher=hasher, gate_registry=registry)
        request = manager.for_request(token="x")
        assert request.gate("api").registry is registry
