from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from gatehouse.config import GuardDriver, Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import ConfigurationError
from gatehouse.service.gate import Gate, GateRegistry
from gatehouse.service.guard import (
    CookieJar,
    Guard,
    SessionGuard,
    SessionStore,
    TokenGuard,
    UserStore,
)
from gatehouse.storage.memory import MemoryUserStore

logger = get_logger(__name__)


@dataclass
class RequestContext:
    """Per-request transport handed to guard factories."""

    session: Optional[SessionStore] = None
    cookies: Optional[CookieJar] = None
    token: Optional[str] = None


ProviderFactory = Callable[[Dict[str, Any]], UserStore]
GuardFactory = Callable[[str, Dict[str, Any], UserStore, RequestContext], Guard]


class AuthManager:
    """Builds guards and user providers from the ``guards``/``providers`` tables.

    Providers are process-wide and cached by name. Guards hold per-request
    state, so :meth:`guard` builds a new one on every call; use
    :meth:`for_request` to share guards within one request.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        hasher: Any,
        gate_registry: Optional[GateRegistry] = None,
    ) -> None:
        self.settings = settings
        self.hasher = hasher
        self.gate_registry = gate_registry or GateRegistry()
        self._providers: Dict[str, UserStore] = {}
        self._provider_factories: Dict[str, ProviderFactory] = {
            "memory": lambda config: MemoryUserStore(self.hasher),
        }
        self._guard_factories: Dict[str, GuardFactory] = {
            GuardDriver.SESSION.value: self._create_session_guard,
            GuardDriver.TOKEN.value: self._create_token_guard,
        }

    def default_guard(self) -> str:
        return self.settings.default_guard

    def extend_provider(self, driver: str, factory: ProviderFactory) -> "AuthManager":
        self._provider_factories[driver] = factory
        return self

    def extend_guard(self, driver: str, factory: GuardFactory) -> "AuthManager":
        self._guard_factories[driver] = factory
        return self

    def provider(self, name: str = "users") -> UserStore:
        if name not in self._providers:
            self._providers[name] = self._resolve_provider(name)
        return self._providers[name]

    def set_provider(self, name: str, provider: UserStore) -> None:
        self._providers[name] = provider

    def _resolve_provider(self, name: str) -> UserStore:
        config = self.settings.providers.get(name)
        if not config:
            raise ConfigurationError(f"Auth provider [{name}] is not defined.")
        driver = config.get("driver", "memory")
        factory = self._provider_factories.get(driver)
        if factory is None:
            logger.error("auth_provider_driver_unsupported", driver=driver)
            raise ConfigurationError(f"Unsupported provider driver: {driver}")
        return factory(config)

    def guard(
        self,
        name: Optional[str] = None,
        *,
        session: Optional[SessionStore] = None,
        cookies: Optional[CookieJar] = None,
        token: Optional[str] = None,
    ) -> Guard:
        name = name or self.default_guard()
        config = self.settings.guards.get(name)
        if not config:
            raise ConfigurationError(f"Auth guard [{name}] is not defined.")
        driver = config.get("driver", GuardDriver.SESSION.value)
        factory = self._guard_factories.get(driver)
        if factory is None:
            logger.error("auth_guard_driver_unsupported", guard=name, driver=driver)
            raise ConfigurationError(f"Unsupported auth driver: {driver}")
        provider = self.provider(config.get("provider", "users"))
        context = RequestContext(session=session, cookies=cookies, token=token)
        return factory(name, config, provider, context)

    def _create_session_guard(
        self,
        name: str,
        config: Dict[str, Any],
        provider: UserStore,
        context: RequestContext,
    ) -> Guard:
        if context.session is None:
            raise ConfigurationError(
                f"Session guard [{name}] requires a session store"
            )
        return SessionGuard(
            name,
            provider,
            context.session,
            context.cookies,
            session_key=self.settings.session_auth_key,
            remember_cookie=self.settings.remember_cookie_name,
            remember_lifetime=self.settings.remember_cookie_lifetime_seconds,
            cookie_secure=self.settings.cookie_secure,
            cookie_same_site=self.settings.cookie_same_site,
        )

    def _create_token_guard(
        self,
        name: str,
        config: Dict[str, Any],
        provider: UserStore,
        context: RequestContext,
    ) -> Guard:
        return TokenGuard(
            name,
            provider,
            context.token,
            input_key=config.get("input_key", "api_token"),
            storage_key=config.get("storage_key", "api_token"),
            hash=bool(config.get("hash", False)),
        )

    def for_request(
        self,
        *,
        session: Optional[SessionStore] = None,
        cookies: Optional[CookieJar] = None,
        token: Optional[str] = None,
    ) -> "RequestAuth":
        return RequestAuth(
            self, RequestContext(session=session, cookies=cookies, token=token)
        )


@dataclass
class RequestAuth:
    """Guards for a single request, built lazily and reused."""

    manager: AuthManager
    context: RequestContext
    _guards: Dict[str, Guard] = field(default_factory=dict)

    def guard(self, name: Optional[str] = None) -> Guard:
        name = name or self.manager.default_guard()
        if name not in self._guards:
            self._guards[name] = self.manager.guard(
                name,
                session=self.context.session,
                cookies=self.context.cookies,
                token=self.context.token,
            )
        return self._guards[name]

    def user(self) -> Any:
        return self.guard().user()

    def check(self) -> bool:
        return self.guard().check()

    def id(self) -> Any:
        return self.guard().id()

    def gate(self, guard: Optional[str] = None) -> Gate:
        return self.manager.gate_registry.for_user(self.guard(guard).user())
