from __future__ import annotations

import hashlib
import secrets
from typing import Any, Mapping, Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.service.errors import AuthenticationError, ConfigurationError
from gatehouse.storage.models import Cookie

REMEMBER_TOKEN_BYTES = 32
REMEMBER_COOKIE_LIFETIME = 60 * 60 * 24 * 365


class Principal(Protocol):
    def get_auth_identifier(self) -> Any: ...

    def get_auth_password(self) -> Optional[str]: ...

    def get_remember_token(self) -> Optional[str]: ...

    def set_remember_token(self, value: str) -> None: ...


class UserStore(Protocol):
    """Persistence seam for principals. "Not found" is a ``None`` return."""

    def retrieve_by_id(self, identifier: Any) -> Optional[Principal]: ...

    def retrieve_by_token(self, identifier: Any, token: str) -> Optional[Principal]: ...

    def retrieve_by_credentials(
        self, credentials: Mapping[str, Any]
    ) -> Optional[Principal]: ...

    def validate_credentials(
        self, user: Principal, credentials: Mapping[str, Any]
    ) -> bool: ...

    def update_remember_token(self, user: Principal, token: str) -> None: ...


class SessionStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def forget(self, key: str) -> None: ...

    def regenerate(self, destroy: bool = False) -> str: ...


class CookieJar(Protocol):
    def get(self, name: str) -> Optional[str]: ...

    def queue(self, cookie: Cookie) -> None: ...


class _AbsentPrincipal:
    """Stand-in checked against a dummy hash when no principal matched."""

    def __init__(self, password_hash: Optional[str]) -> None:
        self._password_hash = password_hash

    def get_auth_identifier(self) -> Any:
        return None

    def get_auth_password(self) -> Optional[str]:
        return self._password_hash

    def get_remember_token(self) -> Optional[str]:
        return None

    def set_remember_token(self, value: str) -> None:
        return None


def new_remember_token() -> str:
    return secrets.token_hex(REMEMBER_TOKEN_BYTES)


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the credential from an ``Authorization: Bearer`` header value."""
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


class Guard:
    """State shared by every guard: the per-context memo and logged-out flag."""

    def __init__(self, name: str, provider: UserStore) -> None:
        self.name = name
        self.provider = provider
        self.logger = get_logger(__name__)
        self._user: Optional[Principal] = None
        self._resolved = False
        self._logged_out = False

    def user(self) -> Optional[Principal]:
        raise NotImplementedError

    def login(self, user: Principal, remember: bool = False) -> None:
        raise NotImplementedError

    def logout(self) -> None:
        raise NotImplementedError

    def check(self) -> bool:
        return self.user() is not None

    def guest(self) -> bool:
        return not self.check()

    def id(self) -> Any:
        user = self.user()
        return user.get_auth_identifier() if user is not None else None

    def set_user(self, user: Principal) -> None:
        self._user = user
        self._resolved = True
        self._logged_out = False

    def authenticate(self) -> Principal:
        user = self.user()
        if user is None:
            raise AuthenticationError("Unauthenticated.", detail={"guard": self.name})
        return user

    def validated_user(self, credentials: Mapping[str, Any]) -> Optional[Principal]:
        """The principal matching ``credentials`` if its secret checks out."""
        user = self.provider.retrieve_by_credentials(credentials)
        if not self._has_valid_credentials(user, credentials):
            return None
        return user

    def rehash_password_if_required(
        self, user: Principal, credentials: Mapping[str, Any]
    ) -> None:
        if hasattr(self.provider, "rehash_password_if_required"):
            self.provider.rehash_password_if_required(user, credentials)

    def validate(self, credentials: Mapping[str, Any]) -> bool:
        return self.validated_user(credentials) is not None

    def attempt(self, credentials: Mapping[str, Any], remember: bool = False) -> bool:
        user = self.validated_user(credentials)
        if user is None:
            self.logger.info("login_attempt_failed", guard=self.name)
            return False
        self.rehash_password_if_required(user, credentials)
        self.login(user, remember)
        return True

    def once(self, credentials: Mapping[str, Any]) -> bool:
        """Authenticate for this context only, without touching the session."""
        user = self.validated_user(credentials)
        if user is None:
            return False
        self.set_user(user)
        return True

    def login_using_id(self, identifier: Any, remember: bool = False) -> Optional[Principal]:
        user = self.provider.retrieve_by_id(identifier)
        if user is None:
            return None
        self.login(user, remember)
        return user

    def _has_valid_credentials(
        self, user: Optional[Principal], credentials: Mapping[str, Any]
    ) -> bool:
        if user is None:
            # same hash cost whether or not the identity exists
            if hasattr(self.provider, "dummy_hash"):
                self.provider.validate_credentials(
                    _AbsentPrincipal(self.provider.dummy_hash()), credentials
                )
            return False
        return self.provider.validate_credentials(user, credentials)


class SessionGuard(Guard):
    """Stateful guard backed by a server-side session and a remember-me cookie."""

    def __init__(
        self,
        name: str,
        provider: UserStore,
        session: SessionStore,
        cookies: Optional[CookieJar] = None,
        *,
        session_key: str = "auth_id",
        remember_cookie: str = "remember_token",
        remember_lifetime: int = REMEMBER_COOKIE_LIFETIME,
        cookie_secure: bool = True,
        cookie_same_site: str = "Lax",
    ) -> None:
        super().__init__(name, provider)
        self.session = session
        self.cookies = cookies
        self.session_key = session_key
        self.remember_cookie = remember_cookie
        self.remember_lifetime = remember_lifetime
        self.cookie_secure = cookie_secure
        self.cookie_same_site = cookie_same_site
        self._via_remember = False

    def user(self) -> Optional[Principal]:
        if self._logged_out:
            return None
        if self._resolved:
            return self._user

        user = None
        identifier = self.session.get(self.session_key)
        if identifier is not None:
            user = self.provider.retrieve_by_id(identifier)

        if user is None:
            recaller = self._recaller()
            if recaller is not None:
                user = self._user_from_recaller(recaller)
                if user is not None:
                    self._update_session(user.get_auth_identifier())
                    self._issue_remember_token(user)
                    self._via_remember = True
                    self.logger.info(
                        "remember_token_rotated",
                        guard=self.name,
                        user_id=str(user.get_auth_identifier()),
                    )

        self._user = user
        self._resolved = True
        return user

    def via_remember(self) -> bool:
        return self._via_remember

    def login(self, user: Principal, remember: bool = False) -> None:
        self._update_session(user.get_auth_identifier())
        if remember:
            self._issue_remember_token(user)
        self.set_user(user)
        self._via_remember = False
        self.logger.info(
            "user_logged_in",
            guard=self.name,
            user_id=str(user.get_auth_identifier()),
            remember=remember,
        )

    def logout(self) -> None:
        user = self.user()
        self.session.forget(self.session_key)
        self.session.regenerate()
        if user is not None:
            self._cycle_remember_token(user)
        self._clear_recaller()
        self._user = None
        self._resolved = True
        self._logged_out = True
        self._via_remember = False
        if user is not None:
            self.logger.info(
                "user_logged_out",
                guard=self.name,
                user_id=str(user.get_auth_identifier()),
            )

    def _update_session(self, identifier: Any) -> None:
        self.session.put(self.session_key, identifier)
        self.session.regenerate()

    def _recaller(self) -> Optional[str]:
        if self.cookies is None:
            return None
        return self.cookies.get(self.remember_cookie) or None

    def _user_from_recaller(self, recaller: str) -> Optional[Principal]:
        identifier, sep, token = recaller.partition("|")
        if not sep or not identifier or not token:
            self._clear_recaller()
            return None
        user = self.provider.retrieve_by_token(identifier, token)
        if user is not None:
            return user
        # a rejected cookie also retires whatever token is stored for the id
        stale = self.provider.retrieve_by_id(identifier)
        if stale is not None:
            self.provider.update_remember_token(stale, new_remember_token())
        self._clear_recaller()
        self.logger.warning("remember_token_rejected", guard=self.name)
        return None

    def _issue_remember_token(self, user: Principal) -> None:
        if self.cookies is None:
            raise ConfigurationError(
                "Remember-me requires a cookie jar", detail={"guard": self.name}
            )
        token = new_remember_token()
        self.provider.update_remember_token(user, token)
        self.cookies.queue(
            Cookie(
                name=self.remember_cookie,
                value=f"{user.get_auth_identifier()}|{token}",
                max_age=self.remember_lifetime,
                path="/",
                secure=self.cookie_secure,
                http_only=True,
                same_site=self.cookie_same_site,
            )
        )

    def _cycle_remember_token(self, user: Principal) -> None:
        self.provider.update_remember_token(user, new_remember_token())

    def _clear_recaller(self) -> None:
        if self.cookies is not None:
            self.cookies.queue(
                Cookie.expired(
                    self.remember_cookie,
                    secure=self.cookie_secure,
                    same_site=self.cookie_same_site,
                )
            )


class TokenGuard(Guard):
    """Stateless guard resolving the principal from an API token per request."""

    def __init__(
        self,
        name: str,
        provider: UserStore,
        token: Optional[str] = None,
        *,
        input_key: str = "api_token",
        storage_key: str = "api_token",
        hash: bool = False,
    ) -> None:
        super().__init__(name, provider)
        self.token = token
        self.input_key = input_key
        self.storage_key = storage_key
        self.hash = hash

    def _stored_form(self, token: str) -> str:
        if self.hash:
            return hashlib.sha256(token.encode("utf-8")).hexdigest()
        return token

    def user(self) -> Optional[Principal]:
        if self._logged_out:
            return None
        if self._resolved:
            return self._user
        user = None
        if self.token:
            user = self.provider.retrieve_by_credentials(
                {self.storage_key: self._stored_form(self.token)}
            )
        self._user = user
        self._resolved = True
        return user

    def validate(self, credentials: Mapping[str, Any]) -> bool:
        token = credentials.get(self.input_key)
        if not token:
            return False
        user = self.provider.retrieve_by_credentials(
            {self.storage_key: self._stored_form(str(token))}
        )
        return user is not None

    def set_token(self, token: Optional[str]) -> "TokenGuard":
        self.token = token
        self._user = None
        self._resolved = False
        return self

    def login(self, user: Principal, remember: bool = False) -> None:
        self.set_user(user)

    def logout(self) -> None:
        self._user = None
        self._resolved = True
        self._logged_out = True
