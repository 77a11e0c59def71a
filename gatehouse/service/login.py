from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from gatehouse.logging import auth_log_context, get_logger, identity_digest
from gatehouse.service.errors import (
    AuthenticationError,
    ConfigurationError,
    RateLimitedError,
)
from gatehouse.service.guard import Guard
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.two_factor import TwoFactorAuthenticator

logger = get_logger(__name__)

TWO_FACTOR_ID_KEY = "login.two_factor_id"
TWO_FACTOR_REMEMBER_KEY = "login.two_factor_remember"
PASSWORD_CONFIRMED_KEY = "auth.password_confirmed_at"


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    LOCKED_OUT = "locked_out"
    TWO_FACTOR_REQUIRED = "two_factor_required"


@dataclass
class LoginOutcome:
    status: LoginStatus
    user: Any = None
    retry_after: int = 0
    recovery_code_used: bool = False

    @property
    def authenticated(self) -> bool:
        return self.status == LoginStatus.AUTHENTICATED

    def raise_for_status(self) -> "LoginOutcome":
        if self.status == LoginStatus.FAILED:
            raise AuthenticationError("These credentials do not match our records.")
        if self.status == LoginStatus.LOCKED_OUT:
            raise RateLimitedError(
                f"Too many login attempts. Please try again in {self.retry_after} seconds.",
                retry_after=self.retry_after,
            )
        return self


class LoginCeremony:
    """Interactive login on top of a guard: throttling, 2FA challenge, password confirmation.

    Failed password attempts are counted per ``lower(username)|ip`` and a key
    that reaches ``max_attempts`` is locked out for ``decay_seconds``. Users
    with confirmed two-factor enrollment are parked in the session after the
    password check and only logged in by :meth:`complete_two_factor`.
    """

    def __init__(
        self,
        guard: Guard,
        limiter: RateLimiter,
        two_factor: Optional[TwoFactorAuthenticator] = None,
        *,
        max_attempts: int = 5,
        decay_seconds: int = 60,
        password_timeout: int = 60 * 60 * 3,
        username_field: str = "email",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.guard = guard
        self.limiter = limiter
        self.two_factor = two_factor
        self.max_attempts = max_attempts
        self.decay_seconds = decay_seconds
        self.password_timeout = password_timeout
        self.username_field = username_field
        self._clock = clock

    @property
    def session(self) -> Any:
        session = getattr(self.guard, "session", None)
        if session is None:
            raise ConfigurationError(
                "Guard has no session store", detail={"guard": self.guard.name}
            )
        return session

    def throttle_key(self, credentials: Mapping[str, Any], ip: Optional[str]) -> str:
        username = str(credentials.get(self.username_field) or "").strip().lower()
        return f"{username}|{ip or ''}"

    def _locked_out(self, key: str) -> Optional[LoginOutcome]:
        if not self.limiter.too_many_attempts(key, self.max_attempts):
            return None
        retry_after = self.limiter.available_in(key)
        logger.warning("login_locked_out", guard=self.guard.name, retry_after=retry_after)
        return LoginOutcome(LoginStatus.LOCKED_OUT, retry_after=retry_after)

    def attempt(
        self,
        credentials: Mapping[str, Any],
        remember: bool = False,
        ip: Optional[str] = None,
    ) -> LoginOutcome:
        username = credentials.get(self.username_field)
        with auth_log_context(
            guard=self.guard.name, username_hash=identity_digest(username)
        ):
            return self._attempt(credentials, remember, self.throttle_key(credentials, ip))

    def _attempt(
        self, credentials: Mapping[str, Any], remember: bool, key: str
    ) -> LoginOutcome:
        locked = self._locked_out(key)
        if locked is not None:
            return locked

        user = self.guard.validated_user(credentials)
        if user is None:
            attempts = self.limiter.hit(key, self.decay_seconds)
            logger.info("login_failed", attempts=attempts)
            return LoginOutcome(LoginStatus.FAILED)

        self.limiter.clear(key)
        self.guard.rehash_password_if_required(user, credentials)

        if self.two_factor is not None and self.two_factor.enabled_for(user):
            session = self.session
            session.put(TWO_FACTOR_ID_KEY, user.get_auth_identifier())
            session.put(TWO_FACTOR_REMEMBER_KEY, bool(remember))
            logger.info(
                "login_two_factor_challenge",
                user_id=str(user.get_auth_identifier()),
            )
            return LoginOutcome(LoginStatus.TWO_FACTOR_REQUIRED, user=user)

        self.guard.login(user, remember)
        return LoginOutcome(LoginStatus.AUTHENTICATED, user=user)

    def pending_two_factor_user(self) -> Any:
        identifier = self.session.get(TWO_FACTOR_ID_KEY)
        if identifier is None:
            return None
        return self.guard.provider.retrieve_by_id(identifier)

    def complete_two_factor(
        self, code: Optional[str] = None, recovery_code: Optional[str] = None
    ) -> LoginOutcome:
        if self.two_factor is None:
            raise ConfigurationError("Two-factor authentication is not configured")
        session = self.session
        user = self.pending_two_factor_user()
        if user is None:
            session.forget(TWO_FACTOR_ID_KEY)
            session.forget(TWO_FACTOR_REMEMBER_KEY)
            return LoginOutcome(LoginStatus.FAILED)

        user_id = str(user.get_auth_identifier())
        key = f"two_factor|{user_id}"
        locked = self._locked_out(key)
        if locked is not None:
            return locked

        used_recovery = False
        if recovery_code:
            used_recovery = self.two_factor.use_recovery_code(user, recovery_code)
            verified = used_recovery
        else:
            verified = bool(code) and self.two_factor.verify(user, code)

        if not verified:
            self.limiter.hit(key, self.decay_seconds)
            logger.info("two_factor_challenge_failed", user_id=user_id)
            return LoginOutcome(LoginStatus.FAILED, user=user)

        self.limiter.clear(key)
        remember = bool(session.get(TWO_FACTOR_REMEMBER_KEY, False))
        session.forget(TWO_FACTOR_ID_KEY)
        session.forget(TWO_FACTOR_REMEMBER_KEY)
        self.guard.login(user, remember)
        return LoginOutcome(
            LoginStatus.AUTHENTICATED, user=user, recovery_code_used=used_recovery
        )

    def confirm_password(self, password: str) -> bool:
        user = self.guard.user()
        if user is None:
            return False
        if not self.guard.provider.validate_credentials(user, {"password": password}):
            logger.info("password_confirmation_failed", user_id=str(user.get_auth_identifier()))
            return False
        self.session.put(PASSWORD_CONFIRMED_KEY, int(self._clock()))
        return True

    def password_recently_confirmed(self) -> bool:
        confirmed_at = self.session.get(PASSWORD_CONFIRMED_KEY)
        if confirmed_at is None:
            return False
        return self._clock() - float(confirmed_at) <= self.password_timeout
