from __future__ import annotations

import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthManager
from gatehouse.service.gate import GateRegistry
from gatehouse.service.guard import Guard
from gatehouse.service.hashing import HashManager
from gatehouse.service.login import LoginCeremony
from gatehouse.service.passwords import (
    CacheResetTokenRepository,
    PasswordResetFlow,
    ResetNotifier,
)
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.totp import TOTPProvider
from gatehouse.service.two_factor import TwoFactorAuthenticator
from gatehouse.service.verification import EmailVerifier, VerificationNotifier
from gatehouse.storage.memory import (
    MemoryCache,
    MemoryResetTokenRepository,
    MemoryTwoFactorStore,
)
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-wide auth collaborators wired from ``Settings``."""

    def __init__(
        self,
        *,
        notifier: Optional[ResetNotifier] = None,
        verification_notifier: Optional[VerificationNotifier] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            hash_driver=self.settings.hash_driver.value,
            test_mode=self.settings.test_mode,
        )

        self.cache: Any = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError, ValueError) as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for throttling and reset tokens; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; throttle counters "
                    "and reset tokens are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.hasher = HashManager(self.settings)
        self.gate = GateRegistry()
        self.auth = AuthManager(self.settings, hasher=self.hasher, gate_registry=self.gate)
        self.limiter = RateLimiter(self.cache)

        expire_seconds = self.settings.password_reset_expire_minutes * 60
        if isinstance(self.cache, RedisCache):
            self.reset_tokens: Any = CacheResetTokenRepository(
                self.cache, ttl_seconds=expire_seconds
            )
        else:
            self.reset_tokens = MemoryResetTokenRepository()
        self.passwords = PasswordResetFlow(
            self.auth.provider("users"),
            self.reset_tokens,
            notifier,
            expire_minutes=self.settings.password_reset_expire_minutes,
            throttle_seconds=self.settings.password_reset_throttle_seconds,
        )

        self.totp = TOTPProvider(
            window=self.settings.totp_window,
            period=self.settings.totp_period,
            digits=self.settings.totp_digits,
        )
        self.two_factor = TwoFactorAuthenticator(
            self.totp,
            MemoryTwoFactorStore(),
            self.settings.two_factor_key,
            issuer=self.settings.totp_issuer,
            recovery_code_count=self.settings.recovery_code_count,
        )
        self.verification = EmailVerifier(
            self.auth.provider("users"),
            self.settings.email_verification_key,
            verification_notifier,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            default_guard=self.settings.default_guard,
            guards=sorted(self.settings.guards),
        )

    @property
    def users(self) -> Any:
        return self.auth.provider("users")

    def login_ceremony(self, guard: Guard) -> LoginCeremony:
        return LoginCeremony(
            guard,
            self.limiter,
            self.two_factor,
            max_attempts=self.settings.login_max_attempts,
            decay_seconds=self.settings.login_decay_seconds,
            password_timeout=self.settings.password_timeout_seconds,
        )

    def close(self) -> None:
        if isinstance(self.cache, RedisCache):
            self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except RedisError as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
