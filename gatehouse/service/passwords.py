from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from gatehouse.logging import get_logger, identity_digest
from gatehouse.service.rate_limit import Cache
from gatehouse.storage.models import PasswordResetRecord

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32


class ResetStatus(str, Enum):
    LINK_SENT = "passwords.sent"
    PASSWORD_RESET = "passwords.reset"
    INVALID_USER = "passwords.user"
    INVALID_TOKEN = "passwords.token"
    THROTTLED = "passwords.throttled"


class ResetTokenRepository(Protocol):
    def put(self, record: PasswordResetRecord) -> None: ...

    def get(self, email: str) -> Optional[PasswordResetRecord]: ...

    def forget(self, email: str) -> None: ...

    def delete_older_than(self, cutoff: float) -> int: ...


class ResetNotifier(Protocol):
    def send_reset_link(self, email: str, token: str) -> None: ...


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _email_digest(email: str) -> str:
    return hashlib.sha256(email.lower().encode("utf-8")).hexdigest()


class CacheResetTokenRepository:
    """Reset records kept in the shared cache; the TTL handles expiry."""

    def __init__(
        self, cache: Cache, *, ttl_seconds: int, prefix: str = "password_reset:"
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, email: str) -> str:
        return f"{self.prefix}{_email_digest(email)}"

    def put(self, record: PasswordResetRecord) -> None:
        self.cache.put(
            self._key(record.email),
            {
                "email": record.email,
                "token_hash": record.token_hash,
                "created_at": record.created_at,
            },
            self.ttl_seconds,
        )

    def get(self, email: str) -> Optional[PasswordResetRecord]:
        payload: Optional[Dict[str, Any]] = self.cache.get(self._key(email))
        if not payload:
            return None
        return PasswordResetRecord(
            email=payload["email"],
            token_hash=payload["token_hash"],
            created_at=float(payload["created_at"]),
        )

    def forget(self, email: str) -> None:
        self.cache.forget(self._key(email))

    def delete_older_than(self, cutoff: float) -> int:
        return 0


class PasswordResetFlow:
    """Issue, validate and consume one-shot password reset tokens.

    Only the sha256 digest of a token is stored; the plaintext goes to the
    notifier and nowhere else. Setting the new password is left to the
    caller's callback.
    """

    def __init__(
        self,
        provider: Any,
        repository: ResetTokenRepository,
        notifier: Optional[ResetNotifier] = None,
        *,
        expire_minutes: int = 60,
        throttle_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.repository = repository
        self.notifier = notifier
        self.expire_seconds = expire_minutes * 60
        self.throttle_seconds = throttle_seconds
        self._clock = clock

    @staticmethod
    def _email_for(user: Any) -> Optional[str]:
        if hasattr(user, "get_email_for_password_reset"):
            return user.get_email_for_password_reset()
        return getattr(user, "email", None)

    def send_reset_link(self, credentials: Mapping[str, Any]) -> ResetStatus:
        lookup = {k: v for k, v in credentials.items() if "password" not in k}
        user = self.provider.retrieve_by_credentials(lookup)
        if user is None:
            logger.info("password_reset_unknown_user")
            return ResetStatus.INVALID_USER

        email = self._email_for(user)
        if not email:
            logger.info("password_reset_user_without_email")
            return ResetStatus.INVALID_USER
        if self.recently_created_token(user):
            logger.info("password_reset_throttled", email_hash=identity_digest(email))
            return ResetStatus.THROTTLED

        token = self.create_token(user)
        if self.notifier is not None:
            self.notifier.send_reset_link(email, token)
        logger.info("password_reset_link_sent", email_hash=identity_digest(email))
        return ResetStatus.LINK_SENT

    def reset(
        self,
        credentials: Mapping[str, Any],
        callback: Callable[[Any, str], None],
    ) -> ResetStatus:
        user = self.provider.retrieve_by_credentials({"email": credentials.get("email")})
        if user is None or not self._email_for(user):
            return ResetStatus.INVALID_USER

        if not self.token_exists(user, credentials.get("token")):
            logger.warning(
                "password_reset_token_invalid",
                email_hash=identity_digest(self._email_for(user)),
            )
            return ResetStatus.INVALID_TOKEN

        callback(user, credentials["password"])
        self.delete_token(user)
        logger.info(
            "password_reset_completed",
            email_hash=identity_digest(self._email_for(user)),
        )
        return ResetStatus.PASSWORD_RESET

    def create_token(self, user: Any) -> str:
        email = self._email_for(user)
        self.repository.forget(email)
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        self.repository.put(
            PasswordResetRecord(
                email=email, token_hash=hash_token(token), created_at=self._clock()
            )
        )
        return token

    def token_exists(self, user: Any, token: Optional[str]) -> bool:
        if not token:
            return False
        email = self._email_for(user)
        if not email:
            return False
        record = self.repository.get(email)
        if record is None:
            return False
        if self._expired(record):
            self.repository.forget(email)
            return False
        return hmac.compare_digest(record.token_hash, hash_token(str(token)))

    def delete_token(self, user: Any) -> None:
        self.repository.forget(self._email_for(user))

    def recently_created_token(self, user: Any) -> bool:
        if self.throttle_seconds <= 0:
            return False
        email = self._email_for(user)
        if not email:
            return False
        record = self.repository.get(email)
        if record is None:
            return False
        return self._clock() - record.created_at < self.throttle_seconds

    def delete_expired(self) -> int:
        removed = self.repository.delete_older_than(self._clock() - self.expire_seconds)
        if removed:
            logger.info("password_reset_tokens_pruned", count=removed)
        return removed

    def _expired(self, record: PasswordResetRecord) -> bool:
        return record.created_at + self.expire_seconds < self._clock()
