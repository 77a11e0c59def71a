from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from gatehouse.logging import get_logger, identity_digest
from gatehouse.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    ServiceError,
)

logger = get_logger(__name__)


class VerificationStatus(str, Enum):
    VERIFIED = "verification.verified"
    ALREADY_VERIFIED = "verification.already_verified"
    INVALID_LINK = "verification.invalid"
    NOT_RECORDED = "verification.not_recorded"


class VerificationNotifier(Protocol):
    def send_verification_link(self, email: str, identifier: str, digest: str) -> None: ...


class EmailVerifier:
    """Issue and check email-verification links for principals.

    A link carries the principal's identifier and an HMAC of the address
    being verified. Changing the address invalidates links issued for the
    old one. Recording the verification is delegated to the user provider.
    """

    unverified_message = "Your email address is not verified."

    def __init__(
        self,
        provider: Any,
        key: str,
        notifier: Optional[VerificationNotifier] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not key:
            raise ConfigurationError("Email verification key is not configured")
        self.provider = provider
        self.notifier = notifier
        self._key = key.encode("utf-8")
        self._clock = clock

    @staticmethod
    def email_for_verification(user: Any) -> Optional[str]:
        if hasattr(user, "get_email_for_verification"):
            return user.get_email_for_verification()
        return getattr(user, "email", None)

    @staticmethod
    def has_verified_email(user: Any) -> bool:
        # principals without the capability never count as verified
        if user is None or not hasattr(user, "has_verified_email"):
            return False
        return bool(user.has_verified_email())

    def verification_hash(self, user: Any) -> str:
        email = self.email_for_verification(user)
        if not email:
            raise ServiceError("Principal has no email address to verify")
        normalized = email.strip().lower().encode("utf-8")
        return hmac.new(self._key, normalized, hashlib.sha256).hexdigest()

    def mark_email_as_verified(self, user: Any) -> bool:
        if self.has_verified_email(user):
            return False
        verified_at = datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()
        if hasattr(self.provider, "mark_email_as_verified"):
            marked = self.provider.mark_email_as_verified(user, verified_at)
        elif hasattr(user, "mark_email_as_verified"):
            marked = user.mark_email_as_verified()
        else:
            raise ConfigurationError("User provider cannot record email verification")
        return bool(marked)

    def verify(self, user: Any, identifier: Any, digest: Optional[str]) -> VerificationStatus:
        """Check a link's identifier and digest against the current principal."""
        if user is None:
            raise AuthenticationError("Unauthenticated.")
        user_id = str(user.get_auth_identifier())
        email = self.email_for_verification(user)
        if not hmac.compare_digest(str(identifier).encode(), user_id.encode()):
            logger.warning("email_verification_identifier_mismatch", user_id=user_id)
            return VerificationStatus.INVALID_LINK
        if not email or not digest or not hmac.compare_digest(
            str(digest).encode(), self.verification_hash(user).encode()
        ):
            logger.warning(
                "email_verification_invalid_hash",
                user_id=user_id,
                email_hash=identity_digest(email),
            )
            return VerificationStatus.INVALID_LINK

        if self.has_verified_email(user):
            return VerificationStatus.ALREADY_VERIFIED
        if not self.mark_email_as_verified(user):
            logger.error("email_verification_not_recorded", user_id=user_id)
            return VerificationStatus.NOT_RECORDED
        logger.info("email_verified", user_id=user_id, email_hash=identity_digest(email))
        return VerificationStatus.VERIFIED

    def resend(self, user: Any) -> bool:
        """Send a fresh link; False when the address is already verified."""
        if user is None:
            raise AuthenticationError("Unauthenticated.")
        if self.has_verified_email(user):
            return False
        email = self.email_for_verification(user)
        digest = self.verification_hash(user)
        if self.notifier is not None:
            self.notifier.send_verification_link(
                email, str(user.get_auth_identifier()), digest
            )
        logger.info("email_verification_link_sent", email_hash=identity_digest(email))
        return True

    def ensure_verified(self, user: Any) -> Any:
        if not self.has_verified_email(user):
            logger.info(
                "email_unverified_access_denied",
                user_id=str(user.get_auth_identifier()) if user is not None else None,
            )
            raise ForbiddenError(self.unverified_message, error_code="email_unverified")
        return user
