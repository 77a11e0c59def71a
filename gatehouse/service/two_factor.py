from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from gatehouse.logging import get_logger
from gatehouse.service.errors import ConfigurationError, ConflictError
from gatehouse.service.totp import TOTPProvider
from gatehouse.storage.models import TwoFactorRecord


class TwoFactorStore(Protocol):
    def get(self, user_id: str) -> Optional[TwoFactorRecord]: ...

    def save(self, record: TwoFactorRecord) -> None: ...

    def delete(self, user_id: str) -> bool: ...


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class TwoFactorAuthenticator:
    """TOTP enrollment, verification and recovery codes for principals.

    Secrets and recovery codes are Fernet-encrypted before they reach the
    store. An enrollment stays pending until a code generated from the new
    secret has been confirmed.
    """

    def __init__(
        self,
        totp: TOTPProvider,
        store: TwoFactorStore,
        cipher_key: str,
        *,
        issuer: str = "Gatehouse",
        recovery_code_count: int = 8,
    ) -> None:
        if not cipher_key:
            raise ConfigurationError("Two-factor encryption key is not configured")
        self.totp = totp
        self.store = store
        self.issuer = issuer
        self.recovery_code_count = recovery_code_count
        self.logger = get_logger(__name__)
        self._cipher = Fernet(derive_cipher_key(cipher_key))

    @staticmethod
    def _user_id(user: Any) -> str:
        return str(user.get_auth_identifier())

    def _encrypt(self, value: str) -> str:
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: str) -> str:
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("two_factor_decrypt_failed")
            raise ConfigurationError(
                "Stored two-factor data cannot be decrypted with the configured key"
            ) from exc

    def _secret(self, record: TwoFactorRecord) -> str:
        return self._decrypt(record.secret)

    def _codes(self, record: TwoFactorRecord) -> List[str]:
        if not record.recovery_codes:
            return []
        return list(json.loads(self._decrypt(record.recovery_codes)))

    def _store_codes(self, record: TwoFactorRecord, codes: List[str]) -> None:
        record.recovery_codes = self._encrypt(json.dumps(codes))
        self.store.save(record)

    def begin_enrollment(
        self, user: Any, account_name: str, issuer: Optional[str] = None
    ) -> Tuple[str, str]:
        """Start (or restart) enrollment; returns ``(secret, otpauth_uri)``."""
        user_id = self._user_id(user)
        existing = self.store.get(user_id)
        if existing is not None and existing.confirmed:
            raise ConflictError(
                "Two-factor authentication is already enabled",
                detail={"user_id": user_id},
            )
        secret = self.totp.generate_secret()
        self.store.save(TwoFactorRecord(user_id=user_id, secret=self._encrypt(secret)))
        uri = self.totp.qr_provisioning_uri(issuer or self.issuer, account_name, secret)
        self.logger.info("two_factor_enrollment_started", user_id=user_id)
        return secret, uri

    def confirm_enrollment(self, user: Any, code: str) -> Optional[List[str]]:
        """Activate a pending enrollment; returns fresh recovery codes."""
        user_id = self._user_id(user)
        record = self.store.get(user_id)
        if record is None or record.confirmed:
            return None
        if not self.totp.verify(self._secret(record), code):
            self.logger.info("two_factor_confirmation_failed", user_id=user_id)
            return None
        codes = self.totp.generate_recovery_codes(self.recovery_code_count)
        record.confirmed = True
        record.confirmed_at = datetime.now(timezone.utc)
        self._store_codes(record, codes)
        self.logger.info("two_factor_enabled", user_id=user_id)
        return codes

    def enabled_for(self, user: Any) -> bool:
        record = self.store.get(self._user_id(user))
        return bool(record and record.confirmed)

    def disable(self, user: Any) -> bool:
        user_id = self._user_id(user)
        removed = self.store.delete(user_id)
        if removed:
            self.logger.info("two_factor_disabled", user_id=user_id)
        return removed

    def verify(self, user: Any, code: str) -> bool:
        record = self.store.get(self._user_id(user))
        if record is None or not record.confirmed:
            return False
        return self.totp.verify(self._secret(record), code)

    def recovery_codes(self, user: Any) -> List[str]:
        record = self.store.get(self._user_id(user))
        if record is None or not record.confirmed:
            return []
        return self._codes(record)

    def use_recovery_code(self, user: Any, code: str) -> bool:
        """Consume ``code`` if it is one of the user's unused recovery codes."""
        if not code:
            return False
        user_id = self._user_id(user)
        record = self.store.get(user_id)
        if record is None or not record.confirmed:
            return False
        codes = self._codes(record)
        presented = code.strip().lower().encode()
        match = None
        for candidate in codes:
            if hmac.compare_digest(candidate.encode(), presented):
                match = candidate
        if match is None:
            self.logger.info("recovery_code_rejected", user_id=user_id)
            return False
        codes.remove(match)
        self._store_codes(record, codes)
        self.logger.warning(
            "recovery_code_used", user_id=user_id, remaining=len(codes)
        )
        return True

    def regenerate_recovery_codes(self, user: Any) -> Optional[List[str]]:
        user_id = self._user_id(user)
        record = self.store.get(user_id)
        if record is None or not record.confirmed:
            return None
        codes = self.totp.generate_recovery_codes(self.recovery_code_count)
        self._store_codes(record, codes)
        self.logger.info("recovery_codes_regenerated", user_id=user_id)
        return codes
