"""Time-based one-time passwords (RFC 6238) for two-factor authentication.

Secrets are unpadded RFC 4648 base32. Codes are HMAC-SHA1 with dynamic
truncation, checked against a window of adjacent time steps (30 seconds by default).
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import struct
import time
from typing import Callable, List, Optional
from urllib.parse import quote

from gatehouse.logging import get_logger

logger = get_logger(__name__)

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_BASE32_INDEX = {char: index for index, char in enumerate(BASE32_ALPHABET)}

TOTP_SECRET_BYTES = 20
TOTP_PERIOD = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
RECOVERY_CODE_BYTES = 4


def base32_encode(data: bytes) -> str:
    """Encode bytes with the RFC 4648 alphabet, without padding."""
    output = []
    buffer = 0
    bits = 0
    for byte in data:
        buffer = (buffer << 8) | byte
        bits += 8
        while bits >= 5:
            bits -= 5
            output.append(BASE32_ALPHABET[(buffer >> bits) & 31])
    if bits > 0:
        output.append(BASE32_ALPHABET[(buffer << (5 - bits)) & 31])
    return "".join(output)


def base32_decode(value: str) -> bytes:
    """Decode an unpadded (or padded) RFC 4648 base32 string.

    Lower-case input is accepted; any character outside ``A-Z2-7`` raises
    ``ValueError``.
    """
    normalized = value.strip().upper().rstrip("=")
    output = bytearray()
    buffer = 0
    bits = 0
    for char in normalized:
        index = _BASE32_INDEX.get(char)
        if index is None:
            raise ValueError(f"Invalid base32 character: {char!r}")
        buffer = (buffer << 5) | index
        bits += 5
        if bits >= 8:
            bits -= 8
            output.append((buffer >> bits) & 0xFF)
    return bytes(output)


class TOTPProvider:
    """Generates and verifies TOTP codes; holds no per-user state."""

    def __init__(
        self,
        *,
        window: int = TOTP_WINDOW,
        period: int = TOTP_PERIOD,
        digits: int = TOTP_DIGITS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window = window
        self.period = period
        self.digits = digits
        self._clock = clock

    def generate_secret(self, length: int = TOTP_SECRET_BYTES) -> str:
        return base32_encode(secrets.token_bytes(length))

    def counter(self, timestamp: Optional[float] = None) -> int:
        now = self._clock() if timestamp is None else timestamp
        return int(now // self.period)

    def code_at(self, secret: str, counter: int) -> str:
        """HOTP value for an explicit counter (RFC 4226 dynamic truncation)."""
        key = base32_decode(secret)
        digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
        return str(binary % (10**self.digits)).zfill(self.digits)

    def current_code(self, secret: str) -> str:
        return self.code_at(secret, self.counter())

    def verify(self, secret: str, code: str, *, timestamp: Optional[float] = None) -> bool:
        code = str(code or "")
        if not code or not code.isascii():
            return False
        counter = self.counter(timestamp)
        try:
            for offset in range(-self.window, self.window + 1):
                if counter + offset < 0:
                    continue
                # SECURITY: constant-time comparison
                if hmac.compare_digest(self.code_at(secret, counter + offset), code):
                    return True
        except ValueError:
            logger.warning("totp_secret_invalid")
            return False
        return False

    def qr_provisioning_uri(self, issuer: str, account: str, secret: str) -> str:
        encoded_issuer = quote(issuer, safe="")
        encoded_account = quote(account, safe="")
        return (
            f"otpauth://totp/{encoded_issuer}:{encoded_account}"
            f"?secret={secret}&issuer={encoded_issuer}"
        )

    def generate_recovery_codes(self, count: int = 8) -> List[str]:
        return [secrets.token_hex(RECOVERY_CODE_BYTES) for _ in range(count)]
