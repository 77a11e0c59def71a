from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GenericUser:
    """Reference principal used by the in-memory user store."""

    id: Any
    email: Optional[str] = None
    password: Optional[str] = None
    remember_token: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def get_auth_identifier(self) -> Any:
        return self.id

    def get_auth_password(self) -> Optional[str]:
        return self.password

    def get_remember_token(self) -> Optional[str]:
        return self.remember_token

    def set_remember_token(self, value: str) -> None:
        self.remember_token = value

    def get_email_for_password_reset(self) -> Optional[str]:
        return self.email

    def get_email_for_verification(self) -> Optional[str]:
        return self.email

    def has_verified_email(self) -> bool:
        return self.attributes.get("email_verified_at") is not None

    def get(self, key: str, default: Any = None) -> Any:
        if key in ("id", "email", "password", "remember_token"):
            return getattr(self, key)
        return self.attributes.get(key, default)


@dataclass
class PasswordResetRecord:
    email: str
    token_hash: str
    created_at: float  # unix timestamp


@dataclass
class TwoFactorRecord:
    user_id: str
    secret: str  # encrypted
    recovery_codes: Optional[str] = None  # encrypted JSON list
    confirmed: bool = False
    confirmed_at: Optional[datetime] = None


@dataclass
class Cookie:
    """A ``Set-Cookie`` instruction queued by a guard for the response."""

    name: str
    value: str
    max_age: int = 0
    path: str = "/"
    secure: bool = True
    http_only: bool = True
    same_site: Optional[str] = "Lax"

    @classmethod
    def expired(cls, name: str, **kwargs: Any) -> "Cookie":
        return cls(name=name, value="", max_age=0, **kwargs)

    @property
    def is_expired(self) -> bool:
        return self.max_age <= 0

    def to_header(self) -> str:
        parts = [f"{self.name}={quote(self.value, safe='')}", f"Max-Age={self.max_age}"]
        if self.path:
            parts.append(f"Path={self.path}")
        if self.secure:
            parts.append("Secure")
        if self.http_only:
            parts.append("HttpOnly")
        if self.same_site:
            parts.append(f"SameSite={self.same_site}")
        return "; ".join(parts)
