from __future__ import annotations

import hmac
import secrets
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    Cookie,
    GenericUser,
    PasswordResetRecord,
    TwoFactorRecord,
)

_MISSING = object()


def _is_password_field(key: str) -> bool:
    return "password" in key


def _secure_equals(left: Any, right: Any) -> bool:
    return hmac.compare_digest(str(left).encode("utf-8"), str(right).encode("utf-8"))


class MemoryCache:
    """Process-local key/value cache with per-key expiry.

    All operations hold one lock, so ``add`` and ``increment`` are atomic with
    respect to other threads sharing the instance. Expired keys are dropped
    lazily when touched.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._items: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Any:
        item = self._items.get(key)
        if item is None:
            return _MISSING
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._items[key]
            return _MISSING
        return value

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        if ttl is None:
            return None
        return self._clock() + max(0, ttl)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self._live(key)
            return default if value is _MISSING else value

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not _MISSING

    def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            if ttl is not None and ttl <= 0:
                self._items.pop(key, None)
                return
            self._items[key] = (value, self._expiry(ttl))

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if ttl is not None and ttl <= 0:
            return False
        with self._lock:
            if self._live(key) is not _MISSING:
                return False
            self.put(key, value, ttl)
            return True

    def increment(self, key: str, amount: int = 1) -> int:
        with self._lock:
            current = self._live(key)
            if current is _MISSING:
                self._items[key] = (amount, None)
                return amount
            _, expires_at = self._items[key]
            updated = int(current) + amount
            self._items[key] = (updated, expires_at)
            return updated

    def forget(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def flush(self) -> None:
        with self._lock:
            self._items.clear()


class MemoryUserStore:
    """In-memory user provider keyed by the string form of the identifier."""

    def __init__(self, hasher: Any) -> None:
        self.logger = get_logger(__name__)
        self.hasher = hasher
        self.users: Dict[str, GenericUser] = {}
        self._data_lock = threading.RLock()
        self._dummy_hash: Optional[str] = None

    def dummy_hash(self) -> str:
        """A hash of a random value, verified when no user matched a login."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.make(secrets.token_hex(16))
        return self._dummy_hash

    def create_user(
        self,
        email: str,
        password: Optional[str] = None,
        *,
        user_id: Any = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> GenericUser:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(
                (existing.email or "").lower() == normalized
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", field="email")
            identifier = user_id if user_id is not None else str(uuid.uuid4())
            if str(identifier) in self.users:
                raise ConstraintViolation("user id already exists", field="id")
            user = GenericUser(
                id=identifier,
                email=email,
                password=self.hasher.make(password) if password else None,
                attributes=dict(attributes or {}),
            )
            self.users[str(identifier)] = user
            return user

    def retrieve_by_id(self, identifier: Any) -> Optional[GenericUser]:
        if identifier is None:
            return None
        with self._data_lock:
            return self.users.get(str(identifier))

    def retrieve_by_token(self, identifier: Any, token: str) -> Optional[GenericUser]:
        user = self.retrieve_by_id(identifier)
        if not user or not user.remember_token or not token:
            return None
        if not _secure_equals(user.remember_token, token):
            return None
        return user

    def retrieve_by_credentials(
        self, credentials: Mapping[str, Any]
    ) -> Optional[GenericUser]:
        predicate = {
            key: value
            for key, value in credentials.items()
            if not _is_password_field(key)
        }
        if not predicate:
            return None
        with self._data_lock:
            for user in self.users.values():
                if all(
                    self._field_matches(user, key, value)
                    for key, value in predicate.items()
                ):
                    return user
        return None

    @staticmethod
    def _field_matches(user: GenericUser, key: str, expected: Any) -> bool:
        actual = user.get(key)
        if actual is None or expected is None:
            return False
        if key == "email":
            return str(actual).lower() == str(expected).strip().lower()
        return _secure_equals(actual, expected)

    def validate_credentials(
        self, user: GenericUser, credentials: Mapping[str, Any]
    ) -> bool:
        plain = credentials.get("password")
        if plain is None:
            return False
        return self.hasher.check(str(plain), user.get_auth_password())

    def update_remember_token(self, user: GenericUser, token: str) -> None:
        with self._data_lock:
            stored = self.users.get(str(user.get_auth_identifier()))
            if stored is not None:
                stored.set_remember_token(token)
        user.set_remember_token(token)

    def rehash_password_if_required(
        self, user: GenericUser, credentials: Mapping[str, Any], force: bool = False
    ) -> None:
        current = user.get_auth_password()
        if not current or not (force or self.hasher.needs_rehash(current)):
            return
        self.update_password(user, str(credentials["password"]))
        self.logger.info("password_rehashed", user_id=str(user.get_auth_identifier()))

    def update_password(self, user: GenericUser, new_password: str) -> None:
        hashed = self.hasher.make(new_password)
        with self._data_lock:
            stored = self.users.get(str(user.get_auth_identifier()))
            if stored is not None:
                stored.password = hashed
        user.password = hashed

    def set_attribute(self, user: GenericUser, key: str, value: Any) -> None:
        with self._data_lock:
            stored = self.users.get(str(user.get_auth_identifier()))
            if stored is not None:
                stored.attributes[key] = value
        user.attributes[key] = value

    def mark_email_as_verified(self, user: GenericUser, verified_at: str) -> bool:
        if user.has_verified_email():
            return False
        self.set_attribute(user, "email_verified_at", verified_at)
        self.logger.info("email_marked_verified", user_id=str(user.get_auth_identifier()))
        return True


class MemorySession:
    """Dictionary-backed session with id regeneration."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._id = self._new_id()
        self._data: Dict[str, Any] = dict(data or {})

    @staticmethod
    def _new_id() -> str:
        return secrets.token_urlsafe(32)

    @property
    def id(self) -> str:
        return self._id

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def has(self, key: str) -> bool:
        return key in self._data

    def pull(self, key: str, default: Any = None) -> Any:
        return self._data.pop(key, default)

    def forget(self, key: str) -> None:
        self._data.pop(key, None)

    def regenerate(self, destroy: bool = False) -> str:
        if destroy:
            self._data.clear()
        self._id = self._new_id()
        return self._id

    def invalidate(self) -> str:
        return self.regenerate(destroy=True)

    def all(self) -> Dict[str, Any]:
        return dict(self._data)


class MemoryCookieJar:
    """Request cookies in, queued ``Set-Cookie`` instructions out."""

    def __init__(self, cookies: Optional[Mapping[str, str]] = None) -> None:
        self._incoming: Dict[str, str] = dict(cookies or {})
        self.queued: Dict[str, Cookie] = {}

    def get(self, name: str) -> Optional[str]:
        return self._incoming.get(name)

    def queue(self, cookie: Cookie) -> None:
        self.queued[cookie.name] = cookie

    def forget(self, name: str) -> None:
        self.queue(Cookie.expired(name))

    def headers(self) -> List[str]:
        return [cookie.to_header() for cookie in self.queued.values()]

    def next_request(self) -> "MemoryCookieJar":
        """Cookies a browser would send back after applying the queued ones."""
        incoming = dict(self._incoming)
        for name, cookie in self.queued.items():
            if cookie.is_expired:
                incoming.pop(name, None)
            else:
                incoming[name] = cookie.value
        return MemoryCookieJar(incoming)


class MemoryResetTokenRepository:
    """Password-reset records, at most one per email."""

    def __init__(self) -> None:
        self.records: Dict[str, PasswordResetRecord] = {}
        self._data_lock = threading.RLock()

    def put(self, record: PasswordResetRecord) -> None:
        with self._data_lock:
            self.records[record.email.lower()] = record

    def get(self, email: str) -> Optional[PasswordResetRecord]:
        with self._data_lock:
            return self.records.get(email.lower())

    def forget(self, email: str) -> None:
        with self._data_lock:
            self.records.pop(email.lower(), None)

    def delete_older_than(self, cutoff: float) -> int:
        with self._data_lock:
            expired = [
                key
                for key, record in self.records.items()
                if record.created_at < cutoff
            ]
            for key in expired:
                del self.records[key]
            return len(expired)


class MemoryTwoFactorStore:
    def __init__(self) -> None:
        self.records: Dict[str, TwoFactorRecord] = {}
        self._data_lock = threading.RLock()

    def get(self, user_id: str) -> Optional[TwoFactorRecord]:
        with self._data_lock:
            record = self.records.get(user_id)
            return replace(record) if record else None

    def save(self, record: TwoFactorRecord) -> None:
        with self._data_lock:
            self.records[record.user_id] = replace(record)

    def delete(self, user_id: str) -> bool:
        with self._data_lock:
            return self.records.pop(user_id, None) is not None
