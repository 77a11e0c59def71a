from __future__ import annotations

import re
from typing import Any, Dict, Optional, Protocol

import bcrypt
from argon2 import PasswordHasher, Type, extract_parameters
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from gatehouse.config import (
    BCRYPT_MAX_ROUNDS,
    BCRYPT_MIN_ROUNDS,
    HashDriver,
    Settings,
)
from gatehouse.logging import get_logger
from gatehouse.service.errors import ConfigurationError, HashingFailure, InvalidParameter

logger = get_logger(__name__)

# bcrypt only looks at the first 72 bytes of the input
BCRYPT_MAX_BYTES = 72

_BCRYPT_HASH_RE = re.compile(r"^\$(2[abxy]?)\$(\d{2})\$[./A-Za-z0-9]{53}$")


class Hasher(Protocol):
    def make(self, value: str, **options: Any) -> str: ...

    def check(self, value: str, hashed_value: Optional[str]) -> bool: ...

    def needs_rehash(self, hashed_value: str, **options: Any) -> bool: ...

    def info(self, hashed_value: str) -> Dict[str, Any]: ...


def _unknown_info() -> Dict[str, Any]:
    return {"algo": None, "algo_name": "unknown", "options": {}}


class BcryptHasher:
    """Cost-factor tunable hashing backed by the ``bcrypt`` library."""

    algo_name = "bcrypt"

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = self._validate_rounds(rounds)

    @staticmethod
    def _validate_rounds(rounds: int) -> int:
        if rounds < BCRYPT_MIN_ROUNDS or rounds > BCRYPT_MAX_ROUNDS:
            raise InvalidParameter(
                f"Bcrypt rounds must be between {BCRYPT_MIN_ROUNDS} and {BCRYPT_MAX_ROUNDS}",
                detail={"rounds": rounds},
            )
        return rounds

    @staticmethod
    def _encode(value: str) -> bytes:
        return value.encode("utf-8")[:BCRYPT_MAX_BYTES]

    def make(self, value: str, *, rounds: Optional[int] = None) -> str:
        cost = self._validate_rounds(self.rounds if rounds is None else rounds)
        try:
            digest = bcrypt.hashpw(self._encode(value), bcrypt.gensalt(rounds=cost))
        except ValueError as exc:
            raise HashingFailure("Bcrypt hashing failed") from exc
        return digest.decode("utf-8")

    def check(self, value: str, hashed_value: Optional[str]) -> bool:
        if not hashed_value:
            return False
        try:
            return bcrypt.checkpw(self._encode(value), hashed_value.encode("utf-8"))
        except ValueError:
            # Not a bcrypt hash or a truncated one
            return False

    def needs_rehash(self, hashed_value: str, *, rounds: Optional[int] = None) -> bool:
        cost = self.rounds if rounds is None else rounds
        match = _BCRYPT_HASH_RE.match(hashed_value or "")
        if not match:
            return True
        return int(match.group(2)) != cost

    def info(self, hashed_value: str) -> Dict[str, Any]:
        match = _BCRYPT_HASH_RE.match(hashed_value or "")
        if not match:
            return _unknown_info()
        return {
            "algo": match.group(1),
            "algo_name": self.algo_name,
            "options": {"rounds": int(match.group(2))},
        }


class Argon2Hasher:
    """Memory/time/parallelism tunable hashing (argon2id via ``argon2-cffi``)."""

    algo_name = "argon2id"

    def __init__(self, memory: int = 65536, time: int = 4, threads: int = 1) -> None:
        self.memory = memory
        self.time = time
        self.threads = threads
        self._hasher = self._build(memory=memory, time=time, threads=threads)

    @staticmethod
    def _build(*, memory: int, time: int, threads: int) -> PasswordHasher:
        if time < 1 or threads < 1:
            raise InvalidParameter(
                "Argon2 time and threads must be at least 1",
                detail={"time": time, "threads": threads},
            )
        if memory < 8 * threads:
            raise InvalidParameter(
                "Argon2 memory must be at least 8 KiB per thread",
                detail={"memory": memory, "threads": threads},
            )
        return PasswordHasher(
            time_cost=time, memory_cost=memory, parallelism=threads, type=Type.ID
        )

    def _hasher_for(self, options: Dict[str, Any]) -> PasswordHasher:
        if not options:
            return self._hasher
        return self._build(
            memory=options.get("memory", self.memory),
            time=options.get("time", self.time),
            threads=options.get("threads", self.threads),
        )

    def make(self, value: str, **options: Any) -> str:
        hasher = self._hasher_for(options)
        try:
            return hasher.hash(value)
        except HashingError as exc:
            raise HashingFailure("Argon2 hashing failed") from exc

    def check(self, value: str, hashed_value: Optional[str]) -> bool:
        if not hashed_value:
            return False
        try:
            return self._hasher.verify(hashed_value, value)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hashed_value: str, **options: Any) -> bool:
        hasher = self._hasher_for(options)
        try:
            return hasher.check_needs_rehash(hashed_value)
        except (InvalidHashError, ValueError):
            return True

    def info(self, hashed_value: str) -> Dict[str, Any]:
        try:
            params = extract_parameters(hashed_value)
        except (InvalidHashError, ValueError):
            return _unknown_info()
        return {
            "algo": params.type.name.lower(),
            "algo_name": f"argon2{params.type.name.lower()}",
            "options": {
                "memory": params.memory_cost,
                "time": params.time_cost,
                "threads": params.parallelism,
            },
        }


class HashManager:
    """Resolves the configured hashing strategy and proxies calls to it."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._drivers: Dict[str, Hasher] = {}

    def driver(self, name: Optional[str] = None) -> Hasher:
        name = name or self.default_driver()
        if name not in self._drivers:
            self._drivers[name] = self._create_driver(name)
        return self._drivers[name]

    def default_driver(self) -> str:
        return HashDriver(self.settings.hash_driver).value

    def _create_driver(self, name: str) -> Hasher:
        if name == HashDriver.BCRYPT.value:
            return BcryptHasher(rounds=self.settings.bcrypt_rounds)
        if name == HashDriver.ARGON2.value:
            return Argon2Hasher(
                memory=self.settings.argon2_memory,
                time=self.settings.argon2_time,
                threads=self.settings.argon2_threads,
            )
        logger.error("hash_driver_unsupported", driver=name)
        raise ConfigurationError(f"Hasher driver [{name}] not supported")

    @staticmethod
    def driver_name_for(hashed_value: Optional[str]) -> Optional[str]:
        """The driver that produced ``hashed_value``, judged by its prefix."""
        if not hashed_value:
            return None
        if _BCRYPT_HASH_RE.match(hashed_value):
            return HashDriver.BCRYPT.value
        if hashed_value.startswith("$argon2"):
            return HashDriver.ARGON2.value
        return None

    def make(self, value: str, **options: Any) -> str:
        return self.driver().make(value, **options)

    def check(self, value: str, hashed_value: Optional[str]) -> bool:
        # verify with whichever driver produced the hash
        name = self.driver_name_for(hashed_value) or self.default_driver()
        return self.driver(name).check(value, hashed_value)

    def needs_rehash(self, hashed_value: str, **options: Any) -> bool:
        return self.driver().needs_rehash(hashed_value, **options)

    def info(self, hashed_value: str) -> Dict[str, Any]:
        name = self.driver_name_for(hashed_value) or self.default_driver()
        return self.driver(name).info(hashed_value)
