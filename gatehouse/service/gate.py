"""Ability and policy based authorization.

A :class:`GateRegistry` is filled once at boot with abilities, policies and
before/after interceptors. Each request binds it to the current principal with
:class:`Gate`; binding is cheap because the registry is shared, never copied.

Resolution order for ``Gate.check(ability, arguments)``:

1. before-callbacks, in order; the first non-``None`` answer decides and skips
   step 2.
2. the ability callback if one is defined, otherwise the policy registered for
   the type of ``arguments[0]`` (its optional ``before`` hook first, then the
   method named after the ability).
3. after-callbacks, in order, with the result so far; the first non-``None``
   answer replaces it. This also applies to decisions made in step 1.

Anything still undecided is a denial.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from gatehouse.logging import get_logger
from gatehouse.service.errors import AuthorizationDenied

logger = get_logger(__name__)

AbilityCallback = Callable[..., Any]
BeforeCallback = Callable[[Any, str, List[Any]], Any]
AfterCallback = Callable[[Any, str, List[Any], Optional[bool]], Any]


@dataclass(frozen=True)
class AuthResponse:
    allowed: bool
    message: Optional[str] = None
    code: Optional[int] = None

    @classmethod
    def allow(cls, message: Optional[str] = None) -> "AuthResponse":
        return cls(True, message)

    @classmethod
    def deny(cls, message: Optional[str] = None, code: Optional[int] = None) -> "AuthResponse":
        return cls(False, message, code)

    @property
    def denied(self) -> bool:
        return not self.allowed

    def authorize(self) -> "AuthResponse":
        if not self.allowed:
            raise AuthorizationDenied(self.message, status_code=self.code)
        return self


def _normalize_arguments(arguments: Any) -> List[Any]:
    if arguments is None:
        return []
    if isinstance(arguments, (list, tuple)):
        return list(arguments)
    return [arguments]


def _decision(result: Any) -> Optional[AuthResponse]:
    """Interpret an interceptor answer; ``None`` means "no opinion"."""
    if result is None:
        return None
    if isinstance(result, AuthResponse):
        return result
    return AuthResponse(result is True)


def _strict(result: Any) -> AuthResponse:
    if isinstance(result, AuthResponse):
        return result
    return AuthResponse(result is True)


class GateRegistry:
    """Process-wide authorization tables, populated before the first check."""

    def __init__(self) -> None:
        self.abilities: Dict[str, AbilityCallback] = {}
        self.policies: Dict[type, Any] = {}
        self.before_callbacks: List[BeforeCallback] = []
        self.after_callbacks: List[AfterCallback] = []
        self._policy_lock = threading.Lock()

    def define(self, ability: str, callback: AbilityCallback) -> "GateRegistry":
        self.abilities[ability] = callback
        return self

    def policy(self, subject: type, policy: Any) -> "GateRegistry":
        """Register ``policy`` (an instance, or a class built on first use)."""
        self.policies[subject] = policy
        return self

    def before(self, callback: BeforeCallback) -> "GateRegistry":
        self.before_callbacks.append(callback)
        return self

    def after(self, callback: AfterCallback) -> "GateRegistry":
        self.after_callbacks.append(callback)
        return self

    def has(self, ability: str) -> bool:
        return ability in self.abilities

    def get_policy_for(self, subject: Any) -> Optional[Any]:
        subject_type = subject if isinstance(subject, type) else type(subject)
        for klass in subject_type.__mro__:
            if klass in self.policies:
                return self._resolve_policy(klass)
        return None

    def _resolve_policy(self, klass: type) -> Any:
        policy = self.policies[klass]
        if not isinstance(policy, type):
            return policy
        with self._policy_lock:
            current = self.policies[klass]
            if isinstance(current, type):
                current = current()
                self.policies[klass] = current
            return current

    def for_user(self, user: Any) -> "Gate":
        return Gate(self, user)


class Gate:
    """Authorization decisions for one principal (or ``None`` for guests)."""

    def __init__(self, registry: GateRegistry, user: Any = None) -> None:
        self.registry = registry
        self.user = user

    def get_user(self) -> Any:
        return self.user

    def for_user(self, user: Any) -> "Gate":
        return Gate(self.registry, user)

    def check(self, ability: str, arguments: Any = None) -> bool:
        return self.inspect(ability, arguments).allowed

    def allows(self, ability: str, arguments: Any = None) -> bool:
        return self.check(ability, arguments)

    def denies(self, ability: str, arguments: Any = None) -> bool:
        return not self.check(ability, arguments)

    def any(self, abilities: Iterable[str], arguments: Any = None) -> bool:
        return any(self.check(ability, arguments) for ability in abilities)

    def none(self, abilities: Iterable[str], arguments: Any = None) -> bool:
        return not self.any(abilities, arguments)

    def authorize(self, ability: str, arguments: Any = None) -> AuthResponse:
        response = self.inspect(ability, arguments)
        if response.allowed:
            return response
        logger.info(
            "authorization_denied",
            ability=ability,
            user_id=self._user_id(),
        )
        raise AuthorizationDenied(
            response.message, ability=ability, status_code=response.code
        )

    def inspect(self, ability: str, arguments: Any = None) -> AuthResponse:
        args = _normalize_arguments(arguments)

        result = self._call_before_callbacks(ability, args)
        if result is None:
            if self.registry.has(ability):
                result = self._call_ability(ability, args)
            else:
                result = self._call_policy_method(ability, args)

        result = self._call_after_callbacks(ability, args, result)
        return result if result is not None else AuthResponse.deny()

    def _user_id(self) -> Optional[str]:
        if self.user is None or not hasattr(self.user, "get_auth_identifier"):
            return None
        return str(self.user.get_auth_identifier())

    def _call_before_callbacks(
        self, ability: str, arguments: List[Any]
    ) -> Optional[AuthResponse]:
        for callback in self.registry.before_callbacks:
            decision = _decision(callback(self.user, ability, arguments))
            if decision is not None:
                return decision
        return None

    def _call_after_callbacks(
        self, ability: str, arguments: List[Any], result: Optional[AuthResponse]
    ) -> Optional[AuthResponse]:
        so_far = None if result is None else result.allowed
        for callback in self.registry.after_callbacks:
            decision = _decision(callback(self.user, ability, arguments, so_far))
            if decision is not None:
                return decision
        return result

    def _call_ability(self, ability: str, arguments: Sequence[Any]) -> AuthResponse:
        callback = self.registry.abilities[ability]
        return _strict(callback(self.user, *arguments))

    def _call_policy_method(
        self, ability: str, arguments: Sequence[Any]
    ) -> Optional[AuthResponse]:
        if not arguments:
            return None
        policy = self.registry.get_policy_for(arguments[0])
        if policy is None:
            return None

        before = getattr(policy, "before", None)
        if callable(before):
            decision = _decision(before(self.user, ability))
            if decision is not None:
                return decision

        method = self._policy_method(policy, ability)
        if method is None:
            return None
        return _strict(method(self.user, *arguments))

    @staticmethod
    def _policy_method(policy: Any, ability: str) -> Optional[Callable[..., Any]]:
        if ability == "before" or ability.startswith("_"):
            return None
        for name in (ability, ability.replace("-", "_").replace(".", "_")):
            method = getattr(policy, name, None)
            if callable(method):
                return method
        return None
