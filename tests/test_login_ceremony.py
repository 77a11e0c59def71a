"""Tests for the login ceremony: throttling, 2FA challenge, password confirmation."""

import pytest

from gatehouse.service.errors import AuthenticationError, ConfigurationError, RateLimitedError
from gatehouse.service.guard import SessionGuard, TokenGuard
from gatehouse.service.login import (
    PASSWORD_CONFIRMED_KEY,
    TWO_FACTOR_ID_KEY,
    LoginCeremony,
    LoginStatus,
)
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.totp import TOTPProvider
from gatehouse.service.two_factor import TwoFactorAuthenticator
from gatehouse.storage.memory import MemoryTwoFactorStore

GOOD = {"email": "alice@example.com", "password": "correct horse"}
BAD = {"email": "Alice@Example.com", "password": "nope"}


@pytest.fixture
def guard(users, session, cookies):
    return SessionGuard("web", users, session, cookies)


@pytest.fixture
def limiter(cache, clock):
    return RateLimiter(cache, clock=clock)


@pytest.fixture
def totp(clock):
    return TOTPProvider(clock=clock)


@pytest.fixture
def two_factor(totp):
    return TwoFactorAuthenticator(totp, MemoryTwoFactorStore(), "unit-test-key")


@pytest.fixture
def ceremony(guard, limiter, two_factor, clock):
    return LoginCeremony(
        guard, limiter, two_factor, max_attempts=3, decay_seconds=60, clock=clock
    )


def enroll(two_factor, totp, user):
    secret, _ = two_factor.begin_enrollment(user, "alice@example.com")
    codes = two_factor.confirm_enrollment(user, totp.current_code(secret))
    return secret, codes


class TestAttempt:
    def test_successful_login(self, ceremony, guard, alice):
        outcome = ceremony.attempt(GOOD, ip="10.0.0.1")
        assert outcome.status is LoginStatus.AUTHENTICATED
        assert outcome.authenticated
        assert outcome.user is alice
        assert guard.user() is alice
        assert outcome.raise_for_status() is outcome

    def test_failure_counts_against_key(self, ceremony, limiter, alice):
        outcome = ceremony.attempt(BAD, ip="10.0.0.1")
        assert outcome.status is LoginStatus.FAILED
        assert limiter.attempts("alice@example.com|10.0.0.1") == 1
        with pytest.raises(AuthenticationError):
            outcome.raise_for_status()

    def test_lockout_after_max_attempts(self, ceremony, guard, alice, clock):
        for _ in range(3):
            ceremony.attempt(BAD, ip="10.0.0.1")
        outcome = ceremony.attempt(GOOD, ip="10.0.0.1")
        assert outcome.status is LoginStatus.LOCKED_OUT
        assert outcome.retry_after == 60
        assert guard.guest()
        with pytest.raises(RateLimitedError) as excinfo:
            outcome.raise_for_status()
        assert excinfo.value.retry_after == 60
        assert excinfo.value.status_code == 429

        clock.advance(60)
        assert ceremony.attempt(GOOD, ip="10.0.0.1").authenticated

    def test_lockout_is_per_ip(self, ceremony, alice):
        for _ in range(3):
            ceremony.attempt(BAD, ip="10.0.0.1")
        assert ceremony.attempt(GOOD, ip="10.0.0.2").authenticated

    def test_success_clears_failures(self, ceremony, limiter, alice):
        ceremony.attempt(BAD, ip="1.1.1.1")
        ceremony.attempt(GOOD, ip="1.1.1.1")
        assert limiter.attempts("alice@example.com|1.1.1.1") == 0

    def test_remember_is_forwarded(self, ceremony, cookies, alice):
        ceremony.attempt(GOOD, remember=True)
        assert "remember_token" in cookies.queued


class TestTwoFactorChallenge:
    def test_enrolled_user_is_parked(self, ceremony, guard, session, two_factor, totp, alice):
        enroll(two_factor, totp, alice)
        outcome = ceremony.attempt(GOOD, remember=True)
        assert outcome.status is LoginStatus.TWO_FACTOR_REQUIRED
        assert guard.guest()
        assert session.get(TWO_FACTOR_ID_KEY) == 1
        assert ceremony.pending_two_factor_user() is alice

    def test_complete_with_totp(self, ceremony, guard, session, cookies, two_factor, totp, alice):
        secret, _ = enroll(two_factor, totp, alice)
        ceremony.attempt(GOOD, remember=True)
        outcome = ceremony.complete_two_factor(code=totp.current_code(secret))
        assert outcome.authenticated
        assert guard.user() is alice
        assert session.get(TWO_FACTOR_ID_KEY) is None
        assert "remember_token" in cookies.queued

    def test_complete_with_recovery_code(self, ceremony, guard, two_factor, totp, alice):
        _, codes = enroll(two_factor, totp, alice)
        ceremony.attempt(GOOD)
        outcome = ceremony.complete_two_factor(recovery_code=codes[1])
        assert outcome.authenticated
        assert outcome.recovery_code_used
        assert codes[1] not in two_factor.recovery_codes(alice)

    def test_wrong_code_is_throttled(self, ceremony, guard, two_factor, totp, alice):
        secret, _ = enroll(two_factor, totp, alice)
        ceremony.attempt(GOOD)
        counter = totp.counter()
        valid = {totp.code_at(secret, counter + i) for i in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)
        for _ in range(3):
            assert ceremony.complete_two_factor(code=wrong).status is LoginStatus.FAILED
        locked = ceremony.complete_two_factor(code=totp.current_code(secret))
        assert locked.status is LoginStatus.LOCKED_OUT
        assert guard.guest()

    def test_complete_without_pending_login(self, ceremony):
        assert ceremony.complete_two_factor(code="123456").status is LoginStatus.FAILED

    def test_complete_requires_two_factor(self, guard, limiter):
        with pytest.raises(ConfigurationError):
            LoginCeremony(guard, limiter).complete_two_factor(code="1")


class TestPasswordConfirmation:
    def test_confirm_and_expire(self, ceremony, guard, session, alice, clock):
        guard.login(alice)
        assert not ceremony.password_recently_confirmed()
        assert not ceremony.confirm_password("wrong")
        assert ceremony.confirm_password("correct horse")
        assert session.get(PASSWORD_CONFIRMED_KEY) == int(clock())
        clock.advance(3 * 60 * 60)
        assert ceremony.password_recently_confirmed()
        clock.advance(1)
        assert not ceremony.password_recently_confirmed()

    def test_guest_cannot_confirm(self, ceremony):
        assert not ceremony.confirm_password("correct horse")

    def test_token_guard_has_no_session(self, users, limiter, alice):
        ceremony = LoginCeremony(TokenGuard("api", users, None), limiter)
        with pytest.raises(ConfigurationError):
            ceremony.password_recently_confirmed()
