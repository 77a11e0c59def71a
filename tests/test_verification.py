"""Tests for email verification links and the verified-email requirement."""

import hashlib
import hmac

import pytest

from gatehouse.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    ServiceError,
)
from gatehouse.service.runtime import get_runtime
from gatehouse.service.verification import EmailVerifier, VerificationStatus
from gatehouse.storage.memory import MemorySession
from gatehouse.storage.models import GenericUser

KEY = "verification-test-key"


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_verification_link(self, email, identifier, digest):
        self.sent.append((email, identifier, digest))


class ReadOnlyProvider:
    def retrieve_by_id(self, identifier):
        return None


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def verifier(users, notifier, clock):
    return EmailVerifier(users, KEY, notifier, clock=clock)


class TestVerificationHash:
    def test_keyed_digest_of_normalized_email(self, verifier, alice):
        expected = hmac.new(KEY.encode(), b"alice@example.com", hashlib.sha256).hexdigest()
        assert verifier.verification_hash(alice) == expected
        alice.email = " Alice@Example.COM "
        assert verifier.verification_hash(alice) == expected

    def test_digest_depends_on_key(self, users, alice):
        other = EmailVerifier(users, "another-key")
        assert other.verification_hash(alice) != EmailVerifier(users, KEY).verification_hash(alice)
        assert other.verification_hash(alice) != hashlib.sha1(b"alice@example.com").hexdigest()

    def test_principal_without_email(self, verifier):
        with pytest.raises(ServiceError):
            verifier.verification_hash(GenericUser(id=9))

    def test_key_required(self, users):
        with pytest.raises(ConfigurationError):
            EmailVerifier(users, "")


class TestVerify:
    def test_valid_link_marks_verified(self, verifier, alice, users):
        assert not verifier.has_verified_email(alice)
        status = verifier.verify(alice, "1", verifier.verification_hash(alice))
        assert status is VerificationStatus.VERIFIED
        assert verifier.has_verified_email(alice)
        assert alice.attributes["email_verified_at"] == "2023-11-14T22:13:20+00:00"
        assert users.retrieve_by_id(1).has_verified_email()

    def test_second_visit_is_already_verified(self, verifier, alice):
        digest = verifier.verification_hash(alice)
        verifier.verify(alice, 1, digest)
        assert verifier.verify(alice, 1, digest) is VerificationStatus.ALREADY_VERIFIED

    def test_identifier_must_match_current_user(self, verifier, alice, users):
        bob = users.create_user("bob@example.com", "pw", user_id=2)
        status = verifier.verify(alice, "2", verifier.verification_hash(bob))
        assert status is VerificationStatus.INVALID_LINK
        assert not alice.has_verified_email()

    @pytest.mark.parametrize("digest", [None, "", "0" * 64, "not-hex"])
    def test_bad_digest(self, verifier, alice, digest):
        assert verifier.verify(alice, "1", digest) is VerificationStatus.INVALID_LINK
        assert not alice.has_verified_email()

    def test_link_for_old_address_is_rejected(self, verifier, alice):
        digest = verifier.verification_hash(alice)
        alice.email = "alice@new.example.com"
        assert verifier.verify(alice, "1", digest) is VerificationStatus.INVALID_LINK

    def test_guest_cannot_verify(self, verifier):
        with pytest.raises(AuthenticationError):
            verifier.verify(None, "1", "x")

    def test_provider_without_capability(self, alice):
        verifier = EmailVerifier(ReadOnlyProvider(), KEY)
        with pytest.raises(ConfigurationError):
            verifier.verify(alice, "1", verifier.verification_hash(alice))


class TestResend:
    def test_sends_link_to_notifier(self, verifier, alice, notifier):
        assert verifier.resend(alice)
        (email, identifier, digest), = notifier.sent
        assert email == "alice@example.com"
        assert identifier == "1"
        assert verifier.verify(alice, identifier, digest) is VerificationStatus.VERIFIED

    def test_verified_user_gets_nothing(self, verifier, alice, notifier):
        verifier.mark_email_as_verified(alice)
        assert not verifier.resend(alice)
        assert notifier.sent == []

    def test_mark_twice(self, verifier, alice):
        assert verifier.mark_email_as_verified(alice)
        assert not verifier.mark_email_as_verified(alice)


class TestEnsureVerified:
    def test_unverified_user_is_forbidden(self, verifier, alice):
        with pytest.raises(ForbiddenError) as excinfo:
            verifier.ensure_verified(alice)
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "email_unverified"
        assert excinfo.value.message == "Your email address is not verified."

    def test_guest_is_forbidden(self, verifier):
        with pytest.raises(ForbiddenError):
            verifier.ensure_verified(None)

    def test_principal_without_capability(self, verifier):
        class Plain:
            def get_auth_identifier(self):
                return 7

        with pytest.raises(ForbiddenError):
            verifier.ensure_verified(Plain())

    def test_verified_user_passes(self, verifier, alice):
        verifier.mark_email_as_verified(alice)
        assert verifier.ensure_verified(alice) is alice


class TestRuntimeWiring:
    def test_request_user_verification(self):
        runtime = get_runtime()
        carol = runtime.users.create_user("carol@example.com", "pw", user_id=3)
        request = runtime.auth.for_request(session=MemorySession({"auth_id": 3}))
        user = request.user()
        assert user is carol

        digest = runtime.verification.verification_hash(user)
        assert runtime.verification.verify(user, "3", digest) is VerificationStatus.VERIFIED
        assert runtime.verification.ensure_verified(request.user()) is carol
