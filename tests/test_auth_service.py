"""Tests for AuthService, the request gate.

Tests for:
- signup and admin bootstrap
- the authentication order (expiry, block, password, second factor)
- session token validation and request authorization
- logout and forced revocation
- store failures while recording a failed login
"""

import shutil
from datetime import timedelta
from unittest.mock import patch

import pytest

from trustgate.service.errors import (
    AccountBlockedError,
    AccountExpiredError,
    AccountSuspendedReadOnlyError,
    BadCredentialsError,
    ConflictError,
    CredentialStoreError,
    ExpiredTokenError,
    InvalidMfaCodeError,
    InvalidTokenError,
    MalformedTokenError,
    MfaRequiredError,
    NotFoundError,
    RevokedTokenError,
    SessionNotLiveError,
)
from trustgate.service.auth import extract_bearer
from trustgate.storage.errors import StoreUnavailable
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import PrincipalStatus, Role

PASSWORD = "CorrectHorse1!"
ADMIN = frozenset({Role.ADMIN})


@pytest.fixture
def alice(stack):
    return stack.auth.signup("alice", "Alice@Example.com", PASSWORD)


def _enroll(stack, principal):
    setup = stack.auth.setup_mfa(principal.id)
    codes = stack.auth.enable_mfa(
        principal.id, stack.mfa.generate_totp(setup.secret, stack.clock.now.timestamp())
    )
    return setup.secret, codes


class TestSignup:
    """Account creation."""

    def test_signup_sets_defaults(self, stack, alice):
        assert alice.username == "alice"
        assert alice.email == "alice@example.com"
        assert alice.roles == frozenset({Role.USER})
        assert alice.status == PrincipalStatus.ACTIVE
        assert alice.account_expires_at == stack.clock.now + timedelta(days=365)
        assert stack.passwords.verify(alice.id, PASSWORD)

    def test_duplicate_username(self, stack, alice):
        with pytest.raises(ConflictError) as excinfo:
            stack.auth.signup("alice", "other@example.com", PASSWORD)
        assert excinfo.value.message == "Username is already taken"

    def test_duplicate_email(self, stack, alice):
        with pytest.raises(ConflictError) as excinfo:
            stack.auth.signup("alice2", "alice@example.com", PASSWORD)
        assert excinfo.value.message == "Email is already in use"

    def test_bootstrap_admin_is_idempotent(self, stack):
        first = stack.auth.bootstrap_admin("root", "root@example.com", PASSWORD)
        second = stack.auth.bootstrap_admin("root", "root@example.com", PASSWORD)

        assert first.id == second.id
        assert second.is_admin

    def test_bootstrap_promotes_existing_user(self, stack, alice):
        promoted = stack.auth.bootstrap_admin("alice", "alice@example.com", PASSWORD)

        assert promoted.id == alice.id
        assert promoted.roles == frozenset({Role.USER, Role.ADMIN})


class TestAuthenticate:
    """Login order and outcomes."""

    def test_success_opens_session(self, stack, alice):
        result = stack.auth.authenticate("alice", PASSWORD)

        assert result.principal.id == alice.id
        assert stack.sessions.is_live(result.token)
        ctx = stack.auth.validate_session_token(result.token)
        assert ctx.principal_id == alice.id
        assert result.expires_at == stack.clock.now + timedelta(minutes=1440)

    def test_unknown_user_burns_a_verification(self, stack):
        with patch.object(stack.passwords, "burn_verification") as burn:
            with pytest.raises(BadCredentialsError) as excinfo:
                stack.auth.authenticate("ghost", PASSWORD)
        burn.assert_called_once_with(PASSWORD)
        assert excinfo.value.message == "Invalid username or password"

    def test_wrong_password_counts_failure(self, stack, alice):
        with pytest.raises(BadCredentialsError):
            stack.auth.authenticate("alice", "wrong-password")

        assert stack.store.find_by_id(alice.id).failed_attempts == 1

    def test_fifth_wrong_password_blocks(self, stack, alice):
        for _ in range(4):
            with pytest.raises(BadCredentialsError):
                stack.auth.authenticate("alice", "wrong-password")

        with pytest.raises(AccountBlockedError):
            stack.auth.authenticate("alice", "wrong-password")

        with pytest.raises(AccountBlockedError):
            stack.auth.authenticate("alice", PASSWORD)

    def test_blocked_check_precedes_password(self, stack, alice):
        stack.auth.admin_set_status(ADMIN, alice.id, PrincipalStatus.BLOCKED, "abuse")

        with patch.object(stack.passwords, "verify") as verify:
            with pytest.raises(AccountBlockedError):
                stack.auth.authenticate("alice", PASSWORD)
        verify.assert_not_called()
        assert stack.store.find_by_id(alice.id).failed_attempts == 0

    def test_expired_check_precedes_block(self, stack, alice):
        stack.auth.admin_set_status(ADMIN, alice.id, PrincipalStatus.BLOCKED)
        stack.clock.advance(days=366)

        with pytest.raises(AccountExpiredError):
            stack.auth.authenticate("alice", PASSWORD)

    def test_success_clears_failures(self, stack, alice):
        with pytest.raises(BadCredentialsError):
            stack.auth.authenticate("alice", "wrong-password")

        stack.auth.authenticate("alice", PASSWORD)

        assert stack.store.find_by_id(alice.id).failed_attempts == 0

    def test_second_login_revokes_first_session(self, stack, alice):
        first = stack.auth.authenticate("alice", PASSWORD)
        second = stack.auth.authenticate("alice", PASSWORD)

        with pytest.raises(RevokedTokenError):
            stack.auth.validate_session_token(first.token)
        assert stack.auth.validate_session_token(second.token).principal_id == alice.id

    def test_store_failure_while_recording_is_not_swallowed(self, stack, alice):
        with patch.object(stack.store, "save", side_effect=StoreUnavailable("disk gone")):
            with pytest.raises(CredentialStoreError) as excinfo:
                stack.auth.authenticate("alice", "wrong-password")
        assert excinfo.value.status_code == 503


class TestStoreFailureDuringLogin:
    """A broken state directory while failures are being recorded."""

    @pytest.fixture
    def store(self, tmp_path):
        return MemoryStore(
            fs_root=str(tmp_path), mfa_encryption_key="login-store-key-0123456789abcdef", persist=True
        )

    @staticmethod
    def _break_disk(tmp_path):
        shutil.rmtree(tmp_path / "state")
        (tmp_path / "state").write_text("not a directory")

    def test_unwritable_store_is_a_503_and_counts_nothing(self, stack, alice, tmp_path):
        self._break_disk(tmp_path)

        with pytest.raises(CredentialStoreError):
            stack.auth.authenticate("alice", "wrong-password")

        assert stack.store.find_by_id(alice.id).failed_attempts == 0

    def test_threshold_failure_is_not_half_applied(self, stack, alice, tmp_path):
        stack.auth.authenticate("alice", PASSWORD)
        for _ in range(4):
            with pytest.raises(BadCredentialsError):
                stack.auth.authenticate("alice", "wrong-password")
        self._break_disk(tmp_path)

        with pytest.raises(CredentialStoreError):
            stack.auth.authenticate("alice", "wrong-password")

        current = stack.store.find_by_id(alice.id)
        assert current.status == PrincipalStatus.ACTIVE
        assert current.failed_attempts == 4
        assert stack.store.get_session_for_principal(alice.id) is not None

        (tmp_path / "state").unlink()
        with pytest.raises(AccountBlockedError):
            stack.auth.authenticate("alice", "wrong-password")
        assert stack.store.find_by_id(alice.id).status == PrincipalStatus.BLOCKED
        assert stack.store.get_session_for_principal(alice.id) is None


class TestAuthenticateWithMfa:
    """Second-factor step of the login."""

    def test_missing_code_does_not_count(self, stack, alice):
        _enroll(stack, alice)

        with pytest.raises(MfaRequiredError):
            stack.auth.authenticate("alice", PASSWORD)
        assert stack.store.find_by_id(alice.id).failed_attempts == 0

    def test_valid_totp(self, stack, alice):
        secret, _ = _enroll(stack, alice)
        code = stack.mfa.generate_totp(secret, stack.clock.now.timestamp())

        result = stack.auth.authenticate("alice", PASSWORD, code)

        assert stack.sessions.is_live(result.token)

    def test_recovery_code_in_place_of_totp(self, stack, alice):
        _, codes = _enroll(stack, alice)

        stack.auth.authenticate("alice", PASSWORD, codes[0])

        with pytest.raises(InvalidMfaCodeError):
            stack.auth.authenticate("alice", PASSWORD, codes[0])

    def test_malformed_code_is_not_counted_by_default(self, stack, alice):
        _enroll(stack, alice)

        with pytest.raises(InvalidMfaCodeError):
            stack.auth.authenticate("alice", PASSWORD, "abc")
        assert stack.store.find_by_id(alice.id).failed_attempts == 0

    def test_malformed_code_counts_when_configured(self, stack, alice):
        _enroll(stack, alice)
        stack.auth.settings = stack.settings.model_copy(
            update={"count_malformed_mfa_as_failure": True}
        )

        with pytest.raises(InvalidMfaCodeError):
            stack.auth.authenticate("alice", PASSWORD, "abc")
        assert stack.store.find_by_id(alice.id).failed_attempts == 1

    def test_require_mfa(self, stack, alice):
        stack.auth.require_mfa("alice", None)
        secret, _ = _enroll(stack, alice)

        with pytest.raises(InvalidMfaCodeError):
            stack.auth.require_mfa("alice", None)
        stack.auth.require_mfa("alice", stack.mfa.generate_totp(secret, stack.clock.now.timestamp()))

    def test_mfa_status_and_disable(self, stack, alice):
        secret, _ = _enroll(stack, alice)
        assert stack.auth.mfa_status(alice.id)["enabled"] is True

        stack.auth.disable_mfa(alice.id, stack.mfa.generate_totp(secret, stack.clock.now.timestamp()))

        assert stack.auth.mfa_status(alice.id)["enabled"] is False
        assert stack.auth.authenticate("alice", PASSWORD).principal.id == alice.id


class TestVerifiedIdentity:
    """Sign-in from an externally verified email."""

    def test_registered_email_signs_in(self, stack, alice):
        result = stack.auth.sign_in_with_verified_identity("alice@example.com")

        assert stack.sessions.is_live(result.token)

    def test_unregistered_email(self, stack):
        with pytest.raises(NotFoundError) as excinfo:
            stack.auth.sign_in_with_verified_identity("nobody@example.com")
        assert excinfo.value.message == "User not registered"

    def test_blocked_principal_is_refused(self, stack, alice):
        stack.auth.admin_set_status(ADMIN, alice.id, PrincipalStatus.BLOCKED)

        with pytest.raises(AccountBlockedError):
            stack.auth.sign_in_with_verified_identity("alice@example.com")


class TestAuthorize:
    """Bearer header to AuthContext."""

    def test_extract_bearer(self):
        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("bearer abc ") == "abc"
        assert extract_bearer("Basic abc") is None
        assert extract_bearer("Bearer ") is None
        assert extract_bearer(None) is None

    def test_missing_header(self, stack):
        with pytest.raises(MalformedTokenError):
            stack.auth.authorize(None, "GET")

    def test_valid_session(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)

        ctx = stack.auth.authorize(f"Bearer {login.token}", "POST")

        assert ctx.username == "alice"
        assert not ctx.is_admin

    def test_suspended_is_read_only(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)
        stack.auth.admin_set_status(ADMIN, alice.id, PrincipalStatus.SUSPENDED)

        assert stack.auth.authorize(f"Bearer {login.token}", "GET").status == PrincipalStatus.SUSPENDED
        with pytest.raises(AccountSuspendedReadOnlyError):
            stack.auth.authorize(f"Bearer {login.token}", "DELETE")

    def test_blocked_session_is_dead(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)
        stack.auth.admin_set_status(ADMIN, alice.id, PrincipalStatus.BLOCKED)

        with pytest.raises(InvalidTokenError):
            stack.auth.authorize(f"Bearer {login.token}", "GET")

    def test_expired_account_is_refused(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)
        stack.store.save(alice.id, account_expires_at=stack.clock.now - timedelta(seconds=1))

        with pytest.raises(AccountExpiredError):
            stack.auth.authorize(f"Bearer {login.token}", "GET")

    def test_expired_token(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)
        stack.clock.advance(minutes=1440)

        with pytest.raises(ExpiredTokenError):
            stack.auth.authorize(f"Bearer {login.token}", "GET")

    def test_signed_token_without_session_row(self, stack, alice):
        token = stack.signer.issue("alice", {"userId": alice.id}, timedelta(minutes=5))

        with pytest.raises(SessionNotLiveError):
            stack.auth.validate_session_token(token)


class TestLogout:
    """Logout revokes the token."""

    def test_logout_revokes(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)

        stack.auth.logout(login.token)

        assert stack.ledger.is_revoked(login.token)
        assert stack.sessions.get_for_principal(alice.id) is None
        with pytest.raises(RevokedTokenError):
            stack.auth.validate_session_token(login.token)

    def test_logout_twice_fails(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)
        stack.auth.logout(login.token)

        with pytest.raises(InvalidTokenError):
            stack.auth.logout(login.token)


class TestRateLimitGate:
    """Admission at the gate."""

    def test_default_class_limit(self, stack):
        stack.auth.update_rate_limits(max_requests=2)

        results = [stack.auth.request_is_allowed("1.1.1.1", "/v1/orders", "GET") for _ in range(3)]

        assert results == [True, True, False]

    def test_auth_paths_use_public_limit(self, stack):
        stack.auth.update_rate_limits(max_requests=1, public_max_requests=3)

        results = [
            stack.auth.request_is_allowed("1.1.1.1", "/v1/auth/signin", "POST") for _ in range(4)
        ]

        assert results == [True, True, True, False]

    def test_whitelist_passthrough(self, stack):
        stack.auth.update_rate_limits(max_requests=1)
        config = stack.auth.whitelist_client("9.9.9.9")

        assert "9.9.9.9" in config["whitelist"]
        assert all(stack.auth.request_is_allowed("9.9.9.9", "/v1/x", "GET") for _ in range(5))
        assert stack.auth.unwhitelist_client("9.9.9.9") is True
