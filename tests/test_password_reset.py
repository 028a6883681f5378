"""Tests for the forgot-password flow built on RESET tokens."""

from datetime import timedelta

import pytest

from trustgate.service.errors import (
    ExpiredTokenError,
    ForbiddenError,
    InvalidMfaCodeError,
    InvalidTokenError,
    NotFoundError,
    RevokedTokenError,
    ValidationError,
    WrongTokenKindError,
)
from trustgate.storage.models import TokenKind

PASSWORD = "CorrectHorse1!"
NEW_PASSWORD = "BatteryStaple2@"


@pytest.fixture
def alice(stack):
    return stack.auth.signup("alice", "alice@example.com", PASSWORD)


def _enroll(stack, principal):
    setup = stack.mfa.setup(principal)
    codes = stack.mfa.enable(principal, stack.mfa.generate_totp(setup.secret, stack.clock.now.timestamp()))
    return setup.secret, codes


class TestRequestReset:
    """Issuing reset tickets."""

    def test_unknown_username(self, stack):
        with pytest.raises(NotFoundError) as excinfo:
            stack.reset_flow.request_reset("nobody")
        assert excinfo.value.message == "Invalid username"

    def test_ticket_is_a_reset_token(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")

        parsed = stack.signer.parse(ticket.token)
        assert parsed.kind == TokenKind.RESET
        assert parsed.subject == "alice"
        assert parsed.claims["userId"] == alice.id
        assert ticket.expires_at - stack.clock.now == timedelta(minutes=15)
        assert ticket.mfa_enabled is False

    def test_reset_token_does_not_open_a_session(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")

        assert stack.sessions.get_for_principal(alice.id) is None
        with pytest.raises(WrongTokenKindError):
            stack.auth.validate_session_token(ticket.token)

    def test_reset_token_with_a_session_row_is_still_refused(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")
        stack.sessions.open(alice.id, ticket.token, ticket.expires_at)

        assert stack.sessions.is_live(ticket.token)
        with pytest.raises(WrongTokenKindError):
            stack.auth.validate_session_token(ticket.token)


class TestCompleteReset:
    """Using a reset token."""

    def test_reset_changes_password(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")

        stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

        assert stack.passwords.verify(alice.id, NEW_PASSWORD)
        assert not stack.passwords.verify(alice.id, PASSWORD)

    def test_user_id_mismatch(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")

        with pytest.raises(ValidationError) as excinfo:
            stack.reset_flow.complete_reset(ticket.token, "someone-else", NEW_PASSWORD)
        assert excinfo.value.message == "User ID mismatch"
        assert stack.passwords.verify(alice.id, PASSWORD)

    def test_session_token_cannot_drive_reset(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)

        with pytest.raises(WrongTokenKindError):
            stack.reset_flow.complete_reset(login.token, alice.id, NEW_PASSWORD)

    def test_token_is_single_use(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")
        stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

        with pytest.raises(RevokedTokenError):
            stack.reset_flow.complete_reset(ticket.token, alice.id, "Another3#pass")

    def test_expired_token(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")
        stack.clock.advance(minutes=15)

        with pytest.raises(ExpiredTokenError):
            stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

    def test_reset_closes_live_session(self, stack, alice):
        login = stack.auth.authenticate("alice", PASSWORD)
        ticket = stack.reset_flow.request_reset("alice")

        stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            stack.auth.validate_session_token(login.token)


class TestResetWithMfa:
    """MFA-enabled principals must verify the reset token first."""

    def test_verify_mfa_is_a_no_op_without_enrollment(self, stack, alice):
        ticket = stack.reset_flow.request_reset("alice")

        assert stack.reset_flow.verify_mfa(ticket.token, "anything") is True

    def test_reset_without_mfa_verification_is_refused(self, stack, alice):
        _enroll(stack, alice)
        ticket = stack.reset_flow.request_reset("alice")
        assert ticket.mfa_enabled

        with pytest.raises(ForbiddenError):
            stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

    def test_bad_code_is_rejected(self, stack, alice):
        _enroll(stack, alice)
        ticket = stack.reset_flow.request_reset("alice")

        with pytest.raises(InvalidMfaCodeError):
            stack.reset_flow.verify_mfa(ticket.token, "not-a-code")

    def test_reset_after_totp_verification(self, stack, alice):
        secret, _ = _enroll(stack, alice)
        ticket = stack.reset_flow.request_reset("alice")

        stack.reset_flow.verify_mfa(
            ticket.token, stack.mfa.generate_totp(secret, stack.clock.now.timestamp())
        )
        stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

        assert stack.passwords.verify(alice.id, NEW_PASSWORD)

    def test_recovery_code_verifies_reset(self, stack, alice):
        _, codes = _enroll(stack, alice)
        ticket = stack.reset_flow.request_reset("alice")

        stack.reset_flow.verify_mfa(ticket.token, codes[0])
        stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

        assert stack.mfa.status(alice.id)["recovery_codes_remaining"] == len(codes) - 1

    def test_verification_is_bound_to_one_token(self, stack, alice):
        _, codes = _enroll(stack, alice)
        verified = stack.reset_flow.request_reset("alice")
        stack.reset_flow.verify_mfa(verified.token, codes[0])
        other = stack.reset_flow.request_reset("alice")

        with pytest.raises(ForbiddenError):
            stack.reset_flow.complete_reset(other.token, alice.id, NEW_PASSWORD)

    def test_mfa_optional_when_disabled_by_setting(self, stack, alice):
        _enroll(stack, alice)
        stack.reset_flow.require_mfa = False
        ticket = stack.reset_flow.request_reset("alice")

        stack.reset_flow.complete_reset(ticket.token, alice.id, NEW_PASSWORD)

        assert stack.passwords.verify(alice.id, NEW_PASSWORD)
