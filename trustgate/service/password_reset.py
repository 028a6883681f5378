from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict

from trustgate.logging import get_logger
from trustgate.service.errors import (
    ForbiddenError,
    InvalidMfaCodeError,
    MalformedTokenError,
    NotFoundError,
    RevokedTokenError,
    ValidationError,
    WrongTokenKindError,
)
from trustgate.service.mfa import SecondFactorVerifier
from trustgate.service.passwords import PasswordManager
from trustgate.service.revocation import RevocationLedger
from trustgate.service.sessions import SessionRegistry
from trustgate.service.signer import ParsedToken, TokenSigner
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import Clock, Principal, TokenKind, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResetTicket:
    principal_id: str
    username: str
    mfa_enabled: bool
    token: str
    expires_at: datetime


class PasswordResetFlow:
    """Forgot-password flow built on short-lived RESET tokens.

    RESET tokens never touch the session registry and are checked for their
    kind explicitly, so a session token cannot drive a reset and a reset
    token cannot authenticate a request.
    """

    def __init__(
        self,
        store: MemoryStore,
        signer: TokenSigner,
        ledger: RevocationLedger,
        sessions: SessionRegistry,
        mfa: SecondFactorVerifier,
        passwords: PasswordManager,
        *,
        ttl: timedelta = timedelta(minutes=15),
        require_mfa: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.ledger = ledger
        self.sessions = sessions
        self.mfa = mfa
        self.passwords = passwords
        self.ttl = ttl
        self.require_mfa = require_mfa
        self._clock = clock
        self._verified_lock = threading.Lock()
        # token id -> token expiry, for reset tokens that passed MFA
        self._mfa_verified: Dict[str, datetime] = {}

    def request_reset(self, username: str) -> ResetTicket:
        principal = self.store.find_by_username(username)
        if not principal:
            raise NotFoundError("Invalid username")
        token = self.signer.issue(
            principal.username,
            {"userId": principal.id},
            self.ttl,
            kind=TokenKind.RESET,
        )
        parsed = self.signer.parse(token)
        logger.info("password_reset_requested", principal_id=principal.id)
        return ResetTicket(
            principal_id=principal.id,
            username=principal.username,
            mfa_enabled=principal.mfa_enabled,
            token=token,
            expires_at=parsed.expires_at,
        )

    def validate_reset_token(self, token: str) -> ParsedToken:
        parsed = self.signer.parse(token)
        if parsed.kind != TokenKind.RESET:
            raise WrongTokenKindError(f"expected reset token, got {parsed.kind.value}")
        if not parsed.claims.get("userId"):
            raise MalformedTokenError("reset token without userId")
        if self.ledger.is_revoked(token):
            raise RevokedTokenError("reset token already used")
        return parsed

    def _principal_for(self, parsed: ParsedToken) -> Principal:
        principal = self.store.find_by_id(str(parsed.claims["userId"]))
        if not principal or principal.username != parsed.subject:
            raise NotFoundError("principal for reset token not found")
        return principal

    def verify_mfa(self, token: str, code: str) -> bool:
        parsed = self.validate_reset_token(token)
        principal = self._principal_for(parsed)
        if not principal.mfa_enabled:
            return True
        if not self.mfa.verify_second_factor(principal, code):
            logger.warning("password_reset_mfa_rejected", principal_id=principal.id)
            raise InvalidMfaCodeError()
        with self._verified_lock:
            self._prune_verified_locked()
            self._mfa_verified[parsed.token_id] = parsed.expires_at
        logger.info("password_reset_mfa_verified", principal_id=principal.id)
        return True

    def complete_reset(self, token: str, user_id: str, new_password: str) -> Principal:
        parsed = self.validate_reset_token(token)
        if str(parsed.claims["userId"]) != str(user_id):
            logger.warning("password_reset_user_mismatch", principal_id=user_id)
            raise ValidationError("User ID mismatch")
        principal = self._principal_for(parsed)
        if principal.mfa_enabled and self.require_mfa:
            with self._verified_lock:
                verified = parsed.token_id in self._mfa_verified
            if not verified:
                raise ForbiddenError("MFA verification required before reset")
        # Revoke first so a concurrent replay of the same token loses
        if not self.ledger.revoke(token, parsed.expires_at):
            raise RevokedTokenError("reset token already used")
        self.passwords.save(principal.id, new_password)
        self.sessions.close_for_principal(principal.id)
        with self._verified_lock:
            self._mfa_verified.pop(parsed.token_id, None)
        logger.info("password_reset_completed", principal_id=principal.id)
        return principal

    def _prune_verified_locked(self) -> None:
        now = self._clock()
        for token_id in [t for t, exp in self._mfa_verified.items() if exp <= now]:
            del self._mfa_verified[token_id]
