from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Iterable, List, Optional

from trustgate.config import Settings
from trustgate.logging import get_logger
from trustgate.service.errors import (
    AccountBlockedError,
    BadCredentialsError,
    ConflictError,
    CredentialStoreError,
    InvalidMfaCodeError,
    InvalidTokenError,
    MalformedTokenError,
    MfaRequiredError,
    NotFoundError,
    RevokedTokenError,
    SessionNotLiveError,
    WrongTokenKindError,
)
from trustgate.service.lockout import LockoutStateMachine
from trustgate.service.mfa import MfaSetup, SecondFactorVerifier, is_well_formed_totp
from trustgate.service.password_reset import PasswordResetFlow, ResetTicket
from trustgate.service.passwords import PasswordManager
from trustgate.service.rate_limit import SlidingWindowRateLimiter, classify_path
from trustgate.service.revocation import RevocationLedger
from trustgate.service.sessions import SessionRegistry
from trustgate.service.signer import ParsedToken, TokenSigner
from trustgate.storage.errors import ConstraintViolation, StoreUnavailable
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import (
    Clock,
    Principal,
    PrincipalStatus,
    Role,
    TokenKind,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class AuthContext:
    principal_id: str
    username: str
    roles: FrozenSet[Role]
    status: PrincipalStatus
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles


@dataclass(frozen=True)
class LoginResult:
    token: str
    principal: Principal
    expires_at: datetime


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthService:
    """The request gate: rate limiting, token validation and status checks.

    This is the only surface the HTTP layer talks to. It composes the signer,
    revocation ledger, session registry, rate limiter, lockout state machine,
    second-factor verifier and password-reset flow.
    """

    def __init__(
        self,
        store: MemoryStore,
        signer: TokenSigner,
        ledger: RevocationLedger,
        sessions: SessionRegistry,
        limiter: SlidingWindowRateLimiter,
        lockout: LockoutStateMachine,
        mfa: SecondFactorVerifier,
        passwords: PasswordManager,
        reset_flow: PasswordResetFlow,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.ledger = ledger
        self.sessions = sessions
        self.limiter = limiter
        self.lockout = lockout
        self.mfa = mfa
        self.passwords = passwords
        self.reset_flow = reset_flow
        self.settings = settings
        self._clock = clock
        self.logger = logger

    # admission
    def request_is_allowed(self, client_key: str, path: str, method: str) -> bool:
        allowed = self.limiter.allow(client_key, classify_path(path))
        if not allowed:
            self.logger.info("request_denied", path=path, method=method)
        return allowed

    # accounts
    def signup(
        self,
        username: str,
        email: str,
        password: str,
        roles: Optional[Iterable[Role]] = None,
    ) -> Principal:
        if self.store.exists_by_username(username):
            raise ConflictError("Username is already taken", detail={"field": "username"})
        if self.store.exists_by_email(email):
            raise ConflictError("Email is already in use", detail={"field": "email"})
        try:
            principal = self.store.create_principal(
                username,
                email,
                roles=roles or (Role.USER,),
                account_expires_at=self._clock()
                + timedelta(days=self.settings.account_default_validity_days),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same name
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.passwords.save(principal.id, password)
        self.logger.info("principal_registered", principal_id=principal.id)
        return principal

    def bootstrap_admin(self, username: str, email: str, password: str) -> Principal:
        existing = self.store.find_by_username(username)
        if existing:
            if not existing.is_admin:
                existing = self.store.save(existing.id, roles=existing.roles | {Role.ADMIN})
                self.logger.info("bootstrap_admin_promoted", principal_id=existing.id)
            return existing
        principal = self.signup(username, email, password, roles=(Role.USER, Role.ADMIN))
        self.logger.info("bootstrap_admin_created", principal_id=principal.id)
        return principal

    def list_principals(self, limit: int = 100) -> List[Principal]:
        return self.store.list_principals(limit=limit)

    # authentication
    def _record_failure(self, principal: Principal) -> Principal:
        try:
            return self.lockout.record_failure(principal.id)
        except StoreUnavailable as exc:
            self.logger.error(
                "login_failure_not_recorded", principal_id=principal.id, error=str(exc)
            )
            raise CredentialStoreError("authentication temporarily unavailable") from exc

    def _open_session(self, principal: Principal) -> LoginResult:
        ttl = timedelta(minutes=self.settings.session_ttl_minutes)
        token = self.signer.issue(principal.username, {"userId": principal.id}, ttl)
        parsed = self.signer.parse(token)
        self.sessions.open(principal.id, token, parsed.expires_at)
        return LoginResult(token=token, principal=principal, expires_at=parsed.expires_at)

    def authenticate(
        self, username: str, password: str, mfa_code: Optional[str] = None
    ) -> LoginResult:
        principal = self.store.find_by_username(username)
        if not principal:
            self.passwords.burn_verification(password)
            self.logger.warning("login_failed", reason="unknown_user")
            raise BadCredentialsError()
        self.lockout.check_not_expired(principal)
        if self.lockout.is_locked(principal):
            self.logger.warning("login_refused", principal_id=principal.id, reason="blocked")
            raise AccountBlockedError()

        if not self.passwords.verify(principal.id, password):
            updated = self._record_failure(principal)
            self.logger.warning(
                "login_failed",
                principal_id=principal.id,
                reason="bad_password",
                failed_attempts=updated.failed_attempts if updated else None,
            )
            if updated and self.lockout.is_locked(updated):
                raise AccountBlockedError()
            raise BadCredentialsError()

        if principal.mfa_enabled:
            if not mfa_code:
                raise MfaRequiredError()
            if not self.mfa.verify_second_factor(principal, mfa_code):
                self.logger.warning("login_failed", principal_id=principal.id, reason="bad_mfa")
                if (
                    self.settings.count_malformed_mfa_as_failure
                    and not is_well_formed_totp(mfa_code, self.mfa.digits)
                ):
                    updated = self._record_failure(principal)
                    if updated and self.lockout.is_locked(updated):
                        raise AccountBlockedError()
                raise InvalidMfaCodeError()

        principal = self.lockout.record_success(principal.id)
        result = self._open_session(principal)
        self.logger.info("login_succeeded", principal_id=principal.id)
        return result

    def sign_in_with_verified_identity(self, email: str) -> LoginResult:
        """Open a session for an identity already verified by an external provider."""
        principal = self.store.find_by_email(email)
        if not principal:
            raise NotFoundError("User not registered")
        self.lockout.check_not_expired(principal)
        if principal.status != PrincipalStatus.ACTIVE:
            self.lockout.check_request(principal, "POST")
        result = self._open_session(principal)
        self.logger.info("verified_identity_login", principal_id=principal.id)
        return result

    # token validation
    def _validate(self, token: str) -> ParsedToken:
        try:
            parsed = self.signer.parse(token)
            if self.ledger.is_revoked(token):
                raise RevokedTokenError()
            if parsed.kind != TokenKind.SESSION:
                raise WrongTokenKindError(f"{parsed.kind.value} token used as session")
            if not self.sessions.is_live(token):
                raise SessionNotLiveError()
        except InvalidTokenError as exc:
            self.logger.warning("token_rejected", reason=exc.reason)
            raise
        return parsed

    def validate_session_token(self, token: str) -> AuthContext:
        parsed = self._validate(token)
        principal_id = parsed.claims.get("userId")
        principal = self.store.find_by_id(str(principal_id)) if principal_id else None
        if not principal or principal.username != parsed.subject:
            self.logger.warning("token_rejected", reason="principal_missing")
            raise MalformedTokenError("principal missing")
        return AuthContext(
            principal_id=principal.id,
            username=principal.username,
            roles=principal.roles,
            status=principal.status,
            token=token,
            expires_at=parsed.expires_at,
        )

    def authorize(self, authorization: Optional[str], method: str) -> AuthContext:
        """Full request check: bearer token, account expiry, then status policy."""
        token = extract_bearer(authorization)
        if not token:
            raise MalformedTokenError("missing bearer token")
        ctx = self.validate_session_token(token)
        principal = self.store.find_by_id(ctx.principal_id)
        if not principal:
            raise SessionNotLiveError("principal removed")
        self.lockout.check_not_expired(principal)
        self.lockout.check_request(principal, method)
        return ctx

    def logout(self, token: str) -> None:
        ctx = self.validate_session_token(token)
        self.sessions.close_for_principal(ctx.principal_id)
        # Covers the window where the row was replaced after validation
        if ctx.expires_at:
            self.ledger.revoke(token, ctx.expires_at)
        self.logger.info("logout", principal_id=ctx.principal_id)

    # second factor
    def require_mfa(self, username: str, code: Optional[str]) -> None:
        principal = self.store.find_by_username(username)
        if not principal:
            raise InvalidMfaCodeError()
        if not principal.mfa_enabled:
            return
        if not self.mfa.verify_second_factor(principal, code):
            self.logger.warning("mfa_check_failed", principal_id=principal.id)
            raise InvalidMfaCodeError()

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.find_by_id(principal_id)
        if not principal:
            raise NotFoundError("principal not found")
        return principal

    def setup_mfa(self, principal_id: str) -> MfaSetup:
        return self.mfa.setup(self._require_principal(principal_id))

    def enable_mfa(self, principal_id: str, code: str) -> List[str]:
        return self.mfa.enable(self._require_principal(principal_id), code)

    def disable_mfa(self, principal_id: str, code: str) -> None:
        self.mfa.disable(self._require_principal(principal_id), code)

    def regenerate_recovery_codes(self, principal_id: str, code: str) -> List[str]:
        return self.mfa.regenerate_recovery_codes(self._require_principal(principal_id), code)

    def mfa_status(self, principal_id: str) -> dict:
        return self.mfa.status(self._require_principal(principal_id).id)

    # password reset
    def forgot_password(self, username: str) -> ResetTicket:
        return self.reset_flow.request_reset(username)

    def verify_reset_mfa(self, reset_token: str, code: str) -> bool:
        return self.reset_flow.verify_mfa(reset_token, code)

    def reset_password(self, reset_token: str, user_id: str, new_password: str) -> Principal:
        return self.reset_flow.complete_reset(reset_token, user_id, new_password)

    # administration
    def admin_set_status(
        self,
        actor_roles: Iterable[Role],
        target_id: str,
        status: PrincipalStatus,
        reason: Optional[str] = None,
    ) -> Principal:
        return self.lockout.set_status(actor_roles, target_id, status, reason)

    def admin_unlock(self, target_id: str) -> Principal:
        return self.lockout.unlock(target_id)

    def rate_limit_config(self) -> dict:
        return self.limiter.snapshot()

    def update_rate_limits(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        public_max_requests: Optional[int] = None,
    ) -> dict:
        self.limiter.update_limits(
            max_requests=max_requests,
            window_seconds=window_seconds,
            public_max_requests=public_max_requests,
        )
        return self.limiter.snapshot()

    def whitelist_client(self, client_key: str) -> dict:
        self.limiter.add_to_whitelist(client_key)
        return self.limiter.snapshot()

    def unwhitelist_client(self, client_key: str) -> bool:
        return self.limiter.remove_from_whitelist(client_key)
