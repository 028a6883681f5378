from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from trustgate.logging import get_logger
from trustgate.service.errors import (
    AccountBlockedError,
    AccountExpiredError,
    AccountSuspendedReadOnlyError,
    ForbiddenAdminTargetError,
    ForbiddenError,
    NotFoundError,
)
from trustgate.service.locks import KeyedLocks
from trustgate.service.sessions import SessionRegistry
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import Clock, Principal, PrincipalStatus, Role, utcnow

logger = get_logger(__name__)

READ_ONLY_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class LockoutStateMachine:
    """Account status transitions driven by login outcomes and administrators.

    Transitions:
      ACTIVE -> BLOCKED            failed_attempts reaches the threshold
      ACTIVE <-> SUSPENDED         administrator
      ACTIVE/SUSPENDED -> BLOCKED  administrator
      any -> ACTIVE                administrator unlock

    Every mutation of a principal happens under that principal's lock;
    concurrent writers (automatic and administrative) are last-write-wins.
    Entering BLOCKED by any path closes the principal's session.
    """

    def __init__(
        self,
        store: MemoryStore,
        sessions: SessionRegistry,
        *,
        max_failed_attempts: int = 5,
        account_extension: timedelta = timedelta(days=365),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.max_failed_attempts = max_failed_attempts
        self.account_extension = account_extension
        self._clock = clock
        self._locks = KeyedLocks()

    def _load(self, principal_id: str) -> Principal:
        principal = self.store.find_by_id(principal_id)
        if not principal:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    def record_failure(self, principal_id: str) -> Principal:
        """Count one failed login and block the account at the threshold."""
        with self._locks.hold(principal_id):
            principal = self._load(principal_id)
            attempts = principal.failed_attempts + 1
            changes: dict = {"failed_attempts": attempts, "last_failed_at": self._clock()}
            lock_now = (
                attempts >= self.max_failed_attempts
                and principal.status != PrincipalStatus.BLOCKED
            )
            if lock_now:
                changes["status"] = PrincipalStatus.BLOCKED
                changes["status_reason"] = (
                    f"Account locked due to {self.max_failed_attempts} failed login attempts"
                )
            updated = self.store.save(principal_id, **changes)
            if lock_now:
                self.sessions.close_for_principal(principal_id)
        if lock_now:
            logger.warning("account_locked", principal_id=principal_id, failed_attempts=attempts)
        else:
            logger.info("login_failure_recorded", principal_id=principal_id, failed_attempts=attempts)
        return updated

    def record_success(self, principal_id: str) -> Principal:
        with self._locks.hold(principal_id):
            principal = self._load(principal_id)
            if principal.failed_attempts == 0 and principal.last_failed_at is None:
                return principal
            return self.store.save(principal_id, failed_attempts=0, last_failed_at=None)

    def set_status(
        self,
        actor_roles: Iterable[Role],
        target_id: str,
        status: PrincipalStatus,
        reason: Optional[str] = None,
    ) -> Principal:
        if Role.ADMIN not in set(actor_roles):
            raise ForbiddenError("admin role required")
        status = PrincipalStatus(status)
        with self._locks.hold(target_id):
            target = self._load(target_id)
            if target.is_admin:
                logger.warning("admin_status_change_refused", target_id=target_id)
                raise ForbiddenAdminTargetError()
            updated = self.store.save(target_id, status=status, status_reason=reason)
            if status == PrincipalStatus.BLOCKED:
                self.sessions.close_for_principal(target_id)
        logger.info(
            "account_status_changed",
            target_id=target_id,
            previous=target.status.value,
            status=status.value,
        )
        return updated

    def unlock(self, target_id: str) -> Principal:
        with self._locks.hold(target_id):
            self._load(target_id)
            updated = self.store.save(
                target_id,
                status=PrincipalStatus.ACTIVE,
                status_reason=None,
                failed_attempts=0,
                last_failed_at=None,
                account_expires_at=self._clock() + self.account_extension,
            )
        logger.info("account_unlocked", target_id=target_id)
        return updated

    def is_locked(self, principal: Principal) -> bool:
        return principal.status == PrincipalStatus.BLOCKED

    def check_not_expired(self, principal: Principal, now: Optional[datetime] = None) -> None:
        if principal.is_expired(now or self._clock()):
            raise AccountExpiredError()

    def check_request(self, principal: Principal, method: str) -> None:
        """Enforce the status policy for one request."""
        if principal.status == PrincipalStatus.BLOCKED:
            raise AccountBlockedError()
        if (
            principal.status == PrincipalStatus.SUSPENDED
            and method.upper() not in READ_ONLY_METHODS
        ):
            raise AccountSuspendedReadOnlyError()
