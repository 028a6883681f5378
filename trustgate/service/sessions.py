from __future__ import annotations

from datetime import datetime
from typing import Optional

from trustgate.logging import get_logger
from trustgate.service.locks import KeyedLocks
from trustgate.service.revocation import RevocationLedger
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import Clock, SessionRecord, utcnow

logger = get_logger(__name__)


class SessionRegistry:
    """Single live session per principal.

    ``open`` and ``close_for_principal`` run under a per-principal lock and
    always revoke and delete the previous row before inserting a new one, so
    no observer ever sees two live sessions for the same principal.
    """

    def __init__(
        self, store: MemoryStore, ledger: RevocationLedger, *, clock: Clock = utcnow
    ) -> None:
        self.store = store
        self.ledger = ledger
        self._clock = clock
        self._locks = KeyedLocks()

    def _revoke_and_delete(self, principal_id: str) -> Optional[SessionRecord]:
        existing = self.store.get_session_for_principal(principal_id)
        if not existing:
            return None
        self.ledger.revoke(existing.token, existing.expires_at)
        self.store.delete_session(principal_id, token=existing.token)
        return existing

    def open(self, principal_id: str, token: str, expires_at: datetime) -> SessionRecord:
        with self._locks.hold(principal_id):
            replaced = self._revoke_and_delete(principal_id)
            record = SessionRecord(
                principal_id=principal_id,
                token=token,
                issued_at=self._clock(),
                expires_at=expires_at,
            )
            self.store.insert_session(record)
        logger.info(
            "session_opened",
            principal_id=principal_id,
            replaced_previous=replaced is not None,
        )
        return record

    def is_live(self, token: str) -> bool:
        return self.store.get_session_by_token(token) is not None

    def get_for_principal(self, principal_id: str) -> Optional[SessionRecord]:
        return self.store.get_session_for_principal(principal_id)

    def close_for_principal(self, principal_id: str) -> bool:
        with self._locks.hold(principal_id):
            closed = self._revoke_and_delete(principal_id)
        if closed:
            logger.info("session_closed", principal_id=principal_id)
        return closed is not None

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete session rows whose expiry is strictly before ``now``."""
        cutoff = now or self._clock()
        removed = 0
        for candidate in self.store.list_expired_sessions(cutoff):
            with self._locks.hold(candidate.principal_id):
                # The row may have been replaced since the scan
                if self.store.delete_session(candidate.principal_id, token=candidate.token):
                    removed += 1
        if removed:
            logger.info("sessions_swept", removed=removed)
        return removed
