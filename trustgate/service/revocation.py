from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional

from redis.exceptions import RedisError

from trustgate.logging import get_logger, token_fingerprint
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import Clock, utcnow
from trustgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationLedger:
    """Explicitly revoked tokens, kept until their natural expiry.

    The store holds the authoritative set. When Redis is configured each
    revocation is mirrored there (keyed by digest, TTL matching the token) so
    other processes sharing the cache see it too.
    """

    def __init__(
        self,
        store: MemoryStore,
        cache: Optional[RedisCache] = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock

    def revoke(self, token: str, expires_at: datetime) -> bool:
        """Record ``token`` as revoked; returns False if it already was."""
        added = self.store.add_revocation(token, expires_at)
        if self.cache:
            try:
                self.cache.denylist_token(
                    token_digest(token), RedisCache.ttl_seconds(expires_at, self._clock())
                )
            except RedisError as exc:
                # Local ledger already holds the entry
                logger.warning("revocation_cache_write_failed", error=str(exc))
        if added:
            logger.info(
                "token_revoked",
                fingerprint=token_fingerprint(token),
                expires_at=expires_at.isoformat(),
            )
        return added

    def is_revoked(self, token: str) -> bool:
        if self.store.is_revoked(token):
            return True
        if self.cache:
            try:
                return self.cache.is_token_denylisted(token_digest(token))
            except RedisError as exc:
                # Fail closed: an unreachable denylist must not admit a revoked token
                logger.warning("revocation_cache_read_failed_defaulting_to_revoked", error=str(exc))
                return True
        return False

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Purge entries whose expiry is strictly before ``now``."""
        purged = self.store.purge_revocations(now or self._clock())
        if purged:
            logger.info("revocation_ledger_swept", purged=purged)
        return purged
