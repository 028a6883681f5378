from __future__ import annotations

from datetime import datetime, timezone

from redis import Redis


class RedisCache:
    """Thin synchronous Redis wrapper holding the shared token denylist."""

    _DENYLIST_PREFIX = "auth:token:denylist:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_seconds(expires_at: datetime, now: datetime | None = None) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - current).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def denylist_token(self, digest: str, ttl_seconds: int) -> bool:
        """Add a token digest to the denylist; False when it was already present."""
        if ttl_seconds <= 0:
            return False
        return bool(self.client.set(f"{self._DENYLIST_PREFIX}{digest}", "1", ex=ttl_seconds, nx=True))

    def is_token_denylisted(self, digest: str) -> bool:
        return bool(self.client.exists(f"{self._DENYLIST_PREFIX}{digest}"))

    def close(self) -> None:
        self.client.close()
