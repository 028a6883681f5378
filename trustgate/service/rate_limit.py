from __future__ import annotations

import threading
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, Optional

from trustgate.logging import get_logger
from trustgate.service.errors import ValidationError
from trustgate.storage.models import Clock, utcnow

logger = get_logger(__name__)

_PUBLIC_PATH_MARKERS = ("/products", "/categories")


class EndpointClass(str, Enum):
    PUBLIC = "public"
    DEFAULT = "default"


def classify_path(path: str) -> EndpointClass:
    """Map a request path to its rate-limit class.

    Read-heavy catalogue paths and the auth endpoints (other than signup) get
    the higher public ceiling.
    """
    if any(marker in path for marker in _PUBLIC_PATH_MARKERS):
        return EndpointClass.PUBLIC
    if "/auth" in path and "/signup" not in path:
        return EndpointClass.PUBLIC
    return EndpointClass.DEFAULT


class _Window:
    """Per-client counters keyed by whole epoch second."""

    __slots__ = ("lock", "buckets", "retired")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.buckets: Dict[int, int] = {}
        self.retired = False

    def evict(self, cutoff: int) -> None:
        for ts in [ts for ts in self.buckets if ts <= cutoff]:
            del self.buckets[ts]


class SlidingWindowRateLimiter:
    """Exact sliding-window admission control at one-second granularity.

    Each client key owns a window guarded by its own lock, so the
    evict/sum/compare/increment sequence is atomic per client while distinct
    clients never contend. Whitelisted keys bypass the window entirely.
    """

    def __init__(
        self,
        *,
        max_requests: int = 100,
        public_max_requests: int = 300,
        window_seconds: int = 60,
        whitelist: Iterable[str] = (),
        clock: Clock = utcnow,
    ) -> None:
        self._clock = clock
        self._config_lock = threading.Lock()
        self._windows_lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._max_requests = 0
        self._public_max_requests = 0
        self._window_seconds = 0
        self._whitelist = {key.strip() for key in whitelist if key and key.strip()}
        self.update_limits(
            max_requests=max_requests,
            window_seconds=window_seconds,
            public_max_requests=public_max_requests,
        )

    def _window_for(self, client_key: str) -> _Window:
        with self._windows_lock:
            window = self._windows.get(client_key)
            if window is None:
                window = _Window()
                self._windows[client_key] = window
            return window

    def allow(self, client_key: str, endpoint_class: EndpointClass = EndpointClass.DEFAULT) -> bool:
        endpoint_class = EndpointClass(endpoint_class)
        with self._config_lock:
            if client_key in self._whitelist:
                return True
            limit = (
                self._public_max_requests
                if endpoint_class == EndpointClass.PUBLIC
                else self._max_requests
            )
            window_seconds = self._window_seconds
        now = int(self._clock().timestamp())
        while True:
            window = self._window_for(client_key)
            with window.lock:
                if window.retired:
                    # Swept between lookup and lock; fetch the replacement
                    continue
                window.evict(now - window_seconds)
                if sum(window.buckets.values()) >= limit:
                    allowed = False
                else:
                    window.buckets[now] = window.buckets.get(now, 0) + 1
                    allowed = True
            break
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                client_key=client_key,
                endpoint_class=endpoint_class.value,
                limit=limit,
                window_seconds=window_seconds,
            )
        return allowed

    def update_limits(
        self,
        *,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        public_max_requests: Optional[int] = None,
    ) -> None:
        for name, value in (
            ("max_requests", max_requests),
            ("window_seconds", window_seconds),
            ("public_max_requests", public_max_requests),
        ):
            if value is not None and int(value) <= 0:
                raise ValidationError(f"{name} must be positive", detail={"field": name})
        with self._config_lock:
            if max_requests is not None:
                self._max_requests = int(max_requests)
            if window_seconds is not None:
                self._window_seconds = int(window_seconds)
            if public_max_requests is not None:
                self._public_max_requests = int(public_max_requests)
            snapshot = self._snapshot_locked()
        logger.info("rate_limits_updated", **{k: v for k, v in snapshot.items() if k != "whitelist"})

    def add_to_whitelist(self, client_key: str) -> None:
        key = client_key.strip()
        if not key:
            raise ValidationError("client key must not be empty")
        with self._config_lock:
            self._whitelist.add(key)
        logger.info("rate_limit_whitelist_added", client_key=key)

    def remove_from_whitelist(self, client_key: str) -> bool:
        with self._config_lock:
            removed = client_key.strip() in self._whitelist
            self._whitelist.discard(client_key.strip())
        if removed:
            logger.info("rate_limit_whitelist_removed", client_key=client_key)
        return removed

    def whitelist(self) -> list[str]:
        with self._config_lock:
            return sorted(self._whitelist)

    def _snapshot_locked(self) -> dict:
        return {
            "max_requests": self._max_requests,
            "public_max_requests": self._public_max_requests,
            "window_seconds": self._window_seconds,
            "whitelist": sorted(self._whitelist),
        }

    def snapshot(self) -> dict:
        with self._config_lock:
            return self._snapshot_locked()

    def active_clients(self) -> int:
        with self._windows_lock:
            return len(self._windows)

    def sweep_idle(self, now: Optional[datetime] = None) -> int:
        """Drop windows holding no counters inside the current window."""
        with self._config_lock:
            window_seconds = self._window_seconds
        cutoff = int((now or self._clock()).timestamp()) - window_seconds
        dropped = 0
        with self._windows_lock:
            for key, window in list(self._windows.items()):
                with window.lock:
                    window.evict(cutoff)
                    if not window.buckets:
                        window.retired = True
                        del self._windows[key]
                        dropped += 1
        if dropped:
            logger.debug("rate_limit_windows_swept", dropped=dropped)
        return dropped
