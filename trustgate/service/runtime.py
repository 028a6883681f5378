from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from trustgate.config import get_settings, reset_settings_cache
from trustgate.logging import get_logger
from trustgate.service.auth import AuthService
from trustgate.service.lockout import LockoutStateMachine
from trustgate.service.mfa import SecondFactorVerifier
from trustgate.service.password_reset import PasswordResetFlow
from trustgate.service.passwords import PasswordManager
from trustgate.service.rate_limit import SlidingWindowRateLimiter
from trustgate.service.revocation import RevocationLedger
from trustgate.service.sessions import SessionRegistry
from trustgate.service.signer import TokenSigner
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import Clock, utcnow
from trustgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, clock: Clock = utcnow):
        self.settings = get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            persist_state=self.settings.persist_state,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root,
            mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
            persist=self.settings.persist_state,
        )

        self.cache: RedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except RedisError as exc:
                redis_error = exc

        if not self.cache:
            if self.settings.redis_url and not (
                self.settings.test_mode or self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                    "or set ALLOW_REDIS_FALLBACK_DEV=true to run without the shared denylist."
                ) from redis_error
            if self.settings.redis_url:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else None,
                    message="Running without Redis; token revocations are local to this process.",
                )

        settings = self.settings
        self.signer = TokenSigner(settings.jwt_secret, issuer=settings.jwt_issuer, clock=clock)
        self.ledger = RevocationLedger(self.store, self.cache, clock=clock)
        self.sessions = SessionRegistry(self.store, self.ledger, clock=clock)
        self.limiter = SlidingWindowRateLimiter(
            max_requests=settings.rate_limit_max_requests,
            public_max_requests=settings.rate_limit_public_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            whitelist=settings.ip_whitelist,
            clock=clock,
        )
        self.lockout = LockoutStateMachine(
            self.store,
            self.sessions,
            max_failed_attempts=settings.max_failed_attempts,
            account_extension=timedelta(days=settings.account_extension_days),
            clock=clock,
        )
        self.mfa = SecondFactorVerifier(self.store, issuer=settings.mfa_issuer, clock=clock)
        self.passwords = PasswordManager(self.store)
        self.reset_flow = PasswordResetFlow(
            self.store,
            self.signer,
            self.ledger,
            self.sessions,
            self.mfa,
            self.passwords,
            ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
            require_mfa=settings.reset_requires_mfa,
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            self.signer,
            self.ledger,
            self.sessions,
            self.limiter,
            self.lockout,
            self.mfa,
            self.passwords,
            self.reset_flow,
            settings,
            clock=clock,
        )

        if (
            settings.bootstrap_admin_username
            and settings.bootstrap_admin_email
            and settings.bootstrap_admin_password
        ):
            self.auth.bootstrap_admin(
                settings.bootstrap_admin_username,
                settings.bootstrap_admin_email,
                settings.bootstrap_admin_password,
            )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            max_failed_attempts=settings.max_failed_attempts,
            rate_limit_window_seconds=settings.rate_limit_window_seconds,
        )

    def sweep_revocations(self) -> int:
        return self.ledger.sweep()

    def sweep_sessions(self) -> int:
        return self.sessions.sweep_expired()

    def sweep_rate_windows(self) -> int:
        return self.limiter.sweep_idle()

    def rate_window_seconds(self) -> int:
        return self.limiter.snapshot()["window_seconds"]

    def close(self) -> None:
        if self.cache is not None:
            try:
                self.cache.close()
            except RedisError as exc:
                logger.warning("redis_close_failed", error=str(exc))
            self.cache = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Clock = utcnow) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
