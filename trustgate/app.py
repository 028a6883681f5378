from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, Request

from trustgate.api.error_handling import error_response, register_exception_handlers
from trustgate.api.routes import router
from trustgate.logging import bind_request_context, clear_request_context, get_logger
from trustgate.service.errors import RateLimitedError

logger = get_logger(__name__)

__version__ = "0.1.0"

_UNGATED_PATHS = frozenset({"/healthz"})

_sweep_tasks: List[asyncio.Task] = []


async def _run_periodic(
    name: str,
    func: Callable[[], int],
    interval_seconds: Union[int, Callable[[], int]],
) -> None:
    """Background loop running a blocking sweep off the event loop.

    A callable interval is re-read before every sleep, so runtime limit
    changes take effect on the next cycle.
    """
    try:
        while True:
            delay = interval_seconds() if callable(interval_seconds) else interval_seconds
            await asyncio.sleep(delay)
            try:
                removed = await asyncio.to_thread(func)
                if removed:
                    logger.info(f"{name}_completed", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"{name}_failed", error=str(exc), error_type=type(exc).__name__)
    except asyncio.CancelledError:
        logger.info(f"{name}_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from trustgate.service.runtime import get_runtime

    runtime = get_runtime()
    settings = runtime.settings
    _sweep_tasks.append(
        asyncio.create_task(
            _run_periodic(
                "revocation_sweep",
                runtime.sweep_revocations,
                settings.revocation_sweep_interval_seconds,
            )
        )
    )
    _sweep_tasks.append(
        asyncio.create_task(
            _run_periodic(
                "session_sweep",
                runtime.sweep_sessions,
                settings.session_sweep_interval_seconds,
            )
        )
    )
    _sweep_tasks.append(
        asyncio.create_task(
            _run_periodic(
                "rate_window_sweep",
                runtime.sweep_rate_windows,
                runtime.rate_window_seconds,
            )
        )
    )
    logger.info("sweep_tasks_started", count=len(_sweep_tasks))

    yield

    for task in _sweep_tasks:
        task.cancel()
    for task in _sweep_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _sweep_tasks.clear()
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="trustgate", version=__version__, lifespan=lifespan)


def client_key_for(request: Request, trust_forwarded_for: bool) -> str:
    """First X-Forwarded-For hop when trusted, else the peer address."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    if request.url.path in _UNGATED_PATHS:
        return await call_next(request)
    from trustgate.service.runtime import get_runtime

    runtime = get_runtime()
    client_key = client_key_for(request, runtime.settings.trust_forwarded_for)
    if not runtime.auth.request_is_allowed(client_key, request.url.path, request.method):
        exc = RateLimitedError()
        return error_response(exc.status_code, exc.message, code=exc.error_code)
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh uuid) to the logging context and echo it back."""
    correlation_id = bind_request_context(
        request.headers.get("X-Request-ID"), request.method, request.url.path
    )
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from trustgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "memory"}}
    healthy = True
    redis_status: Optional[str] = None
    if runtime.cache is not None:
        try:
            await asyncio.wait_for(asyncio.to_thread(runtime.cache.verify_connection), 3)
            redis_status = "healthy"
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            redis_status = "unhealthy"
            healthy = False
    checks["redis"] = {"status": redis_status or "not_configured"}
    checks["rate_limiter"] = {"active_clients": runtime.limiter.active_clients()}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
