from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from propauth.api.aliases import rewrite_path, split_target
from propauth.api.error_handling import register_exception_handlers
from propauth.api.routes import router
from propauth.config import Settings
from propauth.logging import get_logger, set_correlation_id
from propauth.service.errors import AuthenticationUnavailable
from propauth.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_cleanup(interval_seconds: int) -> None:
    """Purge expired sessions, tokens and codes on a fixed interval."""
    from propauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await get_runtime().auth.cleanup_expired()
        except AuthenticationUnavailable as exc:
            logger.warning("auth_cleanup_skipped", error=exc.message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from propauth.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_cleanup(runtime.settings.cleanup_interval_seconds)
    )
    yield
    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="PropAuth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Refresh-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version", "Deprecation", "X-Original-Route"],
    max_age=3600,
)


@app.middleware("http")
async def rewrite_legacy_routes(request: Request, call_next):
    """Map legacy role-prefixed paths onto unified routes before routing."""
    original_path = request.url.path
    target = rewrite_path(original_path)
    if target is None:
        return await call_next(request)
    path, query = split_target(target, request.url.query)
    request.scope["path"] = path
    request.scope["raw_path"] = path.encode()
    request.scope["query_string"] = query.encode()
    logger.info("route_aliased", original_route=original_path, unified_route=path)
    response = await call_next(request)
    response.headers["Deprecation"] = "true"
    response.headers["X-Original-Route"] = original_path
    response.headers["X-Unified-Route"] = path
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line and the response with the request's correlation id."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Directory and Redis reachability, each probe bounded in time."""
    from propauth.service.runtime import get_runtime

    async def _run_bounded(label: str, probe) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _run_bounded("directory", lambda: asyncio.to_thread(runtime.store.ping))
    checks["directory"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.ping)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }
