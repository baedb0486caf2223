from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from keyward.api.error_handling import register_exception_handlers
from keyward.api.routes import router
from keyward.config import Settings, get_settings
from keyward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_cleanup_task: asyncio.Task | None = None


async def _run_enrollment_cleanup(store, interval_seconds: int) -> None:
    """Periodically drop MFA enrollments that were started but never confirmed."""
    interval = max(30, interval_seconds)
    while True:
        await asyncio.sleep(interval)
        try:
            purged = await asyncio.to_thread(store.purge_expired_enrollments)
            if purged:
                logger.info("enrollment_cleanup_completed", purged=purged)
        except Exception as exc:
            logger.warning("enrollment_cleanup_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration and build the runtime before serving traffic."""
    global _cleanup_task
    from keyward.service.runtime import get_runtime

    get_settings().validate_required()
    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_enrollment_cleanup(
            runtime.store, runtime.settings.enrollment_cleanup_interval_seconds
        )
    )
    logger.info("app_started", version=__version__, build=__build__)

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Keyward", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard with credentials enabled
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        "X-Device-Fingerprint",
    ],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the client's X-Request-ID header when present and is
    otherwise generated. It is bound into structured logs and echoed back in
    the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Tokens travel in API bodies; nothing under /v1 may be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path in ("/healthz", "/metrics"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


@app.middleware("http")
async def add_api_version_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_bounded(label: str, func) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


@app.get("/healthz")
async def health(response: Response) -> Dict[str, Any]:
    """Dependency health: database, Redis (if configured), and the state directory."""
    from keyward.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    overall_healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.store.fs_root)

    def _fs_probe() -> None:
        if not fs_path.exists() or not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    overall_healthy = overall_healthy and fs_ok

    if not overall_healthy:
        response.status_code = 503
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _gauge(lines: List[str], name: str, help_text: str, value: Any) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} gauge")
    lines.append(f"{name} {value}")


@app.get("/metrics", response_class=Response)
async def metrics() -> Response:
    """Prometheus text-format metrics."""
    from keyward.service.runtime import get_runtime

    lines: List[str] = []
    lines.append("# HELP keyward_info Application version info")
    lines.append("# TYPE keyward_info gauge")
    lines.append(f'keyward_info{{version="{__version__}",build="{__build__}"}} 1')

    try:
        runtime = get_runtime()
        _gauge(lines, "keyward_cache_available", "Redis cache availability", int(runtime.cache is not None))
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        _gauge(lines, "keyward_database_healthy", "Database connectivity", int(db_ok))
        if db_ok:
            summary = runtime.audit.metrics()
            _gauge(lines, "keyward_users_total", "Active user accounts", summary["total_users"])
            _gauge(lines, "keyward_active_sessions", "Unrevoked, unexpired sessions", summary["active_sessions"])
            _gauge(lines, "keyward_login_success_24h", "Successful logins in the last 24h", summary["login_success_24h"])
            _gauge(lines, "keyward_login_failed_24h", "Failed or denied logins in the last 24h", summary["login_failed_24h"])
            _gauge(lines, "keyward_suspicious_events_24h", "Suspicious audit events in the last 24h", summary["suspicious_24h"])
        _gauge(
            lines,
            "keyward_audit_subscribers",
            "Live audit stream subscribers",
            runtime.audit.broadcaster.subscriber_count,
        )
    except Exception as exc:
        logger.warning("metrics_collection_failed", error=str(exc))

    return Response(
        content="\n".join(lines) + "\n",
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

