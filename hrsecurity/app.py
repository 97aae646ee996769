from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hrsecurity.api.error_handling import error_response, register_exception_handlers
from hrsecurity.api.routes import CSRF_COOKIE, SESSION_COOKIE, router
from hrsecurity.config import Settings
from hrsecurity.logging import get_logger, set_correlation_id
from hrsecurity.storage.errors import StoreUnavailable
from hrsecurity.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from hrsecurity.service.runtime import get_runtime

    try:
        get_runtime()
        logger.info("runtime_ready_on_startup")
    except Exception as exc:
        logger.error("startup_runtime_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="HR Account Security", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# These endpoints create sessions, so a stale cookie must not block them
_CSRF_EXEMPT_PATHS = {"/v1/auth/login", "/v1/auth/mfa/verify"}


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
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
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "X-Tenant-ID",
        "session_id",
        "X-CSRF-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with a correlation ID.

    The ID comes from the client's X-Request-ID header when present and is
    generated otherwise. It is echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


def _csrf_rejection(message: str) -> JSONResponse:
    return error_response(403, message, code="forbidden")


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    # Only cookie-authenticated, state-changing requests need the double-submit token
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return await call_next(request)
    if request.headers.get("session_id"):
        return await call_next(request)
    session_cookie = request.cookies.get(SESSION_COOKIE)
    if not session_cookie:
        return await call_next(request)
    header_token = request.headers.get("X-CSRF-Token")
    cookie_token = request.cookies.get(CSRF_COOKIE)
    if not header_token or not cookie_token or header_token != cookie_token:
        return _csrf_rejection("missing or invalid CSRF token")
    try:
        from hrsecurity.service.runtime import get_runtime

        runtime = get_runtime()
        session = await runtime.session_store.get(session_cookie)
    except StoreUnavailable as exc:
        logger.warning("csrf_validation_failed", backend=exc.backend)
        return _csrf_rejection("invalid session for CSRF check")
    expected = session.csrf_token if session else None
    if not expected or expected != header_token:
        return _csrf_rejection("missing or invalid CSRF token")
    return await call_next(request)


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
    "Content-Security-Policy": (
        "default-src 'none'; img-src 'self' data:; frame-ancestors 'none'; base-uri 'none'"
    ),
}
# QR codes, backup codes and session ids must not be cached anywhere
_NO_STORE = "no-store, no-cache, must-revalidate, private"


@app.middleware("http")
async def add_response_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path.startswith("/v1/") or path == "/healthz":
        response.headers.setdefault("Cache-Control", _NO_STORE)
        response.headers.setdefault("Pragma", "no-cache")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report database and session-store reachability plus build info.

    Answers 503 when either backend is unreachable so load balancers drain
    the instance.
    """
    from hrsecurity.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": store_type}

    if isinstance(runtime.session_store, RedisSessionStore):
        redis_ok = await _run_bounded("redis", runtime.session_store.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    healthy = db_ok and redis_ok
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)
