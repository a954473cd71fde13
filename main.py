"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire API routers (auth, client, employee, admin, notifications, payments, realtime)
- Register centralized exception handlers
- Provide middleware: request-id logging, in-memory rate limiting
- Add health / readiness endpoints
- Lifespan: create tables, build the change feed + notification hub and the
  OTP store; on shutdown tear down every hub channel before the feed and the DB
Notes:
- SSE streams are long-lived: run uvicorn with a large keep-alive timeout and
  keep /api/rt/ out of any proxy buffering.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
import uvicorn

from api import (
    routes_admin, routes_auth, routes_client, routes_employee, routes_notifications, routes_payments,
    routes_realtime,
)
from config.settings import settings
from core.db import engine, init_models
from core.exception_handlers import register_exception_handlers
from core.logging import request_logging_middleware, setup_logging
from core.rate_limiter import RateLimiterMiddleware
from core.realtime import build_realtime
from core.response import ok, error
from services.otp_store import build_otp_store

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup:
    - Create DB tables (idempotent)
    - Build the realtime hub and OTP store and hang them on app.state
    On shutdown:
    - Cancel every upstream subscription, then close the feed and the engine
    """
    try:
        await init_models()
    except Exception as e:
        # keep serving /health so orchestrators can see the process; /ready reports the DB
        logger.error("DB initialization failed on startup: %s", e)

    app.state.realtime = build_realtime()
    app.state.otp_store = build_otp_store()
    logger.info("%s %s started", settings.API_TITLE, settings.API_VERSION)
    try:
        yield
    finally:
        await app.state.realtime.close()
        if app.state.otp_store.redis_client is not None:
            await app.state.otp_store.redis_client.disconnect()
        if engine is not None:
            await engine.dispose()
        logger.info("Shutdown complete")


app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes_auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(routes_client.router, prefix="/api/client", tags=["client"])
app.include_router(routes_employee.router, prefix="/api/employee", tags=["employee"])
app.include_router(routes_admin.router, prefix="/api/admin", tags=["admin"])
app.include_router(routes_notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(routes_payments.router, prefix="/api/payments", tags=["payments"])
app.include_router(routes_realtime.router, prefix="/api/rt", tags=["realtime"])

register_exception_handlers(app)

app.middleware("http")(request_logging_middleware)

app.add_middleware(RateLimiterMiddleware, calls=settings.RATE_LIMIT_CALLS, per_seconds=settings.RATE_LIMIT_PERIOD)


@app.get("/health")
async def health():
    """Simple health endpoint used by load balancers and orchestrators."""
    realtime = getattr(app.state, "realtime", None)
    return ok({"status": "ok", "realtime": realtime.hub.stats() if realtime else None})


@app.get("/ready")
async def ready():
    """Readiness: check DB connectivity."""
    if engine is None:
        return JSONResponse(status_code=503, content=error("db_disabled", "DB is not configured"))
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return ok({"ready": True})
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(status_code=503, content=error("db_unreachable", "DB unavailable"))


if __name__ == "__main__":
    # timeout_keep_alive covers idle SSE connections between heartbeats
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG, timeout_keep_alive=3600)
