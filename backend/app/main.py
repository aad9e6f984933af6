"""
ASC Readiness API v1.0
Day-before readiness evaluation and caching for ambulatory surgery centers.
FastAPI backend with async PostgreSQL and bearer-JWT verification.
"""
import os
import logging
import time
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

# .env is loaded before app.config reads the environment
load_dotenv()

from app import config  # noqa: E402
from app.services.logging_config import setup_logging  # noqa: E402
from app.services.middleware import RequestTimingMiddleware  # noqa: E402
from app.services.perf_monitor import tracker as perf_tracker  # noqa: E402

setup_logging(level=config.LOG_LEVEL, json_output=config.LOG_JSON)
logger = logging.getLogger("asc-readiness")

_PROCESS_START = time.monotonic()

for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var}, using dev default")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import engine, init_db
    await init_db()
    logger.info(
        f"Readiness budget: {config.READINESS_MAX_CASES} cases, "
        f"{config.READINESS_MAX_INVENTORY_UNITS} units, {config.READINESS_RECOMPUTE_TIMEOUT_SECONDS}s"
    )
    yield
    await engine.dispose()


app = FastAPI(
    title="ASC Readiness API",
    version=config.SERVICE_VERSION,
    description="Day-before surgical case readiness evaluation and caching",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

from app.api.readiness_routes import router as readiness_router  # noqa: E402
from app.api.substitution_routes import router as substitution_router  # noqa: E402

app.include_router(readiness_router)
app.include_router(substitution_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "service": config.SERVICE_NAME,
        "version": config.SERVICE_VERSION,
        "db_configured": bool(config.DATABASE_URL),
    }


@app.get("/metrics")
async def metrics():
    """
    Recompute and cache metrics from the in-process PerformanceTracker singleton.
    Counters are per process and reset on restart.
    """
    snapshot = perf_tracker.get_metrics()
    return {
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
        **snapshot,
    }
