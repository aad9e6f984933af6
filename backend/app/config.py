"""
Readiness engine configuration — single source of truth for environment-driven
settings, recompute budgets and calendar limits.

Import from here in services and routes rather than calling os.getenv inline.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


# ── Service identity ───────────────────────────────────────────────────────────
SERVICE_NAME: str = "asc-readiness"
SERVICE_VERSION: str = "1.0.0"

# ── Database ───────────────────────────────────────────────────────────────────
# Empty in dev mode: the engine is built against a placeholder URL and never connects.
DATABASE_URL: str = os.getenv("DATABASE_URL", "")
DB_POOL_SIZE: int = _env_int("DB_POOL_SIZE", 10)
DB_MAX_OVERFLOW: int = _env_int("DB_MAX_OVERFLOW", 20)
DB_POOL_TIMEOUT_SECONDS: float = _env_float("DB_POOL_TIMEOUT_SECONDS", 5.0)
DB_ECHO: bool = _env_bool("DB_ECHO", False)

# ── Auth (token verification only; issuance lives in the identity service) ────
JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

# ── Logging ────────────────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON: bool = os.getenv("LOG_FORMAT", "json").lower() != "text"

# ── CORS ───────────────────────────────────────────────────────────────────────
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")
    if o.strip()
]

# ── Recompute budget ───────────────────────────────────────────────────────────
# Exceeding any of these fails the whole recompute; nothing is partially cached.
READINESS_MAX_CASES: int = _env_int("READINESS_MAX_CASES", 500)
READINESS_MAX_INVENTORY_UNITS: int = _env_int("READINESS_MAX_INVENTORY_UNITS", 50_000)
READINESS_RECOMPUTE_TIMEOUT_SECONDS: float = _env_float("READINESS_RECOMPUTE_TIMEOUT_SECONDS", 30.0)

# Serialize recomputes per (facility, date) inside this process.
READINESS_SERIALIZE_RECOMPUTES: bool = _env_bool("READINESS_SERIALIZE_RECOMPUTES", True)

# ── Calendar read path ─────────────────────────────────────────────────────────
CALENDAR_MAX_RANGE_DAYS: int = _env_int("CALENDAR_MAX_RANGE_DAYS", 92)

# ── Attestation roles ──────────────────────────────────────────────────────────
READINESS_ATTESTER_ROLES: tuple[str, ...] = ("ADMIN", "CIRCULATOR", "INVENTORY_TECH")
SURGEON_ROLE: str = "SURGEON"
ADMIN_ROLE: str = "ADMIN"


@dataclass(frozen=True)
class RecomputeBudget:
    max_cases: int = READINESS_MAX_CASES
    max_inventory_units: int = READINESS_MAX_INVENTORY_UNITS
    timeout_seconds: float = READINESS_RECOMPUTE_TIMEOUT_SECONDS


DEFAULT_BUDGET = RecomputeBudget()
