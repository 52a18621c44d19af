"""
Runtime configuration for the Smeta backend.

Environment-driven settings are read once at import time; domain constants live
here so services and tests share one source of truth.
"""
import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


# ── Environment ───────────────────────────────────────────────────────────────

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json").lower()

JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

DB_CONFIG: dict[str, object] = {
    "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
    "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
    "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "5")),
}

# Retries apply to the whole unit of work, never to a half-applied transaction
TX_RETRY_CONFIG: dict[str, float] = {
    "attempts": int(os.getenv("TX_RETRY_ATTEMPTS", "3")),
    "backoff_seconds": float(os.getenv("TX_RETRY_BACKOFF_SECONDS", "0.2")),
}

CATALOG_CACHE_TTL_SECONDS: float = float(os.getenv("CATALOG_CACHE_TTL_SECONDS", "300"))


# ── Estimate model ────────────────────────────────────────────────────────────

DEFAULT_PHASE = "Без фазы"
DEFAULT_SECTION_CODE = "00"
DEFAULT_ESTIMATE_METADATA: dict[str, str] = {
    "estimate_type": "строительство",
    "status": "draft",
    "currency": "RUB",
}


# ── Completion acts ───────────────────────────────────────────────────────────

ACT_TYPES: tuple[str, ...] = ("client", "specialist")

ACT_NUMBER_PREFIXES: dict[str, str] = {
    "client": "ACT-CL",
    "specialist": "ACT-SP",
}
ACT_NUMBER_PADDING = 3

ACT_STATUSES: tuple[str, ...] = ("draft", "pending", "approved", "paid", "cancelled")
CANCELLED_STATUS = "cancelled"

NO_SECTION_TITLE = "Без раздела"

# Certificate form codes (OKUD)
KS2_OKUD = "0322005"
KS3_OKUD = "0322006"

# Signatory rows on KS-2/KS-3 are printed in this order; unknown roles go last
SIGNATORY_ORDER: dict[str, int] = {
    "contractor_chief": 1,
    "contractor_accountant": 2,
    "customer_chief": 3,
    "customer_inspector": 4,
}
