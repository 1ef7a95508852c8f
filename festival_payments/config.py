import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
JWT_SECRET = os.getenv("JWT_SECRET")

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")

WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS", "300"))

# Resolver step 3: only valid for single-tenant deployments
ALLOW_SINGLE_TENANT_FALLBACK = _flag("ALLOW_SINGLE_TENANT_FALLBACK")

PAYPAL_WEBHOOK_PUBLIC_KEY = os.getenv("PAYPAL_WEBHOOK_PUBLIC_KEY", "")

AMOUNT_EPSILON = Decimal(os.getenv("AMOUNT_EPSILON", "0.01"))
RECONCILE_MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3"))

OUTBOUND_TIMEOUT_SECONDS = float(os.getenv("OUTBOUND_TIMEOUT_SECONDS", "5"))
EFFECT_MAX_ATTEMPTS = int(os.getenv("EFFECT_MAX_ATTEMPTS", "5"))
EFFECT_RETRY_BACKOFF_SECONDS = int(os.getenv("EFFECT_RETRY_BACKOFF_SECONDS", "30"))
EFFECT_LEASE_SECONDS = int(os.getenv("EFFECT_LEASE_SECONDS", "300"))

DEDUP_RETENTION_DAYS = int(os.getenv("DEDUP_RETENTION_DAYS", "7"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
