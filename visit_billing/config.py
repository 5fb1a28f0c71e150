"""Shared configuration for the visiting-nurse billing backend.

This module centralizes environment variable access and default values
to prevent drift between modules.
"""

import os

# Database configuration
DB_PATH = os.getenv("DB_PATH", "./data/visit_billing.db")

# Master rule catalog (YAML/JSON file or directory)
BONUS_CATALOG_PATH = os.getenv("BONUS_CATALOG_PATH", "./config/bonus_catalog.yaml")

# Time-of-day surcharges are judged in the billing office's local time
BILLING_TIMEZONE = os.getenv("BILLING_TIMEZONE", "Asia/Tokyo")

# Recalculation locking (patient + billing month)
RECALC_LOCK_TIMEOUT_SECONDS = float(os.getenv("RECALC_LOCK_TIMEOUT_SECONDS", "30"))
RECALC_LOCK_STALE_SECONDS = float(os.getenv("RECALC_LOCK_STALE_SECONDS", "600"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Maximum rows returned by the audit export endpoint
AUDIT_MAX_EXPORT_ROWS = int(os.getenv("AUDIT_MAX_EXPORT_ROWS", "10000"))

# Rate limit for recalculation endpoints (slowapi syntax)
RECALC_RATE_LIMIT = os.getenv("RECALC_RATE_LIMIT", "10/minute")
