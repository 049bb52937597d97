"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Limits ───────────────────────────────────────────────────────
UNLIMITED = -1

# ── Execution Warning Ladder (percent of monthly limit) ─────────
WARNING_THRESHOLD_PCT = 80
CRITICAL_THRESHOLD_PCT = 95
BLOCKED_THRESHOLD_PCT = 100

DEFAULT_EXECUTION_LIMIT = 500  # unknown personal account, metered

# ── Counter Keys ─────────────────────────────────────────────────
EXECUTION_KEY_PREFIX = "exec:monthly"
USAGE_KEY_PREFIX = "usage"
GAUGE_KEY_PREFIX = "gauge"
ACTIVE_OWNERS_KEY_PREFIX = "active"
GAUGE_PERIOD_KEY = "current"

# ── Counter Expiry Grace (seconds past period end) ──────────────
HOURLY_TTL_GRACE = 6 * 3600         # survives until the hourly rollup has run
DAILY_TTL_GRACE = 3600
WEEKLY_TTL_GRACE = 86400
MONTHLY_TTL_GRACE = 86400

# ── Limit Cache ──────────────────────────────────────────────────
LIMIT_CACHE_TTL = 30                # seconds
LIMIT_CACHE_MAX_ENTRIES = 4096
