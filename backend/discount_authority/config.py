# backend/discount_authority/config.py
from __future__ import annotations
import json
import os


def _json_env(name: str, default):
    raw = os.environ.get(name)
    if not raw:
        return default
    return json.loads(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/discount_authority.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///discount_authority.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ------------------------------------------------------------------
    # Discount authority policy (parsed once into DiscountPolicy at startup)
    # Percentages accept up to 2 decimal places.
    # ------------------------------------------------------------------
    DISCOUNT_HIGH_MARGIN_THRESHOLD_PCT = os.environ.get("DISCOUNT_HIGH_MARGIN_THRESHOLD_PCT", "30")
    DISCOUNT_MIN_MARGIN_BUFFER_PCT = os.environ.get("DISCOUNT_MIN_MARGIN_BUFFER_PCT", "5")

    # Lowest authority first
    DISCOUNT_ROLE_ORDER = tuple(_json_env("DISCOUNT_ROLE_ORDER", ["staff", "manager", "admin"]))

    # role -> {"standard": pct, "high": pct} or {"unrestricted": true}
    DISCOUNT_TIER_TABLE = _json_env(
        "DISCOUNT_TIER_TABLE",
        {
            "staff": {"standard": "5", "high": "10"},
            "manager": {"standard": "15", "high": "25"},
            "admin": {"unrestricted": True},
        },
    )

    # HALF_UP or HALF_EVEN, applied to every cents-level rounding
    DISCOUNT_ROUNDING_MODE = os.environ.get("DISCOUNT_ROUNDING_MODE", "HALF_UP")

    ESCALATION_TIMEOUT_SECONDS = int(os.environ.get("ESCALATION_TIMEOUT_SECONDS", "900"))
    RESERVATION_TIMEOUT_SECONDS = int(os.environ.get("RESERVATION_TIMEOUT_SECONDS", "600"))

    # $500.00 per budget period unless the period is opened with an explicit limit
    DISCOUNT_DEFAULT_BUDGET_CENTS = int(os.environ.get("DISCOUNT_DEFAULT_BUDGET_CENTS", "50000"))

    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))

    AUDIT_WRITE_TIMEOUT_SECONDS = float(os.environ.get("AUDIT_WRITE_TIMEOUT_SECONDS", "2"))
    AUDIT_RETRY_ATTEMPTS = int(os.environ.get("AUDIT_RETRY_ATTEMPTS", "5"))
    AUDIT_RETRY_BACKOFF_SECONDS = float(os.environ.get("AUDIT_RETRY_BACKOFF_SECONDS", "0.5"))
