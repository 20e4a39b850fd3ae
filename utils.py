"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from flask import jsonify

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    """Parse ``YYYY-MM-DD`` (a trailing ISO time part is ignored)."""
    if not raw:
        return None
    if isinstance(raw, datetime.date):
        return raw
    try:
        return datetime.datetime.strptime(str(raw)[:10], "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def to_decimal(value, default: Decimal = Decimal("0")) -> Decimal:
    """Convert *value* to ``Decimal`` via its string form; *default* on failure."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default


def to_money(value) -> Decimal:
    """Round a monetary amount to cents."""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def money_float(value) -> Optional[float]:
    """Serialize a monetary column for JSON output."""
    if value is None:
        return None
    return float(to_money(value))


# ---------------------------------------------------------------------------
# JSON responses
# ---------------------------------------------------------------------------

def api_success(message: str = "Success", data=None, status: int = 200, meta=None):
    payload = {"success": True, "message": message}
    if data is not None:
        payload["data"] = data
    if meta is not None:
        payload["meta"] = meta
    return jsonify(payload), status
