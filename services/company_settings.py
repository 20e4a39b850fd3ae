"""Per-company rental policy stored in AppSetting rows."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from flask import current_app

from config_models import RentalPolicyConfig
from extensions import db
from models import AppSetting
from services.errors import InvalidInputError
from utils import to_decimal

logger = logging.getLogger(__name__)

DAILY_KM_LIMIT_KEY = "default_daily_km_limit"
OVERAGE_RATE_KEY = "default_overage_rate"


def _policy_defaults() -> RentalPolicyConfig:
    return current_app.config.get("RENTAL_POLICY") or RentalPolicyConfig()


def _get_company_setting(company_id: int, key: str) -> Optional[str]:
    """Return a per-company AppSetting value, or None when absent or empty."""
    row = AppSetting.query.filter_by(company_id=company_id, key=key).first()
    return row.value if row and row.value else None


def _set_company_setting(company_id: int, key: str, value: str) -> None:
    row = AppSetting.query.filter_by(company_id=company_id, key=key).first()
    if row is None:
        row = AppSetting(company_id=company_id, key=key)
        db.session.add(row)
    row.value = value


def get_default_daily_km_limit(company_id: int) -> int:
    """Company's base daily km limit; configured default when unset or out of bounds."""
    policy = _policy_defaults()
    raw = _get_company_setting(company_id, DAILY_KM_LIMIT_KEY)
    if raw is None:
        return policy.default_daily_km_limit
    try:
        value = int(raw)
    except ValueError:
        value = None
    if value is None or not policy.daily_km_limit_min <= value <= policy.daily_km_limit_max:
        logger.warning(
            "Company %s daily km limit %r invalid, using default %s",
            company_id, raw, policy.default_daily_km_limit,
        )
        return policy.default_daily_km_limit
    return value


def get_default_overage_rate(company_id: int) -> Decimal:
    policy = _policy_defaults()
    raw = _get_company_setting(company_id, OVERAGE_RATE_KEY)
    if raw is None:
        return policy.default_overage_rate
    value = to_decimal(raw, default=None)
    if value is None or not policy.overage_rate_min <= value <= policy.overage_rate_max:
        logger.warning(
            "Company %s overage rate %r invalid, using default %s",
            company_id, raw, policy.default_overage_rate,
        )
        return policy.default_overage_rate
    return value


def get_rental_policy(company_id: int) -> dict:
    policy = _policy_defaults()
    return {
        "default_daily_km_limit": get_default_daily_km_limit(company_id),
        "default_overage_rate": float(get_default_overage_rate(company_id)),
        "tax_rate": float(policy.tax_rate),
        "bounds": {
            "daily_km_limit": [policy.daily_km_limit_min, policy.daily_km_limit_max],
            "overage_rate": [float(policy.overage_rate_min), float(policy.overage_rate_max)],
        },
    }


def validate_daily_km_limit(value) -> int:
    policy = _policy_defaults()
    try:
        km = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError.for_field("daily_km_limit", "must be an integer") from None
    if not policy.daily_km_limit_min <= km <= policy.daily_km_limit_max:
        raise InvalidInputError.for_field(
            "daily_km_limit",
            f"must be between {policy.daily_km_limit_min} and {policy.daily_km_limit_max}",
        )
    return km


def update_rental_policy(company_id: int, data: dict) -> dict:
    """Validate and store policy values. Does not commit."""
    policy = _policy_defaults()
    errors: dict[str, str] = {}
    if DAILY_KM_LIMIT_KEY in data:
        try:
            km = validate_daily_km_limit(data[DAILY_KM_LIMIT_KEY])
            _set_company_setting(company_id, DAILY_KM_LIMIT_KEY, str(km))
        except InvalidInputError as exc:
            errors[DAILY_KM_LIMIT_KEY] = exc.details["daily_km_limit"]
    if OVERAGE_RATE_KEY in data:
        rate = to_decimal(data[OVERAGE_RATE_KEY], default=None)
        if rate is None or not policy.overage_rate_min <= rate <= policy.overage_rate_max:
            errors[OVERAGE_RATE_KEY] = (
                f"must be between {policy.overage_rate_min} and {policy.overage_rate_max}"
            )
        else:
            _set_company_setting(company_id, OVERAGE_RATE_KEY, str(rate))
    if errors:
        raise InvalidInputError("Invalid rental policy", details=errors)
    return get_rental_policy(company_id)
