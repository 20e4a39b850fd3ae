"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets
from decimal import Decimal, InvalidOperation

import yaml

from config_models import AppConfig, AuthConfig, RentalPolicyConfig

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes")


def _env_bool(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in _TRUE_VALUES


def _policy_config(policy_cfg: dict) -> RentalPolicyConfig:
    defaults = RentalPolicyConfig()
    try:
        km_limit = int(os.environ.get(
            "DEFAULT_DAILY_KM_LIMIT",
            policy_cfg.get("default_daily_km_limit", defaults.default_daily_km_limit),
        ))
        overage_rate = Decimal(str(os.environ.get(
            "DEFAULT_OVERAGE_RATE",
            policy_cfg.get("default_overage_rate", defaults.default_overage_rate),
        )))
        tax_rate = Decimal(str(os.environ.get(
            "TAX_RATE", policy_cfg.get("tax_rate", defaults.tax_rate)
        )))
    except (ValueError, TypeError, InvalidOperation):
        logger.warning("Invalid rental policy configuration, using built-in defaults")
        return defaults

    if not defaults.daily_km_limit_min <= km_limit <= defaults.daily_km_limit_max:
        logger.warning(
            "Configured daily km limit %s outside [%s, %s], using %s",
            km_limit, defaults.daily_km_limit_min, defaults.daily_km_limit_max,
            defaults.default_daily_km_limit,
        )
        km_limit = defaults.default_daily_km_limit
    if not defaults.overage_rate_min <= overage_rate <= defaults.overage_rate_max:
        logger.warning(
            "Configured overage rate %s outside [%s, %s], using %s",
            overage_rate, defaults.overage_rate_min, defaults.overage_rate_max,
            defaults.default_overage_rate,
        )
        overage_rate = defaults.default_overage_rate
    if tax_rate < 0:
        logger.warning("Negative tax rate %s configured, using %s", tax_rate, defaults.tax_rate)
        tax_rate = defaults.tax_rate

    return RentalPolicyConfig(
        default_daily_km_limit=km_limit,
        default_overage_rate=overage_rate,
        tax_rate=tax_rate,
    )


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, AuthConfig, RentalPolicyConfig, tier_overrides, database_uri).
    ``tier_overrides`` is the raw ``tiers:`` list or ``None``.
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    auth_cfg = raw.get("auth", {})
    policy_cfg = raw.get("rental_policy", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable tokens across restarts."
        )

    jwt_secret = os.environ.get("JWT_SECRET", auth_cfg.get("jwt_secret", "")) or secret_key

    return (
        AppConfig(
            name=app_cfg.get("name", "FleetDesk"),
            secret_key=secret_key,
            currency=app_cfg.get("currency", "EUR"),
            rate_limit_enabled=_env_bool("RATELIMIT_ENABLED", app_cfg.get("rate_limit_enabled", True)),
        ),
        AuthConfig(
            jwt_secret=jwt_secret,
            jwt_algorithm=auth_cfg.get("jwt_algorithm", "HS256"),
            token_ttl_hours=int(os.environ.get("JWT_TTL_HOURS", auth_cfg.get("token_ttl_hours", 12))),
        ),
        _policy_config(policy_cfg),
        raw.get("tiers"),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///rentals.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
