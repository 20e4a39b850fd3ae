from dataclasses import dataclass
from decimal import Decimal


@dataclass
class AppConfig:
    name: str
    secret_key: str
    currency: str
    rate_limit_enabled: bool


@dataclass
class AuthConfig:
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    token_ttl_hours: int = 12


@dataclass
class RentalPolicyConfig:
    default_daily_km_limit: int = 300
    daily_km_limit_min: int = 50
    daily_km_limit_max: int = 1000
    default_overage_rate: Decimal = Decimal("20")
    overage_rate_min: Decimal = Decimal("5")
    overage_rate_max: Decimal = Decimal("50")
    tax_rate: Decimal = Decimal("0.19")
