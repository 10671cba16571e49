"""
Application configuration

All environment access goes through this module. Settings are resolved once at
process start; package weight/dimension values that are missing, non-numeric,
zero or negative fall back to the named constants below instead of failing.

SECURITY: Defaults are fail-safe for production.
- SHIPROCKET_ENABLED defaults to False (fulfillment fails closed)
- Carrier credentials have no defaults
"""
import logging
from dataclasses import dataclass
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fulfillment_backend.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SHIPROCKET_DEFAULT_BASE_URL = "https://apiv2.shiprocket.in/v1"

# Package fallbacks (kg / cm)
FALLBACK_WEIGHT_KG = 1.5
FALLBACK_LENGTH_CM = 40.0
FALLBACK_BREADTH_CM = 30.0
FALLBACK_HEIGHT_CM = 10.0

DEFAULT_PICKUP_LOCATION = "Primary"
DEFAULT_PICKUP_PINCODE = "110001"


def _positive_or_fallback(value, fallback: float) -> float:
    if value is None or value == "":
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid package config value {value!r}, using fallback {fallback}")
        return fallback
    if parsed != parsed or parsed <= 0 or parsed == float("inf"):
        logger.warning(f"Non-positive package config value {value!r}, using fallback {fallback}")
        return fallback
    return parsed


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Storefront Fulfillment"
    API_VERSION: str = "v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database
    DATABASE_URL: str = ""

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgres:// URLs to asyncpg format."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600

    # Redis (persistent token slot)
    REDIS_URL: str = ""

    # Internal callers (payment webhook, admin tools)
    SYSTEM_API_TOKEN: str = ""

    # Shiprocket
    SHIPROCKET_ENABLED: bool = False
    SHIPROCKET_EMAIL: str = ""
    SHIPROCKET_PASSWORD: str = ""
    SHIPROCKET_BASE_URL: str = SHIPROCKET_DEFAULT_BASE_URL
    SHIPROCKET_AUTH_URL: str = ""  # Overrides {BASE_URL}/external/auth/login
    SHIPROCKET_CREATE_ORDER_URL: str = ""  # Overrides {BASE_URL}/external/orders/create/adhoc
    SHIPROCKET_PICKUP_LOCATION: str = DEFAULT_PICKUP_LOCATION
    SHIPROCKET_PICKUP_PINCODE: str = DEFAULT_PICKUP_PINCODE
    SHIPROCKET_WEBHOOK_SECRET: str = ""
    SHIPROCKET_HTTP_TIMEOUT_SECONDS: float = 30.0
    SHIPROCKET_MAX_ATTEMPTS: int = 3
    SHIPROCKET_RETRY_INITIAL_DELAY: float = 1.0
    SHIPROCKET_AUTO_ASSIGN_AWB: bool = False

    # A PENDING claim older than this is considered abandoned and may be retaken
    SHIPMENT_CLAIM_TTL_SECONDS: int = 600

    # Package defaults
    DEFAULT_SHIPMENT_WEIGHT: float = FALLBACK_WEIGHT_KG
    DEFAULT_SHIPMENT_LENGTH: float = FALLBACK_LENGTH_CM
    DEFAULT_SHIPMENT_BREADTH: float = FALLBACK_BREADTH_CM
    DEFAULT_SHIPMENT_HEIGHT: float = FALLBACK_HEIGHT_CM

    @field_validator("DEFAULT_SHIPMENT_WEIGHT", mode="before")
    @classmethod
    def parse_weight(cls, v):
        return _positive_or_fallback(v, FALLBACK_WEIGHT_KG)

    @field_validator("DEFAULT_SHIPMENT_LENGTH", mode="before")
    @classmethod
    def parse_length(cls, v):
        return _positive_or_fallback(v, FALLBACK_LENGTH_CM)

    @field_validator("DEFAULT_SHIPMENT_BREADTH", mode="before")
    @classmethod
    def parse_breadth(cls, v):
        return _positive_or_fallback(v, FALLBACK_BREADTH_CM)

    @field_validator("DEFAULT_SHIPMENT_HEIGHT", mode="before")
    @classmethod
    def parse_height(cls, v):
        return _positive_or_fallback(v, FALLBACK_HEIGHT_CM)

    @field_validator("SHIPROCKET_BASE_URL", mode="before")
    @classmethod
    def strip_base_url(cls, v):
        if not v:
            return SHIPROCKET_DEFAULT_BASE_URL
        return v.rstrip("/")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@dataclass(frozen=True)
class PackageDefaults:
    """Default parcel used for every shipment (kg / cm)."""
    weight_kg: float = FALLBACK_WEIGHT_KG
    length_cm: float = FALLBACK_LENGTH_CM
    breadth_cm: float = FALLBACK_BREADTH_CM
    height_cm: float = FALLBACK_HEIGHT_CM


@dataclass(frozen=True)
class ShippingConfig:
    """
    Typed view of the Shiprocket settings used by the service layer.

    Built once from Settings; tests construct it directly.
    """
    enabled: bool = False
    email: str = ""
    password: str = ""
    base_url: str = SHIPROCKET_DEFAULT_BASE_URL
    auth_url_override: str = ""
    create_order_url_override: str = ""
    pickup_location: str = DEFAULT_PICKUP_LOCATION
    pickup_pincode: str = DEFAULT_PICKUP_PINCODE
    webhook_secret: str = ""
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_initial_delay: float = 1.0
    auto_assign_awb: bool = False
    claim_ttl_seconds: int = 600
    package: PackageDefaults = PackageDefaults()

    @classmethod
    def from_settings(cls, s: Settings) -> "ShippingConfig":
        return cls(
            enabled=s.SHIPROCKET_ENABLED,
            email=s.SHIPROCKET_EMAIL,
            password=s.SHIPROCKET_PASSWORD,
            base_url=s.SHIPROCKET_BASE_URL,
            auth_url_override=s.SHIPROCKET_AUTH_URL,
            create_order_url_override=s.SHIPROCKET_CREATE_ORDER_URL,
            pickup_location=(s.SHIPROCKET_PICKUP_LOCATION or DEFAULT_PICKUP_LOCATION).strip(),
            pickup_pincode=(s.SHIPROCKET_PICKUP_PINCODE or DEFAULT_PICKUP_PINCODE).strip(),
            webhook_secret=s.SHIPROCKET_WEBHOOK_SECRET,
            timeout_seconds=s.SHIPROCKET_HTTP_TIMEOUT_SECONDS,
            max_attempts=max(1, s.SHIPROCKET_MAX_ATTEMPTS),
            retry_initial_delay=max(0.0, s.SHIPROCKET_RETRY_INITIAL_DELAY),
            auto_assign_awb=s.SHIPROCKET_AUTO_ASSIGN_AWB,
            claim_ttl_seconds=s.SHIPMENT_CLAIM_TTL_SECONDS,
            package=PackageDefaults(
                weight_kg=s.DEFAULT_SHIPMENT_WEIGHT,
                length_cm=s.DEFAULT_SHIPMENT_LENGTH,
                breadth_cm=s.DEFAULT_SHIPMENT_BREADTH,
                height_cm=s.DEFAULT_SHIPMENT_HEIGHT,
            ),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and self.password)

    @property
    def auth_url(self) -> str:
        return self.auth_url_override or f"{self.base_url}/external/auth/login"

    @property
    def create_order_url(self) -> str:
        return self.create_order_url_override or f"{self.base_url}/external/orders/create/adhoc"

    def ensure_booking_enabled(self) -> None:
        """
        Fail closed when shipments cannot be booked.

        Raises:
            ConfigurationError: integration disabled, credentials or pickup missing
        """
        if not self.enabled:
            raise ConfigurationError(
                "Shiprocket disabled: paid order requires manual fulfillment",
                code="SHIPROCKET_DISABLED",
            )

        missing = []
        if not self.email:
            missing.append("SHIPROCKET_EMAIL")
        if not self.password:
            missing.append("SHIPROCKET_PASSWORD")
        if not self.pickup_location:
            missing.append("SHIPROCKET_PICKUP_LOCATION")
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}",
                details={"missing": missing},
            )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


@lru_cache()
def get_shipping_config() -> ShippingConfig:
    return ShippingConfig.from_settings(get_settings())


settings = get_settings()
