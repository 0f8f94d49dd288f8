from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Backend API settings
    API_BASE_URL: str = 'http://localhost:8000'
    API_TOKEN: Optional[str] = None
    API_TIMEOUT_SECONDS: float = 30.0
    API_CONNECT_RETRIES: int = 2

    # Daily closure refresh
    RECONCILIATION_REFRESH_SECONDS: float = 15.0
    RECONCILIATION_THROTTLE_SECONDS: float = 1.5
    SALES_SYNC_THROTTLE_SECONDS: float = 1.0
    BALANCED_TOLERANCE: Decimal = Decimal("1")

    # Cart rules
    STOCK_EPSILON: Decimal = Decimal("1e-9")
    QUANTITY_DECIMAL_PLACES: int = 3

    # Capability probe (/openapi.json)
    CAPABILITY_PROBE_ATTEMPTS: int = 2
    CAPABILITY_PROBE_BACKOFF_SECONDS: float = 0.5

    # Calendar day used for "today" and past-day locking
    SHOP_TIMEZONE: str = 'Africa/Kigali'

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def api_base_url(self) -> str:
        return self.API_BASE_URL.strip().rstrip("/")

    @property
    def auth_headers(self) -> dict:
        token = (self.API_TOKEN or "").strip()
        if not token or token in ("null", "undefined"):
            return {}
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        return {"Authorization": f"Bearer {token}"}

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TILL_",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("API_BASE_URL", mode="before")
    @classmethod
    def parse_base_url(cls, v):
        if isinstance(v, str):
            return v.strip().strip('"').strip("'")
        return v

settings = Settings()
