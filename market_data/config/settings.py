import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field


def _env_flag(name: str, default: str = "false") -> str:
    return os.getenv(name, default).strip().lower()


class Settings(BaseModel):
    ALPHA_VANTAGE_API_KEY: str | None = None
    ALPHA_VANTAGE_BASE_URL: str = "https://www.alphavantage.co"
    MVP_MODE: bool = False
    FALLBACK_POLICY: Literal["fail", "synthesize"] = "fail"

    REDIS_URL: str | None = None
    REDIS_SOCKET_TIMEOUT_SEC: float = Field(default=2.0, gt=0)

    QUOTE_CACHE_TTL_SEC: int = Field(default=300, gt=0)
    INTRADAY_CACHE_TTL_SEC: int = Field(default=60, gt=0)
    SEARCH_CACHE_TTL_SEC: int = Field(default=3600, gt=0)
    MARKET_STATUS_CACHE_TTL_SEC: int = Field(default=300, gt=0)

    PROVIDER_QUOTE_TIMEOUT_SEC: float = Field(default=10.0, gt=0)
    PROVIDER_SERIES_TIMEOUT_SEC: float = Field(default=15.0, gt=0)

    BATCH_REQUEST_DELAY_SEC: float = Field(default=1.0, ge=0)
    BATCH_MAX_SYMBOLS: int = Field(default=10, ge=1)

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def simulation_mode(self) -> bool:
        return self.MVP_MODE or not self.ALPHA_VANTAGE_API_KEY

    @classmethod
    def from_env(cls) -> "Settings":
        raw: dict[str, object] = {
            "ALPHA_VANTAGE_API_KEY": os.getenv("ALPHA_VANTAGE_API_KEY") or None,
            "REDIS_URL": os.getenv("REDIS_URL") or None,
            "MVP_MODE": _env_flag("MVP_MODE") in {"1", "true", "yes", "on"},
            "FALLBACK_POLICY": _env_flag("FALLBACK_POLICY", "fail"),
            "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        }
        # numeric/url overrides are passed through only when present so defaults apply
        for name in (
            "ALPHA_VANTAGE_BASE_URL",
            "REDIS_SOCKET_TIMEOUT_SEC",
            "QUOTE_CACHE_TTL_SEC",
            "INTRADAY_CACHE_TTL_SEC",
            "SEARCH_CACHE_TTL_SEC",
            "MARKET_STATUS_CACHE_TTL_SEC",
            "PROVIDER_QUOTE_TIMEOUT_SEC",
            "PROVIDER_SERIES_TIMEOUT_SEC",
            "BATCH_REQUEST_DELAY_SEC",
            "BATCH_MAX_SYMBOLS",
        ):
            value = os.getenv(name)
            if value is not None and value.strip():
                raw[name] = value.strip()

        return cls.model_validate(raw)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
