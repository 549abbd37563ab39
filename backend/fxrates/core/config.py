from __future__ import annotations

import json
from decimal import Decimal
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings import NoDecode

# Per-provider HTTP retry policy (transport errors only), used by services/rate_fetcher.py.
HTTP_RETRY_ATTEMPTS = 3
HTTP_RETRY_WAIT_MIN = 0.25
HTTP_RETRY_WAIT_MAX = 1.0

# Providers that make HTTP calls and so count against the upstream timeout.
_HTTP_PROVIDERS = frozenset({"exchangerate_api", "airwallex"})


def http_retry_budget(http_timeout: float) -> float:
    """Worst case for one provider: every attempt times out and every backoff is maximal."""
    return HTTP_RETRY_ATTEMPTS * http_timeout + (HTTP_RETRY_ATTEMPTS - 1) * HTTP_RETRY_WAIT_MAX


def _split_list(v):  # noqa: ANN001
    """
    Accept: string, comma-separated, or JSON list.
    """
    if v is None:
        return v
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        if s.startswith("["):
            try:
                parsed = json.loads(s)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(x).strip() for x in parsed if str(x).strip()]
        return [p.strip() for p in s.split(",") if p.strip()]
    if isinstance(v, (list, tuple, set)):
        return [str(x).strip() for x in v if str(x).strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "FX Rates"
    environment: str = Field(default="development")  # development | production
    log_level: str = Field(default="INFO")

    # Rate cache. 0 disables positive caching (every call goes upstream, still single-flight).
    rates_cache_ttl_seconds: int = Field(default=120, ge=0)
    upstream_timeout_seconds: float = Field(default=10.0, gt=0)
    upstream_max_workers: int = Field(default=8, ge=1)

    # Upstream providers, tried in order: exchangerate_api | airwallex | static.
    # e.g. EXCHANGE_RATE_PROVIDERS="airwallex,exchangerate_api" (Airwallex first, ExchangeRate-API as fallback).
    exchange_rate_providers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["exchangerate_api"])
    # exchangerate-api.com v6. Without a key every lookup is "not found".
    exchange_rate_api_url: str = Field(default="https://v6.exchangerate-api.com/v6")
    exchange_rate_api_key: str | None = Field(default=None)
    # Per HTTP attempt, for every HTTP provider.
    exchange_rate_http_timeout: float = Field(default=2.5, gt=0)
    # Airwallex (sandbox by default). Skipped when client id or key is missing.
    airwallex_api_url: str = Field(default="https://api-demo.airwallex.com")
    airwallex_client_id: str | None = Field(default=None)
    airwallex_api_key: str | None = Field(default=None)
    # Only for the static provider, e.g. STATIC_RATES='{"USD_EUR": "0.9123"}'.
    static_rates: dict[str, Decimal] = Field(default_factory=dict)

    # Customer quote = mid rate * spread (0.99 keeps 1%).
    quote_spread: Decimal = Field(default=Decimal("0.99"))

    # A triggered rate alert stays quiet for this long.
    alert_cooldown_minutes: int = Field(default=60, ge=0)

    # Scheduled refresh walks every ordered pair of these.
    refresh_currencies: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["USD", "EUR", "GBP", "JPY"],
    )

    # Cron can hit /tasks/refresh with this token.
    tasks_refresh_secret: str = Field(default="dev-tasks-secret-change-me")

    cors_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:5173"],
        validation_alias="CORS_ORIGINS",
    )

    @field_validator("refresh_currencies", mode="before")
    @classmethod
    def _parse_refresh_currencies(cls, v):  # noqa: ANN001
        v = _split_list(v)
        if isinstance(v, list):
            return [x.upper() for x in v]
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):  # noqa: ANN001
        return _split_list(v)

    @field_validator("exchange_rate_providers", mode="before")
    @classmethod
    def _parse_providers(cls, v):  # noqa: ANN001
        v = _split_list(v)
        if isinstance(v, list):
            return [x.lower() for x in v]
        return v

    @field_validator("quote_spread")
    @classmethod
    def _check_spread(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("quote_spread must be positive")
        return v

    @model_validator(mode="after")
    def _check_retry_budget(self) -> "Settings":
        # The cache stops waiting after upstream_timeout_seconds; retries past that are wasted.
        n_http = sum(1 for p in self.exchange_rate_providers if p in _HTTP_PROVIDERS)
        worst = n_http * http_retry_budget(self.exchange_rate_http_timeout)
        if worst > self.upstream_timeout_seconds:
            raise ValueError(
                f"{n_http} HTTP provider(s) x {HTTP_RETRY_ATTEMPTS} attempts at {self.exchange_rate_http_timeout}s "
                f"(worst case {worst:.2f}s) exceed upstream_timeout_seconds={self.upstream_timeout_seconds}"
            )
        return self


settings = Settings()
