from __future__ import annotations

import datetime as dt
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from fxrates.core.errors import InvalidInput
from fxrates.models.enums import AlertDirection, RateSource
from fxrates.models.rates import CurrencyPair, FxRateMessage


class ApiModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class FxRateMessageIn(ApiModel):
    """Wire shape of a published rate: {"currencyPair": "USD_EUR", "rateValue": "0.915", "timestamp": ...}."""

    currency_pair: str = Field(validation_alias=AliasChoices("currencyPair", "currency_pair"))
    rate_value: Decimal = Field(gt=0, validation_alias=AliasChoices("rateValue", "rate_value"))
    # ISO-8601 string or epoch seconds.
    timestamp: dt.datetime

    @field_validator("currency_pair")
    @classmethod
    def _check_pair(cls, v: str) -> str:
        try:
            return str(CurrencyPair.parse(v))
        except InvalidInput as e:
            raise ValueError(str(e)) from e

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, v: dt.datetime) -> dt.datetime:
        # Naive timestamps are taken as UTC.
        if v.tzinfo is None:
            return v.replace(tzinfo=dt.timezone.utc)
        return v.astimezone(dt.timezone.utc)

    def to_message(self) -> FxRateMessage:
        return FxRateMessage(pair=CurrencyPair.parse(self.currency_pair), rate=self.rate_value, timestamp=self.timestamp)


class QuoteOut(ApiModel):
    from_currency: str = Field(alias="from")
    to_currency: str = Field(alias="to")
    rate: Decimal
    timestamp: dt.datetime


class RateOut(ApiModel):
    pair: str
    rate: Decimal
    captured_at: dt.datetime
    expires_at: dt.datetime | None
    source: RateSource


class IngestResultOut(ApiModel):
    applied: int = 0
    stale: int = 0
    dropped: int = 0


class InvalidateOut(ApiModel):
    pair: str
    invalidated: bool


class CacheStatsOut(ApiModel):
    entries: int
    live_entries: int
    in_flight: int
    hits: int
    misses: int
    upstream_calls: int
    failures: int
    ingested: int
    stale_ingests: int


class RefreshOut(ApiModel):
    ok: bool
    published: int
    failed: int


class RateAlertIn(ApiModel):
    user_id: int = Field(gt=0, validation_alias=AliasChoices("userId", "user_id"))
    currency_pair: str = Field(validation_alias=AliasChoices("currencyPair", "currency_pair"))
    threshold: Decimal = Field(gt=0, validation_alias=AliasChoices("thresholdValue", "threshold"))
    direction: AlertDirection

    @field_validator("currency_pair")
    @classmethod
    def _check_pair(cls, v: str) -> str:
        try:
            return str(CurrencyPair.parse(v))
        except InvalidInput as e:
            raise ValueError(str(e)) from e


class RateAlertOut(ApiModel):
    id: int
    user_id: int
    currency_pair: str
    threshold: Decimal
    direction: AlertDirection
    active: bool
    created_at: dt.datetime
    last_triggered_at: dt.datetime | None
