from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from decimal import Decimal

from fxrates.core.errors import InvalidInput
from fxrates.models.enums import RateSource

_CODE_RE = re.compile(r"^[A-Z]{3}$")


def normalize_code(code: str | None) -> str:
    c = (code or "").strip().upper()
    if not _CODE_RE.match(c):
        raise InvalidInput(f"Invalid currency code: {code!r}")
    return c


@dataclass(frozen=True)
class CurrencyPair:
    base: str
    quote: str

    @classmethod
    def of(cls, from_currency: str | None, to_currency: str | None) -> CurrencyPair:
        return cls(normalize_code(from_currency), normalize_code(to_currency))

    @classmethod
    def parse(cls, value: str | None) -> CurrencyPair:
        """Parse the "FROM_TO" wire format (e.g. "usd_eur")."""
        parts = (value or "").strip().split("_")
        if len(parts) != 2:
            raise InvalidInput(f"Invalid currency pair: {value!r} (expected FROM_TO)")
        return cls.of(parts[0], parts[1])

    @property
    def is_identity(self) -> bool:
        return self.base == self.quote

    def __str__(self) -> str:
        return f"{self.base}_{self.quote}"


@dataclass(frozen=True)
class FetchedRate:
    """What an upstream fetcher returns when it has a rate."""

    rate: Decimal
    captured_at: dt.datetime


@dataclass(frozen=True)
class RateEntry:
    pair: CurrencyPair
    rate: Decimal
    captured_at: dt.datetime
    expires_at: dt.datetime | None
    source: RateSource

    def is_live(self, now: dt.datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


@dataclass(frozen=True)
class FxRateMessage:
    """A parsed, validated rate message from an upstream publisher."""

    pair: CurrencyPair
    rate: Decimal
    timestamp: dt.datetime


@dataclass(frozen=True)
class CacheStats:
    entries: int
    live_entries: int
    in_flight: int
    hits: int
    misses: int
    upstream_calls: int
    failures: int
    ingested: int
    stale_ingests: int
