from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from itertools import permutations
from typing import Callable, Iterable

from fxrates.core.errors import RateError
from fxrates.services.rate_cache import RateCache, utcnow

logger = logging.getLogger(__name__)


def q_rate(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Quote:
    from_currency: str
    to_currency: str
    rate: Decimal
    timestamp: dt.datetime


QuotePublisher = Callable[[Quote], None]


def log_quote(q: Quote) -> None:
    """Default publisher: one log line per refreshed quote."""
    logger.info("rate_refresh: quote pair=%s_%s rate=%s", q.from_currency, q.to_currency, q.rate)


@dataclass
class RefreshReport:
    published: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class QuoteService:
    """Customer-facing quotes: cached mid rate with the spread applied."""

    def __init__(
        self,
        cache: RateCache,
        *,
        spread: Decimal,
        currencies: Iterable[str] = (),
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._spread = spread
        self._currencies = [c.upper() for c in currencies]
        self._clock = clock

    @property
    def cache(self) -> RateCache:
        return self._cache

    def get_customer_quote(self, from_currency: str, to_currency: str) -> Quote:
        entry = self._cache.get_entry(from_currency, to_currency)
        return Quote(
            from_currency=entry.pair.base,
            to_currency=entry.pair.quote,
            rate=q_rate(entry.rate * self._spread),
            timestamp=self._clock(),
        )

    def refresh_all(self, publish: QuotePublisher | None = None) -> RefreshReport:
        """
        Walk every ordered pair of distinct refresh currencies through the cache.
        - Misses hit upstream; live entries are served from memory.
        - A failing pair is logged and counted; the loop always finishes.
        """
        report = RefreshReport()
        for base, quote in permutations(self._currencies, 2):
            key = f"{base}_{quote}"
            try:
                q = self.get_customer_quote(base, quote)
                if publish is not None:
                    publish(q)
            except RateError as e:
                report.failed += 1
                report.errors[key] = e.kind
                logger.warning("rate_refresh: pair=%s kind=%s error=%s", key, e.kind, e)
                continue
            except Exception as e:  # publisher errors must not stop the sweep
                report.failed += 1
                report.errors[key] = "publish_error"
                logger.exception("rate_refresh: publishing pair=%s failed: %s", key, e)
                continue
            report.published += 1
        logger.info("rate_refresh: published=%d failed=%d", report.published, report.failed)
        return report
