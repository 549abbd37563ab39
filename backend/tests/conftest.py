"""Pytest fixtures for fxrates tests."""

from __future__ import annotations

import datetime as dt
import threading
import time
from decimal import Decimal

import pytest

from fxrates.models.rates import CurrencyPair, FetchedRate
from fxrates.services.rate_cache import RateCache

T0 = dt.datetime(2026, 1, 5, 12, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self, start: dt.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + dt.timedelta(seconds=seconds)


class CountingFetcher:
    """
    Upstream double.
    - rates: pair "FROM_TO" -> Decimal; missing pairs are "not found".
    - error: raised instead of answering.
    - gate: when set to an Event, fetches block until it is set.
    """

    def __init__(self, rates: dict[str, str] | None = None, *, captured_at: dt.datetime = T0) -> None:
        self.rates = {CurrencyPair.parse(k): Decimal(v) for k, v in (rates or {}).items()}
        self.captured_at = captured_at
        self.error: BaseException | None = None
        self.gate: threading.Event | None = None
        self.calls: list[CurrencyPair] = []
        self._lock = threading.Lock()

    def fetch_rate(self, pair: CurrencyPair) -> FetchedRate | None:
        with self._lock:
            self.calls.append(pair)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.error is not None:
            raise self.error
        rate = self.rates.get(pair)
        if rate is None:
            return None
        return FetchedRate(rate=rate, captured_at=self.captured_at)


def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> CountingFetcher:
    return CountingFetcher({"USD_EUR": "0.9123", "EUR_USD": "1.0961"})


@pytest.fixture
def cache(fetcher, clock):
    c = RateCache(fetcher, ttl_seconds=60, fetch_timeout=2.0, max_workers=4, clock=clock)
    try:
        yield c
    finally:
        if fetcher.gate is not None:
            fetcher.gate.set()
        c.close()
