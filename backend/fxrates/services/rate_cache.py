"""Single-flight, refresh-through exchange rate cache.

- Live entry: returned straight from memory.
- Miss/expired: the first caller becomes the leader and fetches upstream; every other
  caller for the same pair waits on the leader's outcome instead of fetching too.
- Only successful fetches are stored. RateUnavailable / UpstreamFailure are shared
  with all waiters of that miss and the next call retries.
- Ingested messages are applied by capture time, so an out-of-order message never
  replaces a fresher rate. A fetch only yields to a later-captured entry that was
  written while it was in flight; an expired entry is always replaced.
"""

from __future__ import annotations

import concurrent.futures
import datetime as dt
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from decimal import Decimal, InvalidOperation
from typing import Callable, Protocol

from fxrates.core.config import Settings
from fxrates.core.errors import RateError, RateUnavailable, UpstreamFailure
from fxrates.models.enums import IngestOutcome, RateSource
from fxrates.models.rates import CacheStats, CurrencyPair, FetchedRate, RateEntry

logger = logging.getLogger(__name__)


class RateFetcher(Protocol):
    def fetch_rate(self, pair: CurrencyPair) -> FetchedRate | None:
        """Return the upstream rate, None if upstream has no rate, raise on error."""
        ...


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class RateCache:
    def __init__(
        self,
        fetcher: RateFetcher,
        *,
        ttl_seconds: float = 120,
        fetch_timeout: float = 10.0,
        max_workers: int = 8,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")
        self._fetcher = fetcher
        self._ttl = dt.timedelta(seconds=ttl_seconds)
        self._timeout = fetch_timeout
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rate-fetch")

        # One lock guards entries, in-flight markers and counters.
        self._lock = threading.Lock()
        self._entries: dict[CurrencyPair, RateEntry] = {}
        self._inflight: dict[CurrencyPair, Future] = {}
        self._hits = 0
        self._misses = 0
        self._upstream_calls = 0
        self._failures = 0
        self._ingested = 0
        self._stale_ingests = 0

    @property
    def ttl(self) -> dt.timedelta:
        return self._ttl

    # Lookups ---------------------------------------------------
    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        return self.get_entry(from_currency, to_currency).rate

    def get_entry(self, from_currency: str, to_currency: str) -> RateEntry:
        pair = CurrencyPair.of(from_currency, to_currency)
        if pair.is_identity:
            return RateEntry(pair=pair, rate=Decimal("1"), captured_at=self._clock(), expires_at=None, source=RateSource.IDENTITY)

        with self._lock:
            entry = self._entries.get(pair)
            if entry is not None and entry.is_live(self._clock()):
                self._hits += 1
                return entry
            self._misses += 1
            episode = self._inflight.get(pair)
            leader = episode is None
            if leader:
                episode = Future()
                self._inflight[pair] = episode

        if leader:
            self._lead(pair, episode, seen=entry)
        else:
            logger.debug("rate_cache: joining in-flight fetch pair=%s", pair)
        return episode.result()

    def peek(self, pair: CurrencyPair) -> RateEntry | None:
        """Live entry for pair, or None. Never fetches."""
        with self._lock:
            entry = self._entries.get(pair)
            if entry is not None and entry.is_live(self._clock()):
                return entry
            return None

    # Fetch path ------------------------------------------------
    def _lead(self, pair: CurrencyPair, episode: Future, seen: RateEntry | None) -> None:
        # The marker is cleared before the episode resolves, on every path.
        try:
            fetched = self._fetch(pair)
            with self._lock:
                try:
                    entry = self._store_fetched(pair, fetched, seen)
                finally:
                    self._inflight.pop(pair, None)
        except RateError as e:
            self._fail(pair, episode, e)
            return
        except Exception as e:
            logger.exception("rate_cache: unexpected error while fetching pair=%s", pair)
            self._fail(pair, episode, UpstreamFailure(f"Upstream fetch for {pair} failed: {e}", pair=pair))
            return
        except BaseException:
            # Interrupts still propagate in the leader; waiters get an UpstreamFailure.
            self._fail(pair, episode, UpstreamFailure(f"Upstream fetch for {pair} was interrupted", pair=pair))
            raise

        logger.info("rate_cache: fetched pair=%s rate=%s", pair, entry.rate)
        episode.set_result(entry)

    def _fail(self, pair: CurrencyPair, episode: Future, err: RateError) -> None:
        with self._lock:
            self._failures += 1
            self._inflight.pop(pair, None)
        logger.warning("rate_cache: fetch failed pair=%s kind=%s error=%s", pair, err.kind, err)
        episode.set_exception(err)

    def _fetch(self, pair: CurrencyPair) -> FetchedRate:
        with self._lock:
            self._upstream_calls += 1
        try:
            job = self._pool.submit(self._fetcher.fetch_rate, pair)
        except RuntimeError as e:
            # Pool is shut down (cache closed).
            raise UpstreamFailure(f"Rate cache is closed: {e}", pair=pair) from e

        try:
            fetched = job.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as e:
            job.cancel()
            raise UpstreamFailure(f"Upstream fetch for {pair} timed out after {self._timeout}s", pair=pair) from e
        except RateError as e:
            if e.pair is None:
                e.pair = pair
            raise
        except Exception as e:
            raise UpstreamFailure(f"Upstream fetch for {pair} failed: {e}", pair=pair) from e

        if fetched is None:
            raise RateUnavailable(f"No rate available for {pair}", pair=pair)
        try:
            rate = Decimal(str(fetched.rate))
        except InvalidOperation as e:
            raise UpstreamFailure(f"Upstream returned a non-decimal rate for {pair}: {fetched.rate!r}", pair=pair) from e
        if not rate.is_finite() or rate <= 0:
            raise UpstreamFailure(f"Upstream returned a non-positive rate for {pair}: {rate}", pair=pair)
        captured_at = fetched.captured_at
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=dt.timezone.utc)
        return FetchedRate(rate=rate, captured_at=captured_at)

    def _store_fetched(self, pair: CurrencyPair, fetched: FetchedRate, seen: RateEntry | None) -> RateEntry:
        """
        Caller holds self._lock. `seen` is the entry that was cached when this fetch started.

        An entry written while the fetch was in flight wins if it was captured later than
        the upstream answer; it keeps its own expiry. Anything older, including an expired
        entry with a later timestamp, is replaced by the fetched rate.
        """
        existing = self._entries.get(pair)
        if existing is not None and existing is not seen and existing.captured_at > fetched.captured_at:
            return existing
        entry = RateEntry(
            pair=pair,
            rate=fetched.rate,
            captured_at=fetched.captured_at,
            expires_at=self._clock() + self._ttl,
            source=RateSource.FETCH,
        )
        self._entries[pair] = entry
        return entry

    # Push path -------------------------------------------------
    def apply_update(self, pair: CurrencyPair, rate: Decimal, captured_at: dt.datetime) -> IngestOutcome:
        """
        Overwrite the entry for pair if captured_at is newer than the cached capture time.
        Equal or older timestamps are discarded (last writer by time wins).
        """
        if captured_at.tzinfo is None:
            captured_at = captured_at.replace(tzinfo=dt.timezone.utc)
        with self._lock:
            existing = self._entries.get(pair)
            if existing is not None and captured_at <= existing.captured_at:
                self._stale_ingests += 1
                return IngestOutcome.STALE
            self._entries[pair] = RateEntry(
                pair=pair,
                rate=rate,
                captured_at=captured_at,
                expires_at=self._clock() + self._ttl,
                source=RateSource.INGEST,
            )
            self._ingested += 1
            return IngestOutcome.APPLIED

    # Eviction / lifecycle -----------------------------------------
    def invalidate(self, pair: CurrencyPair) -> bool:
        with self._lock:
            return self._entries.pop(pair, None) is not None

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            return n

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            return CacheStats(
                entries=len(self._entries),
                live_entries=sum(1 for e in self._entries.values() if e.is_live(now)),
                in_flight=len(self._inflight),
                hits=self._hits,
                misses=self._misses,
                upstream_calls=self._upstream_calls,
                failures=self._failures,
                ingested=self._ingested,
                stale_ingests=self._stale_ingests,
            )

    def close(self) -> None:
        """Stop the fetch pool. Later misses fail with UpstreamFailure."""
        self._pool.shutdown(wait=False, cancel_futures=True)
        self.clear()


def build_rate_cache(fetcher: RateFetcher, cfg: Settings) -> RateCache:
    return RateCache(
        fetcher,
        ttl_seconds=cfg.rates_cache_ttl_seconds,
        fetch_timeout=cfg.upstream_timeout_seconds,
        max_workers=cfg.upstream_max_workers,
    )
