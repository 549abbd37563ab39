from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from fxrates.api.deps import get_ingestor, get_quote_service, get_rate_cache
from fxrates.models.enums import IngestOutcome
from fxrates.models.rates import CurrencyPair
from fxrates.schemas.rates import CacheStatsOut, IngestResultOut, InvalidateOut, QuoteOut, RateOut
from fxrates.services.ingestion import RateIngestor
from fxrates.services.quotes import QuoteService
from fxrates.services.rate_cache import RateCache

router = APIRouter()


@router.get("/quote", response_model=QuoteOut)
def get_quote(
    from_currency: str = Query(alias="from"),
    to_currency: str = Query(alias="to"),
    service: QuoteService = Depends(get_quote_service),
):
    q = service.get_customer_quote(from_currency, to_currency)
    return QuoteOut(from_currency=q.from_currency, to_currency=q.to_currency, rate=q.rate, timestamp=q.timestamp)


@router.get("/rates/{from_currency}/{to_currency}", response_model=RateOut)
def get_rate(from_currency: str, to_currency: str, cache: RateCache = Depends(get_rate_cache)):
    e = cache.get_entry(from_currency, to_currency)
    return RateOut(pair=str(e.pair), rate=e.rate, captured_at=e.captured_at, expires_at=e.expires_at, source=e.source)


@router.delete("/rates/{from_currency}/{to_currency}", response_model=InvalidateOut)
def invalidate_rate(from_currency: str, to_currency: str, cache: RateCache = Depends(get_rate_cache)):
    pair = CurrencyPair.of(from_currency, to_currency)
    return InvalidateOut(pair=str(pair), invalidated=cache.invalidate(pair))


@router.post("/rates/ingest", response_model=IngestResultOut)
def ingest_rates(payload: Any = Body(...), ingestor: RateIngestor = Depends(get_ingestor)):
    """
    Accepts one rate message or a list of them.
    Malformed messages are counted as dropped; they never fail the request.
    """
    items = payload if isinstance(payload, list) else [payload]
    counts = ingestor.ingest_many(items)
    return IngestResultOut(
        applied=counts[IngestOutcome.APPLIED],
        stale=counts[IngestOutcome.STALE],
        dropped=counts[IngestOutcome.DROPPED],
    )


@router.get("/cache/stats", response_model=CacheStatsOut)
def cache_stats(cache: RateCache = Depends(get_rate_cache)):
    s = cache.stats()
    return CacheStatsOut.model_validate(s)
