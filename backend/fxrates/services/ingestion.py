"""Push path: apply externally published rate messages to the cache."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Iterable

from pydantic import ValidationError

from fxrates.models.enums import IngestOutcome
from fxrates.models.rates import FxRateMessage
from fxrates.schemas.rates import FxRateMessageIn
from fxrates.services.alerts import RateAlertService
from fxrates.services.rate_cache import RateCache

logger = logging.getLogger(__name__)


def parse_rate_message(raw: Any) -> FxRateMessage | None:
    """
    Accepts a dict, a JSON str/bytes payload, or an already parsed FxRateMessage.
    Returns None (and logs a warning) for anything malformed.
    """
    if isinstance(raw, FxRateMessage):
        return raw
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            parsed = FxRateMessageIn.model_validate_json(raw)
        else:
            parsed = FxRateMessageIn.model_validate(raw)
    except ValidationError as e:
        logger.warning("rate_ingest: dropping malformed message errors=%d first=%s", e.error_count(), e.errors()[0].get("msg"))
        return None
    return parsed.to_message()


class RateIngestor:
    """Applies rate messages to the cache; applied rates are also checked against rate alerts."""

    def __init__(self, cache: RateCache, alerts: RateAlertService | None = None) -> None:
        self._cache = cache
        self._alerts = alerts

    def ingest(self, raw: Any) -> IngestOutcome:
        message = parse_rate_message(raw)
        if message is None:
            return IngestOutcome.DROPPED
        outcome = self._cache.apply_update(message.pair, message.rate, message.timestamp)
        if outcome is IngestOutcome.STALE:
            logger.info("rate_ingest: stale message pair=%s ts=%s", message.pair, message.timestamp.isoformat())
        else:
            logger.debug("rate_ingest: applied pair=%s rate=%s", message.pair, message.rate)
            if self._alerts is not None:
                self._alerts.check(message.pair, message.rate)
        return outcome

    def ingest_many(self, items: Iterable[Any]) -> dict[IngestOutcome, int]:
        counts: Counter[IngestOutcome] = Counter()
        for raw in items:
            counts[self.ingest(raw)] += 1
        return {outcome: counts.get(outcome, 0) for outcome in IngestOutcome}
