from __future__ import annotations

import enum


class RateSource(str, enum.Enum):
    FETCH = "FETCH"  # pulled from upstream on a cache miss
    INGEST = "INGEST"  # pushed by a rate message
    IDENTITY = "IDENTITY"  # from == to, never cached


class IngestOutcome(str, enum.Enum):
    APPLIED = "APPLIED"
    STALE = "STALE"  # older than (or same age as) the cached entry
    DROPPED = "DROPPED"  # malformed message


class AlertDirection(str, enum.Enum):
    ABOVE = "ABOVE"  # fires when rate > threshold
    BELOW = "BELOW"  # fires when rate < threshold
