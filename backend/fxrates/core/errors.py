"""Rate lookup error taxonomy.

Services raise these; only the HTTP layer (fxrates.main) turns them into responses.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from fxrates.models.rates import CurrencyPair


class RateError(RuntimeError):
    kind = "rate_error"

    def __init__(self, message: str, *, pair: CurrencyPair | None = None) -> None:
        super().__init__(message)
        self.pair = pair


class InvalidInput(RateError):
    """Caller error: bad currency code or malformed pair. Not retryable as-is."""

    kind = "invalid_input"


class RateUnavailable(RateError):
    """Upstream has no rate for the pair. Retry later."""

    kind = "rate_unavailable"


class UpstreamFailure(RateError):
    """Upstream errored or timed out. Retry with backoff."""

    kind = "upstream_failure"
