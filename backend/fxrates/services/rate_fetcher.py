from __future__ import annotations

import datetime as dt
import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Sequence

import httpx
from tenacity import RetryError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from fxrates.core.config import HTTP_RETRY_ATTEMPTS, HTTP_RETRY_WAIT_MAX, HTTP_RETRY_WAIT_MIN, Settings
from fxrates.core.errors import UpstreamFailure
from fxrates.models.rates import CurrencyPair, FetchedRate
from fxrates.services.rate_cache import RateFetcher, utcnow

logger = logging.getLogger(__name__)

# exchangerate-api.com error types that mean "no such rate" rather than "upstream broken".
_NOT_FOUND_ERRORS = frozenset({"unsupported-code"})

# Transport errors only; HTTP status handling is up to each call.
_http_retry = retry(
    retry=retry_if_exception_type(httpx.HTTPError),
    stop=stop_after_attempt(HTTP_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=HTTP_RETRY_WAIT_MIN, min=HTTP_RETRY_WAIT_MIN, max=HTTP_RETRY_WAIT_MAX),
)


def _to_decimal(raw: Any, *, provider: str, quote: str) -> Decimal:
    try:
        # str() first so floats from JSON don't drag binary noise into the Decimal.
        return Decimal(str(raw))
    except InvalidOperation as e:
        raise UpstreamFailure(f"{provider} returned a non-decimal rate for {quote}: {raw!r}") from e


@_http_retry
def _fetch_latest_json(*, api_url: str, api_key: str, base: str, timeout: float) -> dict[str, Any]:
    url = f"{api_url.rstrip('/')}/{api_key}/latest/{base}"
    with httpx.Client(timeout=timeout) as client:
        r = client.get(url, headers={"Accept": "application/json"})
        if r.status_code == 404:
            # Unknown base code comes back as 404 with an error payload.
            try:
                return r.json()
            except ValueError:
                return {"result": "error", "error-type": "unsupported-code"}
        if r.status_code != 200:
            raise UpstreamFailure(f"ExchangeRate API request failed: {r.status_code} {r.text[:200]}")
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamFailure(f"ExchangeRate API returned invalid JSON: {r.text[:200]}") from e


def _parse_conversion_rate(data: dict[str, Any], quote: str) -> tuple[Decimal, dt.datetime] | None:
    """
    Picks conversion_rates[quote] out of a /latest/{base} payload.

    Payload shape:
    - result: "success" | "error" (with "error-type")
    - time_last_update_unix: epoch seconds of the provider's snapshot
    - conversion_rates: {"EUR": 0.9123, ...}
    """
    if data.get("result") == "error":
        error_type = str(data.get("error-type") or "unknown")
        if error_type in _NOT_FOUND_ERRORS:
            return None
        raise UpstreamFailure(f"ExchangeRate API error: {error_type}")

    rates = data.get("conversion_rates")
    if not isinstance(rates, dict):
        raise UpstreamFailure("ExchangeRate API response is missing 'conversion_rates'")
    raw = rates.get(quote)
    if raw is None:
        return None
    rate = _to_decimal(raw, provider="ExchangeRate API", quote=quote)

    ts = data.get("time_last_update_unix")
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        captured_at = dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc)
    else:
        captured_at = utcnow()
    return rate, captured_at


class ExchangeRateApiFetcher:
    """Upstream fetcher backed by exchangerate-api.com (v6 /latest endpoint)."""

    name = "exchangerate_api"

    def __init__(self, *, api_url: str, api_key: str | None, timeout: float = 2.5) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._timeout = timeout
        if not api_key:
            logger.error("exchange_rate_api: EXCHANGE_RATE_API_KEY is not set; every lookup will be 'not found'")

    def fetch_rate(self, pair: CurrencyPair) -> FetchedRate | None:
        if not self._api_key:
            return None
        try:
            data = _fetch_latest_json(api_url=self._api_url, api_key=self._api_key, base=pair.base, timeout=self._timeout)
        except RetryError as e:
            raise UpstreamFailure(
                f"ExchangeRate API request failed (network/timeout): {e.last_attempt.exception()}", pair=pair
            ) from e
        parsed = _parse_conversion_rate(data, pair.quote)
        if parsed is None:
            logger.info("exchange_rate_api: no rate for pair=%s", pair)
            return None
        rate, captured_at = parsed
        return FetchedRate(rate=rate, captured_at=captured_at)


@_http_retry
def _airwallex_login(*, api_url: str, client_id: str, api_key: str, timeout: float) -> dict[str, Any]:
    url = f"{api_url.rstrip('/')}/api/v1/authentication/login"
    headers = {"x-client-id": client_id, "x-api-key": api_key, "x-api-version": "2023-03-01"}
    with httpx.Client(timeout=timeout) as client:
        r = client.post(url, headers=headers, json={})
        if r.status_code not in (200, 201):
            raise UpstreamFailure(f"Airwallex authentication failed: {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamFailure("Airwallex authentication returned invalid JSON") from e


@_http_retry
def _airwallex_current_rate(*, api_url: str, token: str, base: str, quote: str, timeout: float) -> dict[str, Any] | None:
    url = f"{api_url.rstrip('/')}/api/v1/fx/rates/current"
    # Selling 1 unit of base buys `rate` units of quote.
    params = {"buy_currency": quote, "sell_currency": base, "sell_amount": "1"}
    with httpx.Client(timeout=timeout) as client:
        r = client.get(url, params=params, headers={"Authorization": f"Bearer {token}"})
        if r.status_code in (400, 404):
            # Unsupported currency / pair.
            return None
        if r.status_code != 200:
            raise UpstreamFailure(f"Airwallex rate request failed: {r.status_code} {r.text[:200]}")
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamFailure(f"Airwallex returned invalid JSON: {r.text[:200]}") from e


def _parse_expires_at(raw: Any, now: dt.datetime) -> dt.datetime:
    # e.g. "2025-11-14T08:08:30+0000"
    if isinstance(raw, str):
        try:
            parsed = dt.datetime.strptime(raw, "%Y-%m-%dT%H:%M:%S%z")
        except ValueError:
            try:
                parsed = dt.datetime.fromisoformat(raw)
            except ValueError:
                parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)
    logger.warning("airwallex: unparseable token expires_at=%r; assuming 1h", raw)
    return now + dt.timedelta(hours=1)


class AirwallexFetcher:
    """
    Upstream fetcher backed by Airwallex's current-rate endpoint.

    Logs in with client id + API key and reuses the bearer token until
    five minutes before it expires.
    """

    name = "airwallex"
    _TOKEN_MARGIN = dt.timedelta(minutes=5)

    def __init__(
        self,
        *,
        api_url: str,
        client_id: str | None,
        api_key: str | None,
        timeout: float = 2.5,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._api_url = api_url
        self._client_id = client_id
        self._api_key = api_key
        self._timeout = timeout
        self._clock = clock
        self._token_lock = threading.Lock()
        self._token: str | None = None
        self._token_expires_at: dt.datetime | None = None
        if not self.is_configured:
            logger.warning("airwallex: AIRWALLEX_CLIENT_ID / AIRWALLEX_API_KEY not set; provider is skipped")

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id) and bool(self._api_key)

    def _bearer_token(self) -> str:
        with self._token_lock:
            now = self._clock()
            if self._token and self._token_expires_at and now + self._TOKEN_MARGIN < self._token_expires_at:
                return self._token
            data = _airwallex_login(
                api_url=self._api_url, client_id=self._client_id, api_key=self._api_key, timeout=self._timeout
            )
            token = data.get("token")
            if not token:
                raise UpstreamFailure("Airwallex authentication response has no token")
            self._token = str(token)
            self._token_expires_at = _parse_expires_at(data.get("expires_at"), now)
            logger.info("airwallex: authenticated, token expires_at=%s", self._token_expires_at.isoformat())
            return self._token

    def fetch_rate(self, pair: CurrencyPair) -> FetchedRate | None:
        if not self.is_configured:
            return None
        try:
            token = self._bearer_token()
            data = _airwallex_current_rate(
                api_url=self._api_url, token=token, base=pair.base, quote=pair.quote, timeout=self._timeout
            )
        except RetryError as e:
            raise UpstreamFailure(
                f"Airwallex request failed (network/timeout): {e.last_attempt.exception()}", pair=pair
            ) from e
        if data is None or data.get("rate") is None:
            logger.info("airwallex: no rate for pair=%s", pair)
            return None
        return FetchedRate(rate=_to_decimal(data["rate"], provider="Airwallex", quote=pair.quote), captured_at=self._clock())


class StaticRateFetcher:
    """
    In-memory upstream for local development and tests.
    Rates are keyed by "FROM_TO"; unknown pairs are "not found".
    """

    name = "static"

    def __init__(self, rates: dict[str, Decimal | str] | None = None, *, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self._clock = clock
        self._rates: dict[CurrencyPair, Decimal] = {}
        for key, value in (rates or {}).items():
            self.set_rate(key, value)

    def set_rate(self, pair: str, rate: Decimal | str) -> None:
        self._rates[CurrencyPair.parse(pair)] = Decimal(str(rate))

    def fetch_rate(self, pair: CurrencyPair) -> FetchedRate | None:
        rate = self._rates.get(pair)
        if rate is None:
            return None
        return FetchedRate(rate=rate, captured_at=self._clock())


def _provider_name(fetcher: RateFetcher) -> str:
    return getattr(fetcher, "name", type(fetcher).__name__)


class FallbackRateFetcher:
    """
    Tries providers in order and returns the first rate found.
    - A provider that errors is logged and skipped.
    - A provider with no rate for the pair is skipped.
    - If nothing answered and any provider errored: UpstreamFailure. Otherwise "not found".
    """

    name = "fallback"

    def __init__(self, fetchers: Sequence[RateFetcher]) -> None:
        if not fetchers:
            raise ValueError("FallbackRateFetcher needs at least one provider")
        self._fetchers = list(fetchers)

    @property
    def providers(self) -> list[str]:
        return [_provider_name(f) for f in self._fetchers]

    def fetch_rate(self, pair: CurrencyPair) -> FetchedRate | None:
        errors: list[str] = []
        for fetcher in self._fetchers:
            name = _provider_name(fetcher)
            try:
                fetched = fetcher.fetch_rate(pair)
            except Exception as e:
                logger.warning("rate_fetcher: provider=%s failed pair=%s error=%s; trying next", name, pair, e)
                errors.append(f"{name}: {e}")
                continue
            if fetched is not None:
                if errors:
                    logger.info("rate_fetcher: provider=%s answered pair=%s after fallback", name, pair)
                return fetched
        if errors:
            raise UpstreamFailure(f"All rate providers failed for {pair}: {'; '.join(errors)}", pair=pair)
        return None


def _make_static(cfg: Settings) -> RateFetcher:
    return StaticRateFetcher(cfg.static_rates)


def _make_exchangerate_api(cfg: Settings) -> RateFetcher:
    return ExchangeRateApiFetcher(
        api_url=cfg.exchange_rate_api_url,
        api_key=cfg.exchange_rate_api_key,
        timeout=cfg.exchange_rate_http_timeout,
    )


def _make_airwallex(cfg: Settings) -> RateFetcher:
    return AirwallexFetcher(
        api_url=cfg.airwallex_api_url,
        client_id=cfg.airwallex_client_id,
        api_key=cfg.airwallex_api_key,
        timeout=cfg.exchange_rate_http_timeout,
    )


_PROVIDER_REGISTRY: dict[str, Callable[[Settings], RateFetcher]] = {
    "static": _make_static,
    "exchangerate_api": _make_exchangerate_api,
    "airwallex": _make_airwallex,
}


def make_rate_fetcher(cfg: Settings) -> RateFetcher:
    """One provider as is; several become a FallbackRateFetcher in the configured order."""
    fetchers: list[RateFetcher] = []
    for name in cfg.exchange_rate_providers:
        factory = _PROVIDER_REGISTRY.get(name)
        if factory is None:
            raise ValueError(f"Unknown rate provider {name!r}")
        fetchers.append(factory(cfg))
    if not fetchers:
        raise ValueError("exchange_rate_providers is empty")
    if len(fetchers) == 1:
        return fetchers[0]
    return FallbackRateFetcher(fetchers)
