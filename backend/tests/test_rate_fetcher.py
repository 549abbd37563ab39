import datetime as dt
import logging
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

import fxrates.services.rate_fetcher as rate_fetcher
from fxrates.core.config import HTTP_RETRY_ATTEMPTS, HTTP_RETRY_WAIT_MAX, Settings
from fxrates.core.errors import UpstreamFailure
from fxrates.models.rates import CurrencyPair, FetchedRate

USD_EUR = CurrencyPair("USD", "EUR")


def _latest(base: str, rates: dict, ts: int = 1767614400) -> dict:
    # Minimal exchangerate-api v6 /latest shape expected by our parser.
    return {
        "result": "success",
        "base_code": base,
        "time_last_update_unix": ts,
        "conversion_rates": rates,
    }


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(rate_fetcher._fetch_latest_json.retry, "wait", wait_none())


@pytest.fixture
def transport(monkeypatch):
    """Routes httpx.Client used by the fetcher through a MockTransport; returns the request log."""
    state = {"handler": None, "requests": []}
    real_client = httpx.Client

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return state["handler"](request)

    def client_factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(rate_fetcher.httpx, "Client", client_factory)
    return state


def test_fetch_reads_conversion_rate_as_decimal(monkeypatch):
    seen = {}

    def fake_fetch(*, api_url, api_key, base, timeout):
        seen.update(api_url=api_url, api_key=api_key, base=base)
        return _latest(base, {"USD": 1, "EUR": 0.9123})

    monkeypatch.setattr(rate_fetcher, "_fetch_latest_json", fake_fetch)
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6", api_key="k")
    got = f.fetch_rate(USD_EUR)

    assert got.rate == Decimal("0.9123")
    assert got.captured_at == dt.datetime(2026, 1, 5, 12, 0, tzinfo=dt.timezone.utc)
    assert seen == {"api_url": "https://example.test/v6", "api_key": "k", "base": "USD"}


def test_missing_target_currency_is_not_found(monkeypatch):
    monkeypatch.setattr(rate_fetcher, "_fetch_latest_json", lambda **kw: _latest("USD", {"USD": 1}))
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6", api_key="k")
    assert f.fetch_rate(USD_EUR) is None


def test_missing_api_key_skips_the_call(monkeypatch):
    def boom(**kw):
        raise AssertionError("should not be called")

    monkeypatch.setattr(rate_fetcher, "_fetch_latest_json", boom)
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6", api_key=None)
    assert f.fetch_rate(USD_EUR) is None


def test_provider_error_payloads():
    assert rate_fetcher._parse_conversion_rate({"result": "error", "error-type": "unsupported-code"}, "EUR") is None
    with pytest.raises(UpstreamFailure):
        rate_fetcher._parse_conversion_rate({"result": "error", "error-type": "invalid-key"}, "EUR")
    with pytest.raises(UpstreamFailure):
        rate_fetcher._parse_conversion_rate({"result": "success"}, "EUR")


def test_http_success_builds_url_from_key_and_base(transport):
    transport["handler"] = lambda req: httpx.Response(200, json=_latest("USD", {"EUR": 0.9123}))
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6/", api_key="secret")

    assert f.fetch_rate(USD_EUR).rate == Decimal("0.9123")
    assert str(transport["requests"][0].url) == "https://example.test/v6/secret/latest/USD"


def test_http_404_unsupported_code_is_not_found(transport):
    transport["handler"] = lambda req: httpx.Response(404, json={"result": "error", "error-type": "unsupported-code"})
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6", api_key="k")
    assert f.fetch_rate(USD_EUR) is None


def test_http_500_fails_without_retry(transport, no_retry_wait):
    transport["handler"] = lambda req: httpx.Response(500, text="oops")
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6", api_key="k")
    with pytest.raises(UpstreamFailure):
        f.fetch_rate(USD_EUR)
    assert len(transport["requests"]) == 1


def test_transport_errors_are_retried_then_fail(transport, no_retry_wait):
    def handler(req):
        raise httpx.ConnectError("dns failure", request=req)

    transport["handler"] = handler
    f = rate_fetcher.ExchangeRateApiFetcher(api_url="https://example.test/v6", api_key="k")
    with pytest.raises(UpstreamFailure) as exc:
        f.fetch_rate(USD_EUR)
    assert "network/timeout" in str(exc.value)
    assert exc.value.pair == USD_EUR
    assert len(transport["requests"]) == 3


def test_static_fetcher_and_factory():
    cfg = Settings(_env_file=None, exchange_rate_providers="static", static_rates={"usd_eur": "0.9"})
    f = rate_fetcher.make_rate_fetcher(cfg)
    assert isinstance(f, rate_fetcher.StaticRateFetcher)
    assert f.fetch_rate(USD_EUR).rate == Decimal("0.9")
    assert f.fetch_rate(CurrencyPair("EUR", "USD")) is None

    cfg = Settings(_env_file=None)
    assert isinstance(rate_fetcher.make_rate_fetcher(cfg), rate_fetcher.ExchangeRateApiFetcher)

    with pytest.raises(ValueError):
        rate_fetcher.make_rate_fetcher(Settings(_env_file=None, exchange_rate_providers="nope"))
    with pytest.raises(ValueError):
        rate_fetcher.make_rate_fetcher(Settings(_env_file=None, exchange_rate_providers=[]))


def test_factory_builds_fallback_chain_in_configured_order():
    cfg = Settings(
        _env_file=None,
        exchange_rate_providers="Airwallex, exchangerate_api",
        exchange_rate_http_timeout=1.0,
        upstream_timeout_seconds=15,
    )
    f = rate_fetcher.make_rate_fetcher(cfg)
    assert isinstance(f, rate_fetcher.FallbackRateFetcher)
    assert f.providers == ["airwallex", "exchangerate_api"]


class _Provider:
    def __init__(self, name, answer=None, error=None):
        self.name = name
        self.answer = answer
        self.error = error
        self.calls = 0

    def fetch_rate(self, pair):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.answer


def _fetched(rate: str) -> FetchedRate:
    return FetchedRate(rate=Decimal(rate), captured_at=dt.datetime(2026, 1, 5, 12, 0, tzinfo=dt.timezone.utc))


def test_fallback_uses_secondary_when_primary_fails(caplog):
    primary = _Provider("airwallex", error=UpstreamFailure("Airwallex rate request failed: 502"))
    secondary = _Provider("exchangerate_api", answer=_fetched("0.9123"))
    f = rate_fetcher.FallbackRateFetcher([primary, secondary])

    with caplog.at_level(logging.WARNING, logger="fxrates.services.rate_fetcher"):
        assert f.fetch_rate(USD_EUR).rate == Decimal("0.9123")
    assert "provider=airwallex failed" in caplog.text
    assert (primary.calls, secondary.calls) == (1, 1)


def test_fallback_stops_at_first_answer():
    primary = _Provider("airwallex", answer=_fetched("0.91"))
    secondary = _Provider("exchangerate_api", answer=_fetched("0.92"))
    f = rate_fetcher.FallbackRateFetcher([primary, secondary])

    assert f.fetch_rate(USD_EUR).rate == Decimal("0.91")
    assert secondary.calls == 0


def test_fallback_skips_providers_without_the_rate():
    # e.g. Airwallex without credentials answers "no rate".
    f = rate_fetcher.FallbackRateFetcher([_Provider("airwallex"), _Provider("exchangerate_api", answer=_fetched("0.92"))])
    assert f.fetch_rate(USD_EUR).rate == Decimal("0.92")

    f = rate_fetcher.FallbackRateFetcher([_Provider("airwallex"), _Provider("exchangerate_api")])
    assert f.fetch_rate(USD_EUR) is None


def test_fallback_raises_when_every_provider_errors_or_misses():
    f = rate_fetcher.FallbackRateFetcher(
        [_Provider("airwallex", error=RuntimeError("boom")), _Provider("exchangerate_api")]
    )
    with pytest.raises(UpstreamFailure) as exc:
        f.fetch_rate(USD_EUR)
    assert exc.value.pair == USD_EUR
    assert "airwallex: boom" in str(exc.value)


def _airwallex(**kw) -> rate_fetcher.AirwallexFetcher:
    return rate_fetcher.AirwallexFetcher(api_url="https://aw.test", client_id="cid", api_key="key", **kw)


def test_airwallex_logs_in_once_and_reads_rate(transport):
    def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path == "/api/v1/authentication/login":
            assert req.headers["x-client-id"] == "cid"
            assert req.headers["x-api-key"] == "key"
            return httpx.Response(201, json={"token": "tok", "expires_at": "2099-01-01T00:00:00+0000"})
        assert req.headers["Authorization"] == "Bearer tok"
        assert req.url.params["sell_currency"] == "USD"
        assert req.url.params["buy_currency"] == "EUR"
        return httpx.Response(200, json={"rate": "0.91234", "buy_currency": "EUR", "sell_currency": "USD"})

    transport["handler"] = handler
    f = _airwallex()
    assert f.fetch_rate(USD_EUR).rate == Decimal("0.91234")
    assert f.fetch_rate(USD_EUR).rate == Decimal("0.91234")
    paths = [r.url.path for r in transport["requests"]]
    assert paths.count("/api/v1/authentication/login") == 1
    assert paths.count("/api/v1/fx/rates/current") == 2


def test_airwallex_refreshes_token_near_expiry(transport):
    now = dt.datetime(2026, 1, 5, 12, 0, tzinfo=dt.timezone.utc)
    logins = []

    def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path == "/api/v1/authentication/login":
            logins.append(req)
            # Inside the five-minute margin: never reused.
            return httpx.Response(200, json={"token": f"tok{len(logins)}", "expires_at": "2026-01-05T12:04:00+0000"})
        return httpx.Response(200, json={"rate": "0.9"})

    transport["handler"] = handler
    f = _airwallex(clock=lambda: now)
    f.fetch_rate(USD_EUR)
    f.fetch_rate(USD_EUR)
    assert len(logins) == 2


def test_airwallex_unsupported_pair_is_not_found(transport):
    def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path.endswith("/login"):
            return httpx.Response(200, json={"token": "tok", "expires_at": "2099-01-01T00:00:00+0000"})
        return httpx.Response(400, json={"code": "validation_error"})

    transport["handler"] = handler
    assert _airwallex().fetch_rate(USD_EUR) is None


def test_airwallex_auth_failure_is_upstream_failure(transport):
    transport["handler"] = lambda req: httpx.Response(401, json={"code": "unauthorized"})
    with pytest.raises(UpstreamFailure):
        _airwallex().fetch_rate(USD_EUR)


def test_airwallex_without_credentials_is_skipped(transport):
    transport["handler"] = lambda req: pytest.fail("no HTTP call expected")
    f = rate_fetcher.AirwallexFetcher(api_url="https://aw.test", client_id=None, api_key=None)
    assert not f.is_configured
    assert f.fetch_rate(USD_EUR) is None


def test_http_retry_policy_matches_configured_budget():
    for fn in (rate_fetcher._fetch_latest_json, rate_fetcher._airwallex_login, rate_fetcher._airwallex_current_rate):
        assert fn.retry.stop.max_attempt_number == HTTP_RETRY_ATTEMPTS
        assert fn.retry.wait.max == HTTP_RETRY_WAIT_MAX
