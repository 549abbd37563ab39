from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fxrates.api.router import api_router
from fxrates.core.config import Settings, settings
from fxrates.core.errors import InvalidInput, RateError, RateUnavailable, UpstreamFailure
from fxrates.core.logging import configure_logging
from fxrates.services.alerts import RateAlertService
from fxrates.services.ingestion import RateIngestor
from fxrates.services.quotes import QuotePublisher, QuoteService, log_quote
from fxrates.services.rate_cache import build_rate_cache
from fxrates.services.rate_fetcher import make_rate_fetcher

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    RateUnavailable: status.HTTP_404_NOT_FOUND,
    UpstreamFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def build_quote_service(cfg: Settings) -> QuoteService:
    cache = build_rate_cache(make_rate_fetcher(cfg), cfg)
    return QuoteService(cache, spread=cfg.quote_spread, currencies=cfg.refresh_currencies)


def _rate_error_handler(request: Request, exc: RateError) -> JSONResponse:
    code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, UpstreamFailure):
        # Upstream messages can carry provider URLs (and keys); keep them server-side.
        detail = "Upstream rate provider is unavailable. Please try again later."
    else:
        detail = str(exc)
    logger.warning("%s %s -> %d kind=%s pair=%s error=%s", request.method, request.url.path, code, exc.kind, exc.pair, exc)
    return JSONResponse(status_code=code, content={"error": exc.kind, "detail": detail})


def _server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "An unexpected error occurred. Please try again later."},
    )


def create_app(
    cfg: Settings = settings,
    *,
    quote_service: QuoteService | None = None,
    alert_service: RateAlertService | None = None,
    quote_publisher: QuotePublisher | None = None,
) -> FastAPI:
    service = quote_service or build_quote_service(cfg)
    alerts = alert_service or RateAlertService(cooldown_minutes=cfg.alert_cooldown_minutes)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        configure_logging(cfg.log_level)
        logger.info(
            "rate cache ready ttl=%ss upstream_timeout=%ss providers=%s",
            int(service.cache.ttl.total_seconds()),
            cfg.upstream_timeout_seconds,
            ",".join(cfg.exchange_rate_providers),
        )
        try:
            yield
        finally:
            service.cache.close()

    app = FastAPI(title=cfg.app_name, lifespan=lifespan)

    app.state.settings = cfg
    app.state.quote_service = service
    app.state.alert_service = alerts
    app.state.ingestor = RateIngestor(service.cache, alerts)
    app.state.quote_publisher = quote_publisher or log_quote

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RateError, _rate_error_handler)
    app.add_exception_handler(Exception, _server_error_handler)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(api_router)
    return app


app = create_app()
