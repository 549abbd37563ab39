from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from fxrates.core.config import Settings
from fxrates.services.alerts import RateAlertService
from fxrates.services.ingestion import RateIngestor
from fxrates.services.quotes import QuotePublisher, QuoteService
from fxrates.services.rate_cache import RateCache


def constant_time_equals(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_quote_service(request: Request) -> QuoteService:
    return request.app.state.quote_service


def get_rate_cache(service: QuoteService = Depends(get_quote_service)) -> RateCache:
    return service.cache


def get_ingestor(request: Request) -> RateIngestor:
    return request.app.state.ingestor


def get_alert_service(request: Request) -> RateAlertService:
    return request.app.state.alert_service


def get_quote_publisher(request: Request) -> QuotePublisher:
    return request.app.state.quote_publisher


def require_tasks_token(
    x_tasks_token: str | None = Header(default=None),
    cfg: Settings = Depends(get_settings),
) -> None:
    if not constant_time_equals(x_tasks_token, cfg.tasks_refresh_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid tasks token")
