from __future__ import annotations

from fastapi import APIRouter, Depends

from fxrates.api.deps import get_quote_publisher, get_quote_service, require_tasks_token
from fxrates.schemas.rates import RefreshOut
from fxrates.services.quotes import QuotePublisher, QuoteService

router = APIRouter()


@router.post("/refresh", response_model=RefreshOut, dependencies=[Depends(require_tasks_token)])
def refresh_rates(
    service: QuoteService = Depends(get_quote_service),
    publish: QuotePublisher = Depends(get_quote_publisher),
):
    report = service.refresh_all(publish=publish)
    return RefreshOut(ok=report.failed == 0, published=report.published, failed=report.failed)
