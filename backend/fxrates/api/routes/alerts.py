from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from fxrates.api.deps import get_alert_service
from fxrates.models.alerts import RateAlert
from fxrates.models.rates import CurrencyPair
from fxrates.schemas.rates import RateAlertIn, RateAlertOut
from fxrates.services.alerts import RateAlertService

router = APIRouter()


def _out(a: RateAlert) -> RateAlertOut:
    return RateAlertOut(
        id=a.id,
        user_id=a.user_id,
        currency_pair=str(a.pair),
        threshold=a.threshold,
        direction=a.direction,
        active=a.active,
        created_at=a.created_at,
        last_triggered_at=a.last_triggered_at,
    )


@router.post("", response_model=RateAlertOut, status_code=status.HTTP_201_CREATED)
def create_alert(payload: RateAlertIn, alerts: RateAlertService = Depends(get_alert_service)):
    alert = alerts.add(
        user_id=payload.user_id,
        pair=CurrencyPair.parse(payload.currency_pair),
        direction=payload.direction,
        threshold=payload.threshold,
    )
    return _out(alert)


@router.get("/user/{user_id}", response_model=list[RateAlertOut])
def list_user_alerts(user_id: int, alerts: RateAlertService = Depends(get_alert_service)):
    return [_out(a) for a in alerts.list_for_user(user_id)]


@router.delete("/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_alert(alert_id: int, alerts: RateAlertService = Depends(get_alert_service)):
    if not alerts.remove(alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
