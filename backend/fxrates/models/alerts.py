from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal

from fxrates.models.enums import AlertDirection
from fxrates.models.rates import CurrencyPair


@dataclass
class RateAlert:
    id: int
    user_id: int
    pair: CurrencyPair
    direction: AlertDirection
    threshold: Decimal
    created_at: dt.datetime
    active: bool = True
    last_triggered_at: dt.datetime | None = None


@dataclass(frozen=True)
class AlertNotification:
    alert_id: int
    user_id: int
    pair: CurrencyPair
    direction: AlertDirection
    threshold: Decimal
    rate: Decimal
    triggered_at: dt.datetime

    @property
    def message(self) -> str:
        return (
            f"FX Alert triggered: {self.pair} rate {self.rate:.4f} is now "
            f"{self.direction.value} {self.threshold:.4f}. UserID: {self.user_id}"
        )
