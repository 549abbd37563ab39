"""Rate alerts: users register a threshold on a pair and get notified when a pushed rate crosses it."""

from __future__ import annotations

import datetime as dt
import itertools
import logging
import threading
from decimal import Decimal
from typing import Callable

from fxrates.core.errors import InvalidInput
from fxrates.models.alerts import AlertNotification, RateAlert
from fxrates.models.enums import AlertDirection
from fxrates.models.rates import CurrencyPair
from fxrates.services.rate_cache import utcnow

logger = logging.getLogger(__name__)

Notifier = Callable[[AlertNotification], None]


def log_notification(n: AlertNotification) -> None:
    logger.info("rate_alert: notify user_id=%s alert_id=%s %s", n.user_id, n.alert_id, n.message)


def _crossed(direction: AlertDirection, rate: Decimal, threshold: Decimal) -> bool:
    # Strict: a rate equal to the threshold never fires.
    if direction is AlertDirection.ABOVE:
        return rate > threshold
    return rate < threshold


class RateAlertService:
    """
    In-memory alert registry.

    check() runs on every applied rate message:
    - only active alerts for that pair are considered
    - an alert that fired less than `cooldown` ago stays quiet
    - fired alerts stay armed; the cooldown is what throttles them
    Notifications are handed to `notify` after the registry lock is released.
    """

    def __init__(
        self,
        *,
        notify: Notifier | None = None,
        cooldown_minutes: int = 60,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        if cooldown_minutes < 0:
            raise ValueError("cooldown_minutes must be >= 0")
        self._notify = notify or log_notification
        self._cooldown = dt.timedelta(minutes=cooldown_minutes)
        self._clock = clock
        self._lock = threading.Lock()
        self._alerts: dict[int, RateAlert] = {}
        self._ids = itertools.count(1)

    def add(self, *, user_id: int, pair: CurrencyPair, direction: AlertDirection, threshold: Decimal) -> RateAlert:
        threshold = Decimal(str(threshold))
        if not threshold.is_finite() or threshold <= 0:
            raise InvalidInput(f"Alert threshold must be a positive number: {threshold}", pair=pair)
        with self._lock:
            alert = RateAlert(
                id=next(self._ids),
                user_id=user_id,
                pair=pair,
                direction=AlertDirection(direction),
                threshold=threshold,
                created_at=self._clock(),
            )
            self._alerts[alert.id] = alert
        logger.info("rate_alert: created id=%d user_id=%s pair=%s %s %s", alert.id, user_id, pair, alert.direction.value, threshold)
        return alert

    def get(self, alert_id: int) -> RateAlert | None:
        with self._lock:
            return self._alerts.get(alert_id)

    def list_for_user(self, user_id: int) -> list[RateAlert]:
        with self._lock:
            return [a for a in self._alerts.values() if a.user_id == user_id]

    def remove(self, alert_id: int) -> bool:
        with self._lock:
            return self._alerts.pop(alert_id, None) is not None

    def check(self, pair: CurrencyPair, rate: Decimal) -> list[AlertNotification]:
        now = self._clock()
        fired: list[AlertNotification] = []
        with self._lock:
            for alert in self._alerts.values():
                if not alert.active or alert.pair != pair:
                    continue
                if alert.last_triggered_at is not None and alert.last_triggered_at > now - self._cooldown:
                    continue
                if not _crossed(alert.direction, rate, alert.threshold):
                    continue
                alert.last_triggered_at = now
                fired.append(
                    AlertNotification(
                        alert_id=alert.id,
                        user_id=alert.user_id,
                        pair=pair,
                        direction=alert.direction,
                        threshold=alert.threshold,
                        rate=rate,
                        triggered_at=now,
                    )
                )

        for n in fired:
            try:
                self._notify(n)
            except Exception:  # one failing notification must not block the rest
                logger.exception("rate_alert: notify failed alert_id=%d user_id=%s", n.alert_id, n.user_id)
        if fired:
            logger.info("rate_alert: pair=%s rate=%s triggered=%d", pair, rate, len(fired))
        return fired
