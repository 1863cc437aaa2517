import copy
import uuid
from asyncio import Lock
from datetime import datetime
from decimal import Decimal, InvalidOperation
from logging import Logger
from typing import Callable, Dict, List, Optional, Tuple, Union
import logging

from core.event_bus import EventBus, Handler, Unsubscribe
from core.events import AlertNotification, Trade
from core.types import AlertStatus, AlertType, PriceAlert, PriceSample, utc_now

POLL_SOURCE = "poll"
TRADE_SOURCE = "trade"


def to_decimal(value: Union[Decimal, int, float, str], name: str) -> Decimal:
    """Convert a user supplied number, rejecting anything non-numeric"""
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValueError(f"{name} must be finite, got {value!r}")
    return result


class AlertEngine:
    """Price, volume and market cap alerts evaluated against price samples.

    An alert fires at most once. Samples for one mint are evaluated one at a
    time and a sample older than the last one evaluated for that mint is
    dropped.
    """

    def __init__(self,
                 poller,
                 logger: Optional[Logger] = None,
                 clock: Callable[[], datetime] = utc_now,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.poller = poller
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.id_factory = id_factory

        self.alerts: Dict[str, PriceAlert] = {}
        self.alert_locks: Dict[str, Lock] = {}
        # Poll samples carry local time, trades carry block time; each is ordered on its own
        self.last_evaluated: Dict[Tuple[str, str], datetime] = {}
        self.notifications: EventBus[AlertNotification] = EventBus("alert", self.logger)

        self._unsubscribe_samples = poller.on_sample(self.handle_sample)

    def on_alert(self, handler: Handler) -> Unsubscribe:
        return self.notifications.subscribe(handler)

    def create_alert(self,
                     user_id: str,
                     mint: str,
                     alert_type: Union[AlertType, str],
                     target_value: Union[Decimal, int, float, str]) -> PriceAlert:
        alert_type = AlertType(alert_type)
        target = to_decimal(target_value, "target_value")
        if target <= 0:
            raise ValueError(f"target_value must be positive, got {target}")
        if not mint:
            raise ValueError("mint is required")

        # Raises once the poller is stopped; nothing is stored in that case
        self.poller.acquire(mint)
        alert = PriceAlert(
            id=self.id_factory(),
            user_id=user_id,
            mint=mint,
            alert_type=alert_type,
            target_value=target,
            created_at=self.clock()
        )
        self.alerts[alert.id] = alert
        self.logger.info(f"Created {alert_type.value} alert {alert.id} for {mint} at {target}")
        return copy.copy(alert)

    def cancel_alert(self, alert_id: str) -> bool:
        """Cancel an active alert. False if unknown or no longer active."""
        alert = self.alerts.get(alert_id)
        if alert is None or not alert.is_active:
            return False
        alert.status = AlertStatus.CANCELLED
        self.poller.release(alert.mint)
        self.logger.info(f"Cancelled alert {alert_id}")
        return True

    def get_alert(self, alert_id: str) -> Optional[PriceAlert]:
        alert = self.alerts.get(alert_id)
        return copy.copy(alert) if alert else None

    def get_all_alerts(self) -> List[PriceAlert]:
        return [copy.copy(a) for a in self.alerts.values()]

    def get_active_alerts(self) -> List[PriceAlert]:
        return [copy.copy(a) for a in self.alerts.values() if a.is_active]

    def get_alerts_for_token(self, mint: str, active_only: bool = True) -> List[PriceAlert]:
        return [copy.copy(a) for a in self.alerts.values()
                if a.mint == mint and (a.is_active or not active_only)]

    def get_user_alerts(self, user_id: str, active_only: bool = False) -> List[PriceAlert]:
        return [copy.copy(a) for a in self.alerts.values()
                if a.user_id == user_id and (a.is_active or not active_only)]

    async def handle_trade(self, trade: Trade):
        """Evaluate price alerts directly off a trade"""
        await self.handle_sample(PriceSample(
            mint=trade.mint,
            price=trade.price_in_quote,
            observed_at=trade.timestamp
        ), source=TRADE_SOURCE)

    async def handle_sample(self, sample: PriceSample, source: str = POLL_SOURCE):
        if not any(a.mint == sample.mint and a.is_active for a in self.alerts.values()):
            return

        if sample.mint not in self.alert_locks:
            self.alert_locks[sample.mint] = Lock()

        async with self.alert_locks[sample.mint]:
            watermark = (sample.mint, source)
            last = self.last_evaluated.get(watermark)
            if last is not None and sample.observed_at < last:
                self.logger.debug(f"Ignoring stale {source} sample for {sample.mint} from {sample.observed_at}")
                return
            self.last_evaluated[watermark] = sample.observed_at

            for alert in [a for a in self.alerts.values() if a.mint == sample.mint and a.is_active]:
                value = self.observed_value(alert, sample)
                if value is None or not self.is_triggered(alert, value):
                    continue
                await self._trigger(alert, value, sample)

    @staticmethod
    def observed_value(alert: PriceAlert, sample: PriceSample) -> Optional[Decimal]:
        if alert.alert_type in (AlertType.PRICE_ABOVE, AlertType.PRICE_BELOW):
            return sample.price
        if alert.alert_type == AlertType.VOLUME_ABOVE:
            return sample.volume
        return sample.market_cap

    @staticmethod
    def is_triggered(alert: PriceAlert, value: Decimal) -> bool:
        if alert.alert_type == AlertType.PRICE_BELOW:
            return value <= alert.target_value
        return value >= alert.target_value

    async def _trigger(self, alert: PriceAlert, value: Decimal, sample: PriceSample):
        alert.status = AlertStatus.TRIGGERED
        alert.triggered_at = self.clock()
        alert.current_value = value
        self.poller.release(alert.mint)
        self.logger.info(
            f"Alert {alert.id} triggered: {alert.alert_type.value} {alert.target_value} "
            f"for {alert.mint} (value {value})"
        )
        await self.notifications.publish(AlertNotification(
            alert=copy.copy(alert),
            value=value,
            observed_at=sample.observed_at
        ))

    def close(self):
        self._unsubscribe_samples()
