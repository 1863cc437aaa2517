from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PriceQuote:
    """What a price source answers for one mint"""
    price: Decimal
    volume: Optional[Decimal] = None
    market_cap: Optional[Decimal] = None


@dataclass(frozen=True)
class PriceSample:
    mint: str
    price: Decimal
    volume: Optional[Decimal] = None
    market_cap: Optional[Decimal] = None
    observed_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_quote(cls, mint: str, quote: PriceQuote, observed_at: datetime) -> "PriceSample":
        return cls(
            mint=mint,
            price=quote.price,
            volume=quote.volume,
            market_cap=quote.market_cap,
            observed_at=observed_at,
        )


class AlertType(str, Enum):
    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    VOLUME_ABOVE = "volume_above"
    MARKET_CAP_ABOVE = "market_cap_above"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"


class OrderStatus(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"
    EXECUTED = "executed"
    FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.CANCELLED,
    OrderStatus.EXECUTED,
    OrderStatus.FAILED,
})


@dataclass
class PriceAlert:
    id: str
    user_id: str
    mint: str
    alert_type: AlertType
    target_value: Decimal
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    triggered_at: Optional[datetime] = None
    current_value: Optional[Decimal] = None

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE


@dataclass
class StopLossOrder:
    """Stop-loss or take-profit order, told apart by order_type"""
    id: str
    user_id: str
    position_id: str
    mint: str
    wallet_ref: str
    order_type: OrderType
    trigger_price: Decimal
    amount: Decimal  # Percentage of the position to sell (0-100)
    status: OrderStatus = OrderStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    triggered_at: Optional[datetime] = None
    triggered_price: Optional[Decimal] = None
    execution_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == OrderStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


@dataclass
class TrailingStopOrder:
    id: str
    user_id: str
    position_id: str
    mint: str
    wallet_ref: str
    trailing_percent: Decimal
    highest_price_seen: Decimal
    current_stop_price: Decimal
    amount: Decimal = Decimal(100)
    order_type: OrderType = OrderType.TRAILING_STOP
    status: OrderStatus = OrderStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    triggered_at: Optional[datetime] = None
    triggered_price: Optional[Decimal] = None
    execution_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == OrderStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def observe_price(self, price: Decimal) -> bool:
        """Ratchet the stop up behind a new high. Returns True if it moved."""
        if price <= self.highest_price_seen:
            return False
        self.highest_price_seen = price
        new_stop = trailing_stop_price(price, self.trailing_percent)
        # Only ever moves up
        if new_stop > self.current_stop_price:
            self.current_stop_price = new_stop
        return True


Order = Union[StopLossOrder, TrailingStopOrder]


def trailing_stop_price(highest_price: Decimal, trailing_percent: Decimal) -> Decimal:
    return highest_price * (Decimal(1) - trailing_percent / Decimal(100))


@dataclass(frozen=True)
class ExecutionRequest:
    """Sell request handed to the execution collaborator when an order fires"""
    order_id: str
    order_type: OrderType
    user_id: str
    position_id: str
    mint: str
    wallet_ref: str
    amount_percent: Decimal
    trigger_price: Decimal
    triggered_price: Decimal
    side: str = "sell"

    @classmethod
    def from_order(cls, order: Order) -> "ExecutionRequest":
        trigger = (order.current_stop_price if isinstance(order, TrailingStopOrder)
                   else order.trigger_price)
        return cls(
            order_id=order.id,
            order_type=order.order_type,
            user_id=order.user_id,
            position_id=order.position_id,
            mint=order.mint,
            wallet_ref=order.wallet_ref,
            amount_percent=order.amount,
            trigger_price=trigger,
            triggered_price=order.triggered_price if order.triggered_price is not None else trigger,
        )

    def as_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "orderType": self.order_type.value,
            "userId": self.user_id,
            "positionId": self.position_id,
            "mint": self.mint,
            "wallet": self.wallet_ref,
            "side": self.side,
            "amountPercent": str(self.amount_percent),
            "triggerPrice": str(self.trigger_price),
            "triggeredPrice": str(self.triggered_price),
        }


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    execution_ref: Optional[str] = None
    error: Optional[str] = None
