from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional, Union

from core.types import PriceAlert, Order, OrderStatus


@dataclass(frozen=True)
class NewToken:
    """A token launched on the bonding curve"""
    mint: str
    signature: str
    timestamp: datetime
    creator: Optional[str] = None
    bonding_curve: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None
    uri: Optional[str] = None
    kind: Literal["new_token"] = "new_token"


@dataclass(frozen=True)
class Trade:
    """A buy or sell against the bonding curve, priced in SOL per token"""
    mint: str
    signature: str
    timestamp: datetime
    side: Literal["buy", "sell"]
    buyer: str
    seller: str
    price_in_quote: Decimal
    base_amount: Decimal
    quote_amount: Decimal
    virtual_sol_reserves: Optional[Decimal] = None
    virtual_token_reserves: Optional[Decimal] = None
    kind: Literal["trade"] = "trade"

    @property
    def is_buy(self) -> bool:
        return self.side == "buy"

    @property
    def trader(self) -> str:
        return self.buyer if self.is_buy else self.seller

    def as_dict(self) -> dict:
        return {
            "mint": self.mint,
            "signature": self.signature,
            "timestamp": self.timestamp,
            "side": self.side,
            "buyer": self.buyer,
            "seller": self.seller,
            "price": float(self.price_in_quote),
            "token_amount": float(self.base_amount),
            "sol_amount": float(self.quote_amount),
        }


TokenEvent = Union[NewToken, Trade]


@dataclass(frozen=True)
class AlertNotification:
    alert: PriceAlert
    value: Decimal
    observed_at: datetime


@dataclass(frozen=True)
class OrderUpdate:
    """Emitted on every order state transition"""
    order: Order
    previous_status: Optional[OrderStatus]
    status: OrderStatus
    at: datetime
