import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from logging import Logger
from typing import List, Optional
import logging

from core.types import ExecutionRequest, ExecutionResult, Order, utc_now

NETWORK_FEE_SOL = Decimal("0.000005")  # Average SOL network fee


@dataclass
class SimulatedTransaction:
    timestamp: datetime
    action: str  # Always 'SELL' for protective orders
    order_id: str
    mint: str
    amount_percent: Decimal
    price: Decimal
    execution_price: Decimal
    network_fee: Decimal = NETWORK_FEE_SOL
    tx_sig: str = ""

    @property
    def slippage(self) -> Decimal:
        return self.price - self.execution_price


class DryRunExecutor:
    """Simulated execution: every order succeeds and is recorded in memory"""

    def __init__(self, slippage_bps: int = 200, latency_seconds: float = 0.0, logger: Optional[Logger] = None):
        self.slippage_bps = slippage_bps
        self.latency_seconds = latency_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.transactions: List[SimulatedTransaction] = []

    async def execute(self, order: Order) -> ExecutionResult:
        request = ExecutionRequest.from_order(order)
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        # Sells fill below the trigger price
        execution_price = request.triggered_price * (1 - Decimal(self.slippage_bps) / Decimal(10000))
        tx = SimulatedTransaction(
            timestamp=utc_now(),
            action="SELL",
            order_id=request.order_id,
            mint=request.mint,
            amount_percent=request.amount_percent,
            price=request.triggered_price,
            execution_price=execution_price,
            tx_sig=f"dryrun-{uuid.uuid4().hex}"
        )
        self.transactions.append(tx)
        self.logger.info(
            f"Simulated sell of {request.amount_percent}% {request.mint} "
            f"at {execution_price} for order {request.order_id}"
        )
        return ExecutionResult(success=True, execution_ref=tx.tx_sig)
