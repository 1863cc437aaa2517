import asyncio
import copy
import uuid
from asyncio import Lock
from collections import deque
from datetime import datetime
from decimal import Decimal
from logging import Logger
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple, Union
import logging

from core.event_bus import EventBus, Handler, Unsubscribe
from core.events import OrderUpdate, Trade
from core.types import (
    ExecutionResult, Order, OrderStatus, OrderType, PriceSample,
    StopLossOrder, TrailingStopOrder, trailing_stop_price, utc_now
)
from risk.price_alerts import POLL_SOURCE, TRADE_SOURCE, to_decimal

Number = Union[Decimal, int, float, str]

MIN_TRAILING_PERCENT = Decimal(1)
MAX_TRAILING_PERCENT = Decimal(50)


class Executor(Protocol):
    async def execute(self, order: Order) -> ExecutionResult:
        ...


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return max(low, min(high, value))


class OrderMonitor:
    """Stop-loss, take-profit and trailing-stop orders.

    Orders move active -> triggered -> executed | failed, or active ->
    cancelled. A triggered order is handed to the executor exactly once and
    never retried. Every transition is published on on_order_update.
    """

    def __init__(self,
                 poller,
                 executor: Executor,
                 logger: Optional[Logger] = None,
                 clock: Callable[[], datetime] = utc_now,
                 execution_timeout_seconds: float = 30.0,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.poller = poller
        self.executor = executor
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.execution_timeout_seconds = execution_timeout_seconds
        self.id_factory = id_factory

        self.orders: Dict[str, Order] = {}
        self.order_locks: Dict[str, Lock] = {}
        # Keyed by (mint, source): trade block times and poll times are ordered separately
        self.last_evaluated: Dict[Tuple[str, str], datetime] = {}
        self.trade_queues: Dict[str, Deque[PriceSample]] = {}
        self.trade_workers: Dict[str, asyncio.Task] = {}
        self.updates: EventBus[OrderUpdate] = EventBus("order_update", self.logger)

        self._unsubscribe_samples = poller.on_sample(self.handle_sample)

    def on_order_update(self, handler: Handler) -> Unsubscribe:
        return self.updates.subscribe(handler)

    async def create_stop_loss(self, user_id: str, position_id: str, mint: str, wallet_ref: str,
                               trigger_price: Number, amount: Number = 100) -> StopLossOrder:
        """Sell amount percent of the position once price falls to trigger_price"""
        return await self._create_fixed(OrderType.STOP_LOSS, user_id, position_id, mint,
                                         wallet_ref, trigger_price, amount)

    async def create_take_profit(self, user_id: str, position_id: str, mint: str, wallet_ref: str,
                                 trigger_price: Number, amount: Number = 100) -> StopLossOrder:
        """Sell amount percent of the position once price rises to trigger_price"""
        return await self._create_fixed(OrderType.TAKE_PROFIT, user_id, position_id, mint,
                                        wallet_ref, trigger_price, amount)

    async def create_trailing_stop(self, user_id: str, position_id: str, mint: str, wallet_ref: str,
                                   trailing_percent: Number, current_price: Number,
                                   amount: Number = 100) -> TrailingStopOrder:
        price = to_decimal(current_price, "current_price")
        if price <= 0:
            raise ValueError(f"current_price must be positive, got {price}")
        percent = clamp(to_decimal(trailing_percent, "trailing_percent"),
                        MIN_TRAILING_PERCENT, MAX_TRAILING_PERCENT)

        order = TrailingStopOrder(
            id=self.id_factory(),
            user_id=user_id,
            position_id=position_id,
            mint=mint,
            wallet_ref=wallet_ref,
            trailing_percent=percent,
            highest_price_seen=price,
            current_stop_price=trailing_stop_price(price, percent),
            amount=self._amount(amount),
            created_at=self.clock()
        )
        return await self._register(order)

    async def _create_fixed(self, order_type: OrderType, user_id: str, position_id: str, mint: str,
                            wallet_ref: str, trigger_price: Number, amount: Number) -> StopLossOrder:
        trigger = to_decimal(trigger_price, "trigger_price")
        if trigger <= 0:
            raise ValueError(f"trigger_price must be positive, got {trigger}")

        order = StopLossOrder(
            id=self.id_factory(),
            user_id=user_id,
            position_id=position_id,
            mint=mint,
            wallet_ref=wallet_ref,
            order_type=order_type,
            trigger_price=trigger,
            amount=self._amount(amount),
            created_at=self.clock()
        )
        return await self._register(order)

    @staticmethod
    def _amount(amount: Number) -> Decimal:
        return clamp(to_decimal(amount, "amount"), Decimal(0), Decimal(100))

    async def _register(self, order: Order) -> Order:
        if not order.mint:
            raise ValueError("mint is required")
        # Raises once the poller is stopped; nothing is stored in that case
        self.poller.acquire(order.mint)
        self.orders[order.id] = order
        self.logger.info(f"Created {order.order_type.value} order {order.id} for {order.mint}")
        await self._publish(order, None)
        return copy.copy(order)

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an active order. False once it has triggered or finished."""
        order = self.orders.get(order_id)
        if order is None or not order.is_active:
            return False
        order.status = OrderStatus.CANCELLED
        self.poller.release(order.mint)
        self.logger.info(f"Cancelled order {order_id}")
        await self._publish(order, OrderStatus.ACTIVE)
        return True

    def get_order(self, order_id: str) -> Optional[Order]:
        order = self.orders.get(order_id)
        return copy.copy(order) if order else None

    def get_all_orders(self) -> List[Order]:
        return [copy.copy(o) for o in self.orders.values()]

    def get_active_orders(self) -> List[Order]:
        return [copy.copy(o) for o in self.orders.values() if o.is_active]

    def get_orders_for_token(self, mint: str, active_only: bool = True) -> List[Order]:
        return [copy.copy(o) for o in self.orders.values()
                if o.mint == mint and (o.is_active or not active_only)]

    def get_user_orders(self, user_id: str, active_only: bool = False) -> List[Order]:
        return [copy.copy(o) for o in self.orders.values()
                if o.user_id == user_id and (o.is_active or not active_only)]

    async def handle_trade(self, trade: Trade):
        """Queue a trade for evaluation and return without waiting on it.

        Triggered orders wait on the executor, so trades are evaluated by a
        per-mint worker task in arrival order instead of on the ingestion path.
        """
        if not self._has_active(trade.mint):
            return

        queue = self.trade_queues.setdefault(trade.mint, deque())
        queue.append(PriceSample(
            mint=trade.mint,
            price=trade.price_in_quote,
            observed_at=trade.timestamp
        ))

        worker = self.trade_workers.get(trade.mint)
        if worker is None or worker.done():
            self.trade_workers[trade.mint] = asyncio.create_task(
                self._drain_trades(trade.mint), name=f"orders-{trade.mint}"
            )

    async def _drain_trades(self, mint: str):
        queue = self.trade_queues[mint]
        while queue:
            sample = queue.popleft()
            try:
                await self.handle_sample(sample, source=TRADE_SOURCE)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error evaluating trade for {mint}: {str(e)}")

    def _has_active(self, mint: str) -> bool:
        return any(o.mint == mint and o.is_active for o in self.orders.values())

    async def handle_sample(self, sample: PriceSample, source: str = POLL_SOURCE):
        if not self._has_active(sample.mint):
            return

        if sample.mint not in self.order_locks:
            self.order_locks[sample.mint] = Lock()

        # Every order on this mint is evaluated under one lock, one sample at a time
        async with self.order_locks[sample.mint]:
            watermark = (sample.mint, source)
            last = self.last_evaluated.get(watermark)
            if last is not None and sample.observed_at < last:
                self.logger.debug(f"Ignoring stale {source} sample for {sample.mint} from {sample.observed_at}")
                return
            self.last_evaluated[watermark] = sample.observed_at

            for order in [o for o in self.orders.values() if o.mint == sample.mint and o.is_active]:
                if not order.is_active:
                    continue
                if self.should_trigger(order, sample.price):
                    await self._trigger(order, sample.price)

    @staticmethod
    def should_trigger(order: Order, price: Decimal) -> bool:
        """Ratchets trailing stops before checking them"""
        if isinstance(order, TrailingStopOrder):
            order.observe_price(price)
            return price <= order.current_stop_price
        if order.order_type == OrderType.TAKE_PROFIT:
            return price >= order.trigger_price
        return price <= order.trigger_price

    async def _trigger(self, order: Order, price: Decimal):
        order.status = OrderStatus.TRIGGERED
        order.triggered_at = self.clock()
        order.triggered_price = price
        self.poller.release(order.mint)
        self.logger.info(f"{order.order_type.value} order {order.id} triggered for {order.mint} at {price}")
        await self._publish(order, OrderStatus.ACTIVE)

        result = await self._execute(order)
        if result.success:
            order.status = OrderStatus.EXECUTED
            order.execution_ref = result.execution_ref
            self.logger.info(f"Order {order.id} executed: {result.execution_ref}")
        else:
            order.status = OrderStatus.FAILED
            order.error = result.error or "execution failed"
            self.logger.error(f"Order {order.id} failed: {order.error}")
        await self._publish(order, OrderStatus.TRIGGERED)

    async def _execute(self, order: Order) -> ExecutionResult:
        try:
            result = await asyncio.wait_for(
                self.executor.execute(copy.copy(order)),
                timeout=self.execution_timeout_seconds
            )
        except asyncio.TimeoutError:
            return ExecutionResult(success=False, error=f"execution timed out after {self.execution_timeout_seconds}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return ExecutionResult(success=False, error=str(e) or type(e).__name__)

        if not isinstance(result, ExecutionResult):
            return ExecutionResult(success=False, error=f"unexpected execution result: {result!r}")
        return result

    async def _publish(self, order: Order, previous: Optional[OrderStatus]):
        await self.updates.publish(OrderUpdate(
            order=copy.copy(order),
            previous_status=previous,
            status=order.status,
            at=self.clock()
        ))

    async def drain(self):
        """Wait for every queued trade evaluation, executions included"""
        while True:
            pending = [t for t in self.trade_workers.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self):
        """Stop taking samples and let queued trade evaluations finish"""
        self._unsubscribe_samples()
        await self.drain()
