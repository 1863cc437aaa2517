"""Tests for stop-loss, take-profit and trailing-stop orders."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import T0, StoppedPoller, make_trade
from core.types import ExecutionResult, OrderStatus, OrderType, PriceSample, TrailingStopOrder
from risk.order_monitor import OrderMonitor


def _monitor(fake_poller, executor=None, **kwargs) -> OrderMonitor:
    ids = iter(f"O{i}" for i in range(1, 100))
    if executor is None:
        executor = AsyncMock()
        executor.execute.return_value = ExecutionResult(success=True, execution_ref="TX1")
    return OrderMonitor(fake_poller, executor, id_factory=lambda: next(ids), **kwargs)


class TestStopLoss:
    @pytest.mark.asyncio
    async def test_triggers_at_first_price_under_trigger(self, fake_poller, mint, samples) -> None:
        """Stop at 0.8 fed 1.0, 0.9, 0.79 triggers on 0.79 and executes."""
        monitor = _monitor(fake_poller)
        updates = []
        monitor.on_order_update(updates.append)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        for price in ["1.0", "0.9"]:
            await monitor.handle_sample(samples(price))
            assert monitor.get_order(order.id).is_active

        await monitor.handle_sample(samples("0.79"))

        stored = monitor.get_order(order.id)
        assert stored.status == OrderStatus.EXECUTED
        assert stored.triggered_price == Decimal("0.79")
        assert stored.execution_ref == "TX1"
        assert [(u.previous_status, u.status) for u in updates] == [
            (None, OrderStatus.ACTIVE),
            (OrderStatus.ACTIVE, OrderStatus.TRIGGERED),
            (OrderStatus.TRIGGERED, OrderStatus.EXECUTED),
        ]
        monitor.executor.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_execution_failure_marks_failed(self, fake_poller, mint, samples) -> None:
        executor = AsyncMock()
        executor.execute.return_value = ExecutionResult(success=False, error="slippage exceeded")
        monitor = _monitor(fake_poller, executor)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await monitor.handle_sample(samples("0.79"))

        stored = monitor.get_order(order.id)
        assert stored.status == OrderStatus.FAILED
        assert stored.error == "slippage exceeded"

    @pytest.mark.asyncio
    async def test_executor_exception_marks_failed(self, fake_poller, mint, samples) -> None:
        executor = AsyncMock()
        executor.execute.side_effect = ConnectionError("swap service unreachable")
        monitor = _monitor(fake_poller, executor)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await monitor.handle_sample(samples("0.5"))

        stored = monitor.get_order(order.id)
        assert stored.status == OrderStatus.FAILED
        assert "unreachable" in stored.error

    @pytest.mark.asyncio
    async def test_execution_timeout_marks_failed(self, fake_poller, mint, samples) -> None:
        async def hang(order):
            await asyncio.sleep(10)

        executor = AsyncMock()
        executor.execute.side_effect = hang
        monitor = _monitor(fake_poller, executor, execution_timeout_seconds=0.01)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await monitor.handle_sample(samples("0.5"))

        stored = monitor.get_order(order.id)
        assert stored.status == OrderStatus.FAILED
        assert "timed out" in stored.error

    @pytest.mark.asyncio
    async def test_failed_order_is_not_retried(self, fake_poller, mint, samples) -> None:
        executor = AsyncMock()
        executor.execute.return_value = ExecutionResult(success=False, error="nope")
        monitor = _monitor(fake_poller, executor)
        await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await monitor.handle_sample(samples("0.5"))
        await monitor.handle_sample(samples("0.4"))

        assert executor.execute.await_count == 1


class TestTakeProfit:
    @pytest.mark.asyncio
    async def test_triggers_at_or_above_target(self, fake_poller, mint, samples) -> None:
        monitor = _monitor(fake_poller)
        order = await monitor.create_take_profit("u1", "p1", mint, "w1", "2.0", amount=50)

        await monitor.handle_sample(samples("1.99"))
        assert monitor.get_order(order.id).is_active
        await monitor.handle_sample(samples("2.0"))

        stored = monitor.get_order(order.id)
        assert stored.order_type == OrderType.TAKE_PROFIT
        assert stored.status == OrderStatus.EXECUTED
        assert stored.amount == Decimal(50)


class TestTrailingStop:
    @pytest.mark.asyncio
    async def test_ratchets_then_triggers(self, fake_poller, mint, samples) -> None:
        """10% trail from 1.0 over 1.0, 1.2, 1.1, 1.05 ends at high 1.2, stop 1.08 and fires on 1.05."""
        monitor = _monitor(fake_poller)
        order = await monitor.create_trailing_stop("u1", "p1", mint, "w1", trailing_percent=10, current_price="1.0")
        assert order.current_stop_price == Decimal("0.90")

        for price in ["1.0", "1.2", "1.1"]:
            await monitor.handle_sample(samples(price))
            assert monitor.get_order(order.id).is_active

        stored = monitor.get_order(order.id)
        assert stored.highest_price_seen == Decimal("1.2")
        assert stored.current_stop_price == Decimal("1.08")

        await monitor.handle_sample(samples("1.05"))
        stored = monitor.get_order(order.id)
        assert stored.status == OrderStatus.EXECUTED
        assert stored.triggered_price == Decimal("1.05")
        assert stored.current_stop_price == Decimal("1.08")

    @pytest.mark.asyncio
    async def test_stop_never_moves_down(self, fake_poller, mint, samples) -> None:
        monitor = _monitor(fake_poller)
        order = await monitor.create_trailing_stop("u1", "p1", mint, "w1", 20, "1.0")

        stops = []
        for price in ["1.5", "1.3", "1.4", "2.0", "1.7"]:
            await monitor.handle_sample(samples(price))
            stops.append(monitor.get_order(order.id).current_stop_price)

        assert stops == sorted(stops)
        assert monitor.get_order(order.id).highest_price_seen == Decimal("2.0")

    @pytest.mark.asyncio
    async def test_trailing_percent_is_clamped(self, fake_poller, mint) -> None:
        monitor = _monitor(fake_poller)
        low = await monitor.create_trailing_stop("u1", "p1", mint, "w1", "0.1", "1")
        high = await monitor.create_trailing_stop("u1", "p1", mint, "w1", "90", "1")
        assert low.trailing_percent == Decimal(1)
        assert high.trailing_percent == Decimal(50)
        assert isinstance(low, TrailingStopOrder)


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("trigger", [0, -1, "x"])
    async def test_bad_trigger_price(self, fake_poller, mint, trigger) -> None:
        monitor = _monitor(fake_poller)
        with pytest.raises(ValueError):
            await monitor.create_stop_loss("u1", "p1", mint, "w1", trigger)
        assert monitor.get_active_orders() == []
        assert fake_poller.refs == {}

    @pytest.mark.asyncio
    async def test_bad_trailing_start_price(self, fake_poller, mint) -> None:
        with pytest.raises(ValueError):
            await _monitor(fake_poller).create_trailing_stop("u1", "p1", mint, "w1", 10, 0)

    @pytest.mark.asyncio
    async def test_amount_is_clamped(self, fake_poller, mint) -> None:
        monitor = _monitor(fake_poller)
        over = await monitor.create_stop_loss("u1", "p1", mint, "w1", "1", amount=250)
        under = await monitor.create_stop_loss("u1", "p1", mint, "w1", "1", amount=-5)
        assert over.amount == Decimal(100)
        assert under.amount == Decimal(0)

    @pytest.mark.asyncio
    async def test_stopped_poller_leaves_no_order(self, mint) -> None:
        """An order the poller refuses to watch is never stored or announced."""
        monitor = _monitor(StoppedPoller())
        updates = []
        monitor.on_order_update(updates.append)

        with pytest.raises(RuntimeError):
            await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        assert monitor.get_all_orders() == []
        assert updates == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_active_order(self, fake_poller, mint, samples) -> None:
        monitor = _monitor(fake_poller)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        assert await monitor.cancel_order(order.id) is True
        assert fake_poller.refs[mint] == 0
        await monitor.handle_sample(samples("0.1"))
        assert monitor.get_order(order.id).status == OrderStatus.CANCELLED
        monitor.executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_after_trigger_is_rejected(self, fake_poller, mint, samples) -> None:
        monitor = _monitor(fake_poller)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")
        await monitor.handle_sample(samples("0.5"))

        assert await monitor.cancel_order(order.id) is False
        assert monitor.get_order(order.id).status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_cancel_while_executing_is_rejected(self, fake_poller, mint, samples) -> None:
        started = asyncio.Event()
        finish = asyncio.Event()

        async def slow(order):
            started.set()
            await finish.wait()
            return ExecutionResult(success=True, execution_ref="TX9")

        executor = AsyncMock()
        executor.execute.side_effect = slow
        monitor = _monitor(fake_poller, executor)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        evaluation = asyncio.create_task(monitor.handle_sample(samples("0.5")))
        await started.wait()
        assert monitor.get_order(order.id).status == OrderStatus.TRIGGERED
        assert await monitor.cancel_order(order.id) is False

        finish.set()
        await evaluation
        assert monitor.get_order(order.id).status == OrderStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, fake_poller) -> None:
        assert await _monitor(fake_poller).cancel_order("missing") is False


class TestConcurrentSamples:
    @pytest.mark.asyncio
    async def test_concurrent_samples_trigger_once(self, fake_poller, mint, samples) -> None:
        monitor = _monitor(fake_poller)
        await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await asyncio.gather(*(monitor.handle_sample(samples("0.5")) for _ in range(5)))

        assert monitor.executor.execute.await_count == 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_listing(self, fake_poller, mint) -> None:
        monitor = _monitor(fake_poller)
        o1 = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")
        await monitor.create_take_profit("u2", "p2", mint, "w2", "2")
        await monitor.create_trailing_stop("u1", "p3", "OTHER", "w1", 10, "1")
        await monitor.cancel_order(o1.id)

        assert len(monitor.get_active_orders()) == 2
        assert len(monitor.get_orders_for_token(mint)) == 1
        assert len(monitor.get_orders_for_token(mint, active_only=False)) == 2
        assert len(monitor.get_user_orders("u1")) == 2
        assert len(monitor.get_all_orders()) == 3


class TestTradeEvaluation:
    @pytest.mark.asyncio
    async def test_trade_behind_poll_clock_still_triggers(self, fake_poller, mint) -> None:
        """Block time lagging the poller's local clock does not hide a trade."""
        monitor = _monitor(fake_poller)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await monitor.handle_sample(PriceSample(mint=mint, price=Decimal("1.0"), observed_at=T0 + timedelta(seconds=1)))
        await monitor.handle_trade(make_trade(mint, "0.5", timestamp=T0))
        await monitor.drain()

        stored = monitor.get_order(order.id)
        assert stored.status == OrderStatus.EXECUTED
        assert stored.triggered_price == Decimal("0.5")

    @pytest.mark.asyncio
    async def test_slow_execution_does_not_hold_up_trades(self, fake_poller, mint) -> None:
        started = asyncio.Event()
        finish = asyncio.Event()

        async def slow(order):
            started.set()
            await finish.wait()
            return ExecutionResult(success=True, execution_ref="TX9")

        executor = AsyncMock()
        executor.execute.side_effect = slow
        monitor = _monitor(fake_poller, executor)
        order = await monitor.create_stop_loss("u1", "p1", mint, "w1", "0.8")

        await asyncio.wait_for(monitor.handle_trade(make_trade(mint, "0.5")), timeout=1)
        await asyncio.wait_for(started.wait(), timeout=1)
        assert monitor.get_order(order.id).status == OrderStatus.TRIGGERED

        finish.set()
        await monitor.drain()
        assert monitor.get_order(order.id).status == OrderStatus.EXECUTED
        executor.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trades_are_evaluated_in_arrival_order(self, fake_poller, mint) -> None:
        monitor = _monitor(fake_poller)
        order = await monitor.create_trailing_stop("u1", "p1", mint, "w1", 10, "1.0")

        for i, price in enumerate(["1.5", "2.0", "1.9"]):
            await monitor.handle_trade(make_trade(mint, price, timestamp=T0 + timedelta(seconds=i)))
        await monitor.drain()

        stored = monitor.get_order(order.id)
        assert stored.is_active
        assert stored.highest_price_seen == Decimal("2.0")
        assert stored.current_stop_price == Decimal("1.80")

    @pytest.mark.asyncio
    async def test_close_waits_for_queued_trades(self, fake_poller, mint) -> None:
        monitor = _monitor(fake_poller)
        order = await monitor.create_take_profit("u1", "p1", mint, "w1", "2")

        await monitor.handle_trade(make_trade(mint, "3"))
        await monitor.close()

        assert monitor.get_order(order.id).status == OrderStatus.EXECUTED
        assert fake_poller.handlers == []

    @pytest.mark.asyncio
    async def test_trade_for_unwatched_mint_is_dropped(self, fake_poller, mint) -> None:
        monitor = _monitor(fake_poller)
        await monitor.handle_trade(make_trade(mint, "0.5"))
        assert monitor.trade_workers == {}
