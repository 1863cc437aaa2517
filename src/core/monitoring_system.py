from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union
import logging
import uuid

from solana.rpc.async_api import AsyncClient

from analysis.event_exporter import EventExporter
from core.dedup_cache import DedupCache
from core.event_bus import Handler, Unsubscribe
from core.events import NewToken, Trade
from core.token_feed import TokenFeed
from core.types import Order, PriceAlert, StopLossOrder, TrailingStopOrder, AlertType, utc_now
from data.price_poller import PricePoller
from data.price_source import (
    PriceSource, BondingCurvePriceSource, DexScreenerPriceSource,
    TradeFeedPriceSource, FallbackPriceSource
)
from data.pump_data_feed import PumpDataFeed, ConnectionState
from db.database import DatabaseConnection
from db.service import DatabaseService
from execution.dry_run_executor import DryRunExecutor
from execution.swap_service_executor import SwapServiceExecutor
from risk.order_monitor import Executor, OrderMonitor
from risk.price_alerts import AlertEngine
from utils.config import Config

Number = Union[Decimal, int, float, str]


class MonitoringSystem:
    """Wires the live feed, price poller, alert engine and order monitor together"""

    def __init__(self,
                 config: Config,
                 logger=None,
                 data_feed: Optional[PumpDataFeed] = None,
                 price_source: Optional[PriceSource] = None,
                 executor: Optional[Executor] = None,
                 db_service: Optional[DatabaseService] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.is_running = False
        self._closeables = []

        self.token_feed = TokenFeed(
            dedup=DedupCache(config.dedup.max_entries, config.dedup.ttl_seconds),
            logger=self.logger,
            max_recent_tokens=config.history.max_recent_tokens,
            max_recent_trades=config.history.max_recent_trades,
            clock=clock
        )
        self.trade_prices = TradeFeedPriceSource(
            max_price_age_seconds=config.poller.max_trade_age_seconds,
            clock=clock
        )
        self.token_feed.on_trade(self.trade_prices.handle_trade)

        self.price_source = price_source or self._build_price_source()
        self.poller = PricePoller(
            self.price_source,
            interval_seconds=config.poller.interval_seconds,
            fetch_timeout_seconds=config.poller.fetch_timeout_seconds,
            logger=self.logger,
            clock=clock
        )

        self.executor = executor or self._build_executor()
        self.alerts = AlertEngine(self.poller, logger=self.logger, clock=clock)
        self.orders = OrderMonitor(
            self.poller,
            self.executor,
            logger=self.logger,
            clock=clock,
            execution_timeout_seconds=config.orders.execution_timeout_seconds
        )

        if config.orders.evaluate_on_trades:
            self.token_feed.on_trade(self.alerts.handle_trade)
            self.token_feed.on_trade(self.orders.handle_trade)

        self.data_feed = data_feed or self._build_data_feed()
        self.data_feed.add_callback(self.token_feed.handle_payload)

        self.db_service = db_service
        if self.db_service is None and config.database.url:
            run_id = config.database.run_id or uuid.uuid4().hex[:12]
            self.db_service = DatabaseService(run_id, DatabaseConnection(config.database.url))
        if self.db_service is not None:
            self.alerts.on_alert(self.db_service.record_alert)
            self.orders.on_order_update(self.db_service.record_order_update)

        self.exporter = EventExporter(config.history.export_dir)

        self.logger.info(
            f"Monitoring System Initializing: feed={config.feed.method}, "
            f"sources={config.poller.sources if price_source is None else type(price_source).__name__}, "
            f"execution={config.execution.mode if executor is None else type(executor).__name__}, "
            f"audit={'on' if self.db_service else 'off'}"
        )

    def _build_price_source(self) -> PriceSource:
        sources: List[PriceSource] = []
        for name in self.config.poller.sources:
            if name == "trade_feed":
                sources.append(self.trade_prices)
            elif name == "bonding_curve":
                client = AsyncClient(self.config.poller.rpc_url)
                self._closeables.append(client)
                sources.append(BondingCurvePriceSource(client, logger=self.logger))
            elif name == "dexscreener":
                dex = DexScreenerPriceSource(timeout_seconds=self.config.poller.fetch_timeout_seconds, logger=self.logger)
                self._closeables.append(dex)
                sources.append(dex)
            else:
                raise ValueError(f"Unknown price source: {name}")
        return sources[0] if len(sources) == 1 else FallbackPriceSource(sources, logger=self.logger)

    def _build_executor(self) -> Executor:
        execution = self.config.execution
        if execution.mode == "swap_service":
            executor = SwapServiceExecutor(
                execution.swap_service_url,
                timeout_seconds=execution.timeout_seconds,
                logger=self.logger
            )
            self._closeables.append(executor)
            return executor
        return DryRunExecutor(slippage_bps=execution.slippage_bps, logger=self.logger)

    def _build_data_feed(self) -> PumpDataFeed:
        feed = self.config.feed
        return PumpDataFeed(
            feed.ws_url,
            logger=self.logger,
            addresses=feed.addresses or None,
            method=feed.method,
            commitment=feed.commitment,
            ping_interval=feed.ping_interval,
            initial_reconnect_delay=feed.initial_reconnect_delay,
            max_reconnect_delay=feed.max_reconnect_delay,
            max_reconnect_attempts=feed.max_reconnect_attempts,
            on_state_change=self._on_feed_state
        )

    def _on_feed_state(self, state: ConnectionState):
        if state == ConnectionState.FAILED:
            self.logger.critical("Chain feed failed permanently; no new events will arrive")
        else:
            self.logger.info(f"Chain feed state: {state.value}")

    async def start(self):
        """Start the monitoring system"""
        try:
            self.logger.critical("Monitoring System Starting")
            if self.db_service is not None:
                self.db_service.db.init_db()
            await self.data_feed.start()
            self.is_running = True
        except Exception as e:
            self.logger.critical(f"Failed to start monitoring system: {str(e)}")
            self.is_running = False
            raise

    async def stop(self):
        """Stop the feed and pollers; executions already in flight still finish"""
        self.logger.critical("Initiating monitoring system shutdown")
        self.is_running = False

        await self.data_feed.stop()
        await self.poller.stop()
        self.alerts.close()
        await self.orders.close()

        for resource in self._closeables:
            try:
                await resource.close()
            except Exception as e:
                self.logger.error(f"Error closing {type(resource).__name__}: {str(e)}")
        if self.db_service is not None:
            self.db_service.db.close()

        self.logger.info("Monitoring system stopped successfully")

    # Consumer API

    def on_new_token(self, handler: Handler) -> Unsubscribe:
        return self.token_feed.on_new_token(handler)

    def on_trade(self, handler: Handler) -> Unsubscribe:
        return self.token_feed.on_trade(handler)

    def on_alert(self, handler: Handler) -> Unsubscribe:
        return self.alerts.on_alert(handler)

    def on_order_update(self, handler: Handler) -> Unsubscribe:
        return self.orders.on_order_update(handler)

    # Query surface

    def create_alert(self, user_id: str, mint: str, alert_type: Union[AlertType, str], target_value: Number) -> PriceAlert:
        return self.alerts.create_alert(user_id, mint, alert_type, target_value)

    def cancel_alert(self, alert_id: str) -> bool:
        return self.alerts.cancel_alert(alert_id)

    async def create_stop_loss(self, user_id: str, position_id: str, mint: str, wallet_ref: str,
                               trigger_price: Number, amount: Number = 100) -> StopLossOrder:
        return await self.orders.create_stop_loss(user_id, position_id, mint, wallet_ref, trigger_price, amount)

    async def create_take_profit(self, user_id: str, position_id: str, mint: str, wallet_ref: str,
                                 trigger_price: Number, amount: Number = 100) -> StopLossOrder:
        return await self.orders.create_take_profit(user_id, position_id, mint, wallet_ref, trigger_price, amount)

    async def create_trailing_stop(self, user_id: str, position_id: str, mint: str, wallet_ref: str,
                                   trailing_percent: Number, current_price: Number,
                                   amount: Number = 100) -> TrailingStopOrder:
        return await self.orders.create_trailing_stop(user_id, position_id, mint, wallet_ref,
                                                      trailing_percent, current_price, amount)

    async def cancel_order(self, order_id: str) -> bool:
        return await self.orders.cancel_order(order_id)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get_order(order_id)

    def get_alert(self, alert_id: str) -> Optional[PriceAlert]:
        return self.alerts.get_alert(alert_id)

    def get_active_orders(self, mint: Optional[str] = None, user_id: Optional[str] = None) -> List[Order]:
        orders = self.orders.get_active_orders()
        return [o for o in orders
                if (mint is None or o.mint == mint) and (user_id is None or o.user_id == user_id)]

    def get_active_alerts(self, mint: Optional[str] = None, user_id: Optional[str] = None) -> List[PriceAlert]:
        alerts = self.alerts.get_active_alerts()
        return [a for a in alerts
                if (mint is None or a.mint == mint) and (user_id is None or a.user_id == user_id)]

    def get_recent_tokens(self, limit: int = 50, max_age_minutes: Optional[float] = 60) -> List[NewToken]:
        return self.token_feed.get_recent_tokens(limit, max_age_minutes)

    def get_recent_trades(self, limit: int = 100, mint: Optional[str] = None,
                          max_age_minutes: Optional[float] = 24 * 60) -> List[Trade]:
        return self.token_feed.get_recent_trades(limit, mint, max_age_minutes)

    def export_history(self, name: str) -> Dict[str, Path]:
        """Write recent tokens, trades and every order/alert to CSV"""
        return {
            'tokens': self.exporter.export_tokens(self.get_recent_tokens(self.config.history.max_recent_tokens, None), name),
            'trades': self.exporter.export_trades(self.get_recent_trades(self.config.history.max_recent_trades, None, None), name),
            'orders': self.exporter.export_orders(self.orders.get_all_orders(), name),
            'alerts': self.exporter.export_alerts(self.alerts.get_all_alerts(), name),
        }

    def get_status(self) -> Dict:
        return {
            'running': self.is_running,
            'feed_state': self.data_feed.state.value,
            'connection': dict(self.data_feed.connection_status),
            'messages': dict(self.data_feed.message_health),
            'ingestion': dict(self.token_feed.stats),
            'dedup_size': len(self.token_feed.dedup),
            'monitored_mints': self.poller.monitored_mints,
            'active_alerts': len(self.alerts.get_active_alerts()),
            'active_orders': len(self.orders.get_active_orders()),
        }
