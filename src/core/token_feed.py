from collections import deque
from datetime import datetime, timedelta
from logging import Logger
from typing import Callable, Deque, Dict, List, Optional
import logging

from core.dedup_cache import DedupCache
from core.event_bus import EventBus, Handler, Unsubscribe
from core.events import NewToken, Trade, TokenEvent
from core.types import utc_now
from data.pump_decoder import decode_events


class TokenFeed:
    """Decoded, de-duplicated stream of new tokens and trades.

    Raw payloads go in through handle_payload; consumers register with
    on_new_token / on_trade. A bounded window of recent events is kept for
    the query methods.
    """

    def __init__(self,
                 dedup: Optional[DedupCache] = None,
                 logger: Optional[Logger] = None,
                 max_recent_tokens: int = 1000,
                 max_recent_trades: int = 1000,
                 clock: Callable[[], datetime] = utc_now):
        self.dedup = dedup or DedupCache()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self.new_tokens: EventBus[NewToken] = EventBus("new_token", self.logger)
        self.trades: EventBus[Trade] = EventBus("trade", self.logger)

        self._recent_tokens: Deque[NewToken] = deque(maxlen=max_recent_tokens)
        self._recent_trades: Deque[Trade] = deque(maxlen=max_recent_trades)

        self.stats = {
            'payloads_received': 0,
            'payloads_skipped': 0,
            'duplicates': 0,
            'new_tokens': 0,
            'trades': 0
        }

    def on_new_token(self, handler: Handler) -> Unsubscribe:
        return self.new_tokens.subscribe(handler)

    def on_trade(self, handler: Handler) -> Unsubscribe:
        return self.trades.subscribe(handler)

    async def handle_payload(self, payload: Dict) -> int:
        """Decode one raw notification and publish what is new. Returns the number published."""
        self.stats['payloads_received'] += 1
        events = decode_events(payload, received_at=self.clock())
        if not events:
            self.stats['payloads_skipped'] += 1
            return 0

        published = 0
        trade_index = 0
        for event in events:
            if isinstance(event, Trade):
                key = self.dedup_key(event, trade_index)
                trade_index += 1
            else:
                key = self.dedup_key(event)

            if self.dedup.seen(key):
                self.stats['duplicates'] += 1
                continue

            await self.publish(event)
            published += 1
        return published

    @staticmethod
    def dedup_key(event: TokenEvent, trade_index: int = 0) -> str:
        """Trades are keyed by signature, new tokens by mint"""
        if isinstance(event, NewToken):
            return f"mint:{event.mint}"
        if trade_index:
            return f"sig:{event.signature}#{trade_index}"
        return f"sig:{event.signature}"

    async def publish(self, event: TokenEvent):
        if isinstance(event, NewToken):
            self._recent_tokens.append(event)
            self.stats['new_tokens'] += 1
            self.logger.info(f"New token {event.symbol or '?'} ({event.mint}) created by {event.creator}")
            await self.new_tokens.publish(event)
        else:
            self._recent_trades.append(event)
            self.stats['trades'] += 1
            self.logger.debug(
                f"{event.side.upper()} {event.base_amount} of {event.mint} "
                f"at {event.price_in_quote} SOL ({event.signature})"
            )
            await self.trades.publish(event)

    def get_recent_tokens(self, limit: int = 50, max_age_minutes: Optional[float] = 60) -> List[NewToken]:
        """Newest first"""
        return self._recent(self._recent_tokens, limit, max_age_minutes)

    def get_recent_trades(self,
                          limit: int = 100,
                          mint: Optional[str] = None,
                          max_age_minutes: Optional[float] = 24 * 60) -> List[Trade]:
        """Newest first, optionally for a single mint"""
        trades = [t for t in self._recent_trades if mint is None or t.mint == mint]
        return self._recent(trades, limit, max_age_minutes)

    def _recent(self, events, limit: int, max_age_minutes: Optional[float]) -> list:
        if limit <= 0:
            return []
        cutoff = None
        if max_age_minutes is not None:
            cutoff = self.clock() - timedelta(minutes=max_age_minutes)

        result = []
        for event in reversed(list(events)):
            if cutoff is not None and event.timestamp < cutoff:
                continue
            result.append(event)
            if len(result) >= limit:
                break
        return result
