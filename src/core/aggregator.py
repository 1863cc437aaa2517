from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from core.events import Trade


@dataclass
class Candle:
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    buy_volume: Decimal
    sell_volume: Decimal
    timestamp: datetime
    trade_count: int


class TokenAggregator:
    def __init__(self, mint: str, timeframe_seconds: int, max_candles: int = 100):
        self.mint = mint
        self.timeframe_seconds = timeframe_seconds
        self.max_candles = max_candles
        self.candles: List[Candle] = []
        self.current_candle: Optional[Candle] = None
        self.last_trade_time: Optional[datetime] = None

    def get_candle_time(self, timestamp: datetime) -> datetime:
        """Normalize timestamp to candle start time"""
        total_seconds = int(timestamp.timestamp())
        normalized_seconds = total_seconds - (total_seconds % self.timeframe_seconds)
        return datetime.fromtimestamp(normalized_seconds, tz=timezone.utc)

    @property
    def last_price(self) -> Optional[Decimal]:
        return self.current_candle.close if self.current_candle else None

    def process_trade(self, trade: Trade) -> bool:
        """Returns True if new candle created"""
        candle_time = self.get_candle_time(trade.timestamp)
        price = trade.price_in_quote
        sol_amount = trade.quote_amount

        # Late trades for an already closed candle only count towards volume
        if self.current_candle and candle_time < self.current_candle.timestamp:
            for candle in reversed(self.candles):
                if candle.timestamp == candle_time:
                    candle.volume += sol_amount
                    candle.trade_count += 1
                    break
            return False

        self.last_trade_time = trade.timestamp

        # Create new candle if needed
        if not self.current_candle or candle_time > self.current_candle.timestamp:
            if self.current_candle:
                self.candles.append(self.current_candle)
                while len(self.candles) > self.max_candles:
                    self.candles.pop(0)

            self.current_candle = Candle(
                open=price,
                high=price,
                low=price,
                close=price,
                volume=sol_amount,
                buy_volume=sol_amount if trade.is_buy else Decimal(0),
                sell_volume=sol_amount if not trade.is_buy else Decimal(0),
                timestamp=candle_time,
                trade_count=1
            )
            return True

        # Update current candle
        self.current_candle.high = max(self.current_candle.high, price)
        self.current_candle.low = min(self.current_candle.low, price)
        self.current_candle.close = price
        self.current_candle.volume += sol_amount
        self.current_candle.trade_count += 1
        if trade.is_buy:
            self.current_candle.buy_volume += sol_amount
        else:
            self.current_candle.sell_volume += sol_amount

        return False

    def volume_since(self, cutoff: datetime) -> Decimal:
        """SOL volume of every candle starting at or after cutoff"""
        candles = self.candles + ([self.current_candle] if self.current_candle else [])
        return sum((c.volume for c in candles if c.timestamp >= cutoff), Decimal(0))


class MarketAggregator:
    def __init__(self, timeframe_seconds: int = 60, max_candles: int = 100, cleanup_minutes: int = 30):
        self.timeframe_seconds = timeframe_seconds
        self.max_candles = max_candles
        self.tokens: Dict[str, TokenAggregator] = {}
        self.cleanup_minutes = cleanup_minutes
        self.current_time: Optional[datetime] = None
        self.trade_stats = {
            'total_trades_received': 0,
            'trades_by_token': defaultdict(int)
        }

    def get_token(self, mint: str) -> Optional[TokenAggregator]:
        return self.tokens.get(mint)

    def cleanup_inactive_tokens(self, current_time: datetime):
        """Remove tokens that haven't traded recently"""
        cutoff = current_time - timedelta(minutes=self.cleanup_minutes)
        inactive_tokens = [
            mint for mint, token in self.tokens.items()
            if token.last_trade_time is not None and token.last_trade_time < cutoff
        ]

        for mint in inactive_tokens:
            del self.tokens[mint]
            self.trade_stats['trades_by_token'].pop(mint, None)

    def process_trade(self, trade: Trade) -> Tuple[TokenAggregator, bool]:
        if self.current_time is None or trade.timestamp > self.current_time:
            self.current_time = trade.timestamp
        self.trade_stats['total_trades_received'] += 1

        if trade.mint not in self.tokens:
            self.tokens[trade.mint] = TokenAggregator(
                mint=trade.mint,
                timeframe_seconds=self.timeframe_seconds,
                max_candles=self.max_candles
            )

        token = self.tokens[trade.mint]
        self.trade_stats['trades_by_token'][trade.mint] += 1
        new_candle = token.process_trade(trade)

        if new_candle:
            self.cleanup_inactive_tokens(self.current_time)

        return token, new_candle

    def get_processing_stats(self) -> dict:
        return {
            'total_received': self.trade_stats['total_trades_received'],
            'tokens': dict(self.trade_stats['trades_by_token']),
            'active_tokens': len(self.tokens)
        }
