from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from logging import Logger
from time import time
from typing import Callable, Dict, List, Optional, Protocol
import logging

import aiohttp
from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey

from core.aggregator import MarketAggregator
from core.events import Trade
from core.types import PriceQuote, utc_now
from execution.bonding_curve import BondingCurveAccount, get_bonding_curve_pda

DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"

# Every pump.fun mint is created with a fixed supply of one billion tokens
PUMP_TOKEN_SUPPLY = Decimal(1_000_000_000)


class PriceUnavailableError(Exception):
    """Raised when a source has no usable price for a mint"""
    pass


class PriceSource(Protocol):
    async def fetch_price(self, mint: str) -> PriceQuote:
        ...


@dataclass
class CachedBondingCurve:
    data: BondingCurveAccount
    timestamp: float


class BondingCurvePriceSource:
    """Spot price straight from the bonding curve account"""

    def __init__(self, client: AsyncClient, logger: Optional[Logger] = None, cache_seconds: float = 1.0):
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.cache: Dict[str, CachedBondingCurve] = {}
        self.CACHE_DURATION = cache_seconds

    async def fetch_bonding_curve(self, mint: str) -> BondingCurveAccount:
        now = time()
        cached = self.cache.get(mint)
        if cached and now - cached.timestamp < self.CACHE_DURATION:
            return cached.data

        bonding_curve_pda = get_bonding_curve_pda(Pubkey.from_string(mint))
        self.logger.debug(f"Derived bonding curve PDA: {bonding_curve_pda} for mint {mint}")

        account_info = await self.client.get_account_info(bonding_curve_pda)
        if not account_info.value:
            raise PriceUnavailableError(f"Bonding curve account not found for mint {mint}")

        curve = BondingCurveAccount.from_buffer(bytes(account_info.value.data))
        self.cache[mint] = CachedBondingCurve(data=curve, timestamp=now)
        return curve

    async def fetch_price(self, mint: str) -> PriceQuote:
        curve = await self.fetch_bonding_curve(mint)
        if curve.complete:
            raise PriceUnavailableError(f"Bonding curve complete for {mint}")
        if curve.virtual_token_reserves == 0:
            raise PriceUnavailableError(f"Empty bonding curve for {mint}")
        return PriceQuote(price=curve.price, market_cap=curve.market_cap)


class DexScreenerPriceSource:
    """Price, 24h volume and market cap for tokens trading on a DEX"""

    def __init__(self,
                 session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = DEXSCREENER_TOKENS_URL,
                 timeout_seconds: float = 10.0,
                 logger: Optional[Logger] = None):
        self.session = session
        self._owns_session = session is None
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.logger = logger or logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self.session

    async def close(self):
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()

    async def fetch_price(self, mint: str) -> PriceQuote:
        session = await self._get_session()
        async with session.get(f"{self.base_url}/{mint}") as response:
            if response.status != 200:
                raise PriceUnavailableError(f"DexScreener returned {response.status} for {mint}")
            data = await response.json()

        return self.parse_pairs(mint, data)

    @staticmethod
    def parse_pairs(mint: str, data: Dict) -> PriceQuote:
        """Build a quote from the first listed pair. Prices are in SOL (priceNative) only."""
        pairs = (data or {}).get("pairs") or []
        if not pairs:
            raise PriceUnavailableError(f"No DEX pairs listed for {mint}")

        pair = pairs[0]
        price = _to_decimal(pair.get("priceNative"))
        if price is None or price <= 0:
            raise PriceUnavailableError(f"No SOL price in DEX pair for {mint}")

        return PriceQuote(
            price=price,
            volume=_to_decimal((pair.get("volume") or {}).get("h24")),
            market_cap=_to_decimal(pair.get("marketCap") or pair.get("fdv"))
        )


class TradeFeedPriceSource:
    """Last traded price and rolling SOL volume from the live trade stream"""

    def __init__(self,
                 aggregator: Optional[MarketAggregator] = None,
                 volume_window_minutes: int = 60,
                 max_price_age_seconds: Optional[float] = 120.0,
                 clock: Callable[[], datetime] = utc_now):
        self.aggregator = aggregator or MarketAggregator(timeframe_seconds=60)
        self.volume_window = timedelta(minutes=volume_window_minutes)
        self.max_price_age_seconds = max_price_age_seconds
        self.clock = clock

    async def handle_trade(self, trade: Trade):
        self.aggregator.process_trade(trade)

    async def fetch_price(self, mint: str) -> PriceQuote:
        token = self.aggregator.get_token(mint)
        if token is None or token.last_price is None:
            raise PriceUnavailableError(f"No trades seen for {mint}")

        now = self.clock()
        # Trades stop once a token leaves the curve; an old last price must fall through
        if self.max_price_age_seconds is not None and token.last_trade_time is not None:
            age = (now - token.last_trade_time).total_seconds()
            if age > self.max_price_age_seconds:
                raise PriceUnavailableError(f"Last trade for {mint} is {age:.0f}s old")

        price = token.last_price
        return PriceQuote(
            price=price,
            volume=token.volume_since(now - self.volume_window),
            market_cap=price * PUMP_TOKEN_SUPPLY
        )


class FallbackPriceSource:
    """Ask each source in turn; the first answer wins"""

    def __init__(self, sources: List[PriceSource], logger: Optional[Logger] = None):
        if not sources:
            raise ValueError("At least one price source is required")
        self.sources = sources
        self.logger = logger or logging.getLogger(__name__)

    async def fetch_price(self, mint: str) -> PriceQuote:
        errors = []
        for source in self.sources:
            try:
                return await source.fetch_price(mint)
            except Exception as e:
                self.logger.debug(f"{type(source).__name__} failed for {mint}: {str(e)}")
                errors.append(f"{type(source).__name__}: {str(e)}")
        raise PriceUnavailableError(f"No price for {mint} ({'; '.join(errors)})")


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
