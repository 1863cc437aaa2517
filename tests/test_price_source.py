"""Tests for the price sources behind the poller."""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import T0, FixedClock, make_trade
from core.types import PriceQuote
from data.price_source import (
    PUMP_TOKEN_SUPPLY,
    BondingCurvePriceSource,
    DexScreenerPriceSource,
    FallbackPriceSource,
    PriceUnavailableError,
    TradeFeedPriceSource,
)
from execution.bonding_curve import get_bonding_curve_pda
from test_bonding_curve import curve_bytes

DEX_BODY = {
    "pairs": [{
        "priceNative": "0.00000003",
        "priceUsd": "0.0000045",
        "volume": {"h24": 1234.5},
        "marketCap": 4500,
    }]
}


def rpc_client(data=None) -> AsyncMock:
    client = AsyncMock()
    value = SimpleNamespace(data=data) if data is not None else None
    client.get_account_info.return_value = SimpleNamespace(value=value)
    return client


def http_session(status: int = 200, body=None) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    session = MagicMock()
    session.closed = False
    session.get.return_value.__aenter__.return_value = response
    session.get.return_value.__aexit__.return_value = False
    return session


class StaticSource:
    def __init__(self, quote=None, error=None):
        self.quote = quote
        self.error = error
        self.calls = 0

    async def fetch_price(self, mint):
        self.calls += 1
        if self.error:
            raise self.error
        return self.quote


class TestBondingCurvePriceSource:
    @pytest.mark.asyncio
    async def test_price_from_curve_account(self, mint) -> None:
        client = rpc_client(curve_bytes())
        quote = await BondingCurvePriceSource(client).fetch_price(mint)

        assert quote.price == Decimal(30) / Decimal(1_073_000_000)
        assert quote.market_cap is not None
        client.get_account_info.assert_awaited_once_with(get_bonding_curve_pda(mint))

    @pytest.mark.asyncio
    async def test_account_is_cached(self, mint) -> None:
        client = rpc_client(curve_bytes())
        source = BondingCurvePriceSource(client, cache_seconds=60)
        await source.fetch_price(mint)
        await source.fetch_price(mint)
        assert client.get_account_info.await_count == 1

    @pytest.mark.asyncio
    async def test_missing_account(self, mint) -> None:
        with pytest.raises(PriceUnavailableError):
            await BondingCurvePriceSource(rpc_client()).fetch_price(mint)

    @pytest.mark.asyncio
    async def test_completed_curve(self, mint) -> None:
        with pytest.raises(PriceUnavailableError, match="complete"):
            await BondingCurvePriceSource(rpc_client(curve_bytes(complete=True))).fetch_price(mint)

    @pytest.mark.asyncio
    async def test_empty_curve(self, mint) -> None:
        with pytest.raises(PriceUnavailableError, match="Empty"):
            await BondingCurvePriceSource(rpc_client(curve_bytes(virtual_tokens=0))).fetch_price(mint)


class TestDexScreenerPriceSource:
    def test_parse_first_pair(self) -> None:
        quote = DexScreenerPriceSource.parse_pairs("M", DEX_BODY)
        assert quote == PriceQuote(
            price=Decimal("0.00000003"),
            volume=Decimal("1234.5"),
            market_cap=Decimal(4500),
        )

    def test_market_cap_falls_back_to_fdv(self) -> None:
        quote = DexScreenerPriceSource.parse_pairs("M", {"pairs": [{"priceNative": "0.5", "fdv": 100}]})
        assert quote.price == Decimal("0.5")
        assert quote.market_cap == Decimal(100)
        assert quote.volume is None

    def test_usd_price_is_not_used(self) -> None:
        """A pair with only a USD price has no usable SOL price."""
        with pytest.raises(PriceUnavailableError, match="SOL"):
            DexScreenerPriceSource.parse_pairs("M", {"pairs": [{"priceUsd": "0.5", "marketCap": 100}]})

    @pytest.mark.parametrize("body", [None, {}, {"pairs": []}, {"pairs": None}])
    def test_no_pairs(self, body) -> None:
        with pytest.raises(PriceUnavailableError):
            DexScreenerPriceSource.parse_pairs("M", body)

    @pytest.mark.parametrize("price", ["0", "-1", "abc"])
    def test_unusable_price(self, price) -> None:
        with pytest.raises(PriceUnavailableError):
            DexScreenerPriceSource.parse_pairs("M", {"pairs": [{"priceNative": price}]})

    @pytest.mark.asyncio
    async def test_fetch_price(self) -> None:
        session = http_session(body=DEX_BODY)
        source = DexScreenerPriceSource(session=session, base_url="https://dex.test/tokens/")

        quote = await source.fetch_price("MINT")

        assert quote.price == Decimal("0.00000003")
        session.get.assert_called_once_with("https://dex.test/tokens/MINT")

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        source = DexScreenerPriceSource(session=http_session(status=429))
        with pytest.raises(PriceUnavailableError, match="429"):
            await source.fetch_price("MINT")

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session_open(self) -> None:
        session = http_session()
        session.close = AsyncMock()
        await DexScreenerPriceSource(session=session).close()
        session.close.assert_not_awaited()


class TestTradeFeedPriceSource:
    @pytest.mark.asyncio
    async def test_last_trade_price_and_volume(self) -> None:
        clock = FixedClock(T0 + timedelta(minutes=21))
        source = TradeFeedPriceSource(volume_window_minutes=10, clock=clock)
        await source.handle_trade(make_trade("M", "0.001", sol="2", timestamp=T0))
        await source.handle_trade(make_trade("M", "0.002", sol="3", timestamp=T0 + timedelta(minutes=20)))

        quote = await source.fetch_price("M")

        assert quote.price == Decimal("0.002")
        assert quote.volume == Decimal(3)
        assert quote.market_cap == Decimal("0.002") * PUMP_TOKEN_SUPPLY

    @pytest.mark.asyncio
    async def test_volume_window_ends_now(self) -> None:
        """Volume is measured back from the clock, not from the newest trade."""
        clock = FixedClock(T0 + timedelta(hours=3))
        source = TradeFeedPriceSource(max_price_age_seconds=None, clock=clock)
        await source.handle_trade(make_trade("M", "1", sol="1", timestamp=T0))

        quote = await source.fetch_price("M")

        assert quote.price == Decimal(1)
        assert quote.volume == Decimal(0)

    @pytest.mark.asyncio
    async def test_unknown_mint(self) -> None:
        with pytest.raises(PriceUnavailableError):
            await TradeFeedPriceSource().fetch_price("M")

    @pytest.mark.asyncio
    async def test_stale_price_rejected(self) -> None:
        source = TradeFeedPriceSource(max_price_age_seconds=60, clock=FixedClock(T0 + timedelta(seconds=61)))
        await source.handle_trade(make_trade("M", "1", timestamp=T0))
        with pytest.raises(PriceUnavailableError, match="old"):
            await source.fetch_price("M")

    @pytest.mark.asyncio
    async def test_prices_age_out_by_default(self) -> None:
        source = TradeFeedPriceSource(clock=FixedClock(T0 + timedelta(hours=3)))
        await source.handle_trade(make_trade("M", "1", timestamp=T0))
        with pytest.raises(PriceUnavailableError):
            await source.fetch_price("M")

    @pytest.mark.asyncio
    async def test_stale_trade_price_falls_through(self) -> None:
        trades = TradeFeedPriceSource(clock=FixedClock(T0 + timedelta(hours=3)))
        await trades.handle_trade(make_trade("M", "1", sol="1", timestamp=T0))
        dex = StaticSource(quote=PriceQuote(price=Decimal("0.1")))

        quote = await FallbackPriceSource([trades, dex]).fetch_price("M")

        assert quote.price == Decimal("0.1")
        assert dex.calls == 1


class TestFallbackPriceSource:
    @pytest.mark.asyncio
    async def test_first_answer_wins(self) -> None:
        failing = StaticSource(error=PriceUnavailableError("nothing"))
        first = StaticSource(quote=PriceQuote(price=Decimal(1)))
        second = StaticSource(quote=PriceQuote(price=Decimal(2)))

        quote = await FallbackPriceSource([failing, first, second]).fetch_price("M")

        assert quote.price == Decimal(1)
        assert (failing.calls, first.calls, second.calls) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_all_sources_fail(self) -> None:
        sources = [StaticSource(error=PriceUnavailableError("a")), StaticSource(error=RuntimeError("b"))]
        with pytest.raises(PriceUnavailableError, match="StaticSource: b"):
            await FallbackPriceSource(sources).fetch_price("M")

    def test_requires_a_source(self) -> None:
        with pytest.raises(ValueError):
            FallbackPriceSource([])
