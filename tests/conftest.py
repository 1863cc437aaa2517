"""Pytest configuration and fixtures."""

import base64
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from construct import Container

from core.events import Trade
from core.types import PriceSample
from data.pump_decoder import (
    CREATE_EVENT_DISCRIMINATOR,
    CREATE_EVENT_LAYOUT,
    TRADE_EVENT_DISCRIMINATOR,
    TRADE_EVENT_LAYOUT,
    PROGRAM_ID,
)

import base58

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def key(seed) -> bytes:
    """Deterministic 32-byte public key; raw 32-byte keys pass through"""
    if isinstance(seed, bytes):
        return seed
    return bytes([seed]) * 32


def address(seed: int) -> str:
    return base58.b58encode(key(seed)).decode("utf-8")


def trade_event_line(mint: int = 1,
                     sol_lamports: int = 500_000_000,
                     token_units: int = 1_000_000_000_000,
                     is_buy: bool = True,
                     user: int = 2,
                     timestamp: int = int(T0.timestamp())) -> str:
    body = TRADE_EVENT_LAYOUT.build(Container(
        mint=key(mint),
        sol_amount=sol_lamports,
        token_amount=token_units,
        is_buy=is_buy,
        user=key(user),
        timestamp=timestamp,
        virtual_sol_reserves=30_000_000_000,
        virtual_token_reserves=1_073_000_000_000_000,
        real_sol_reserves=0,
        real_token_reserves=793_100_000_000_000,
    ))
    return "Program data: " + base64.b64encode(TRADE_EVENT_DISCRIMINATOR + body).decode()


def create_event_line(mint: int = 1, user: int = 2, curve: int = 3,
                      name: str = "Doge Moon", symbol: str = "DMOON",
                      uri: str = "https://ipfs.io/ipfs/abc") -> str:
    body = CREATE_EVENT_LAYOUT.build(Container(
        name=name,
        symbol=symbol,
        uri=uri,
        mint=key(mint),
        bonding_curve=key(curve),
        user=key(user),
        creator=None,
        timestamp=None,
    ))
    return "Program data: " + base64.b64encode(CREATE_EVENT_DISCRIMINATOR + body).decode()


def logs_payload(signature: str, lines: List[str], instruction: str = "Buy", err=None) -> Dict:
    """A logsNotification value the way the websocket delivers it"""
    return {
        "signature": signature,
        "err": err,
        "logs": [
            f"Program {PROGRAM_ID} invoke [1]",
            f"Program log: Instruction: {instruction}",
            *lines,
            f"Program {PROGRAM_ID} success",
        ],
    }


def notification(value: Dict, method: str = "logsNotification") -> Dict:
    return {
        "jsonrpc": "2.0",
        "method": method,
        "params": {"result": {"context": {"slot": 1}, "value": value}, "subscription": 7},
    }


class FakePoller:
    """Records acquire/release calls and lets tests push samples by hand"""

    def __init__(self):
        self.refs: Dict[str, int] = {}
        self.handlers = []

    def on_sample(self, handler):
        self.handlers.append(handler)

        def unsubscribe():
            if handler in self.handlers:
                self.handlers.remove(handler)
                return True
            return False

        return unsubscribe

    def acquire(self, mint: str) -> int:
        self.refs[mint] = self.refs.get(mint, 0) + 1
        return self.refs[mint]

    def release(self, mint: str) -> int:
        self.refs[mint] = self.refs.get(mint, 0) - 1
        return self.refs[mint]


class StoppedPoller(FakePoller):
    """A poller that has been shut down and refuses new mints"""

    def acquire(self, mint: str) -> int:
        raise RuntimeError("PricePoller is stopped")


class SampleStream:
    """Builds PriceSamples for one mint with strictly increasing timestamps"""

    def __init__(self, mint: str, start: datetime = T0):
        self.mint = mint
        self.now = start

    def __call__(self, price, volume=None, market_cap=None) -> PriceSample:
        self.now = self.now + timedelta(seconds=1)
        return PriceSample(
            mint=self.mint,
            price=Decimal(str(price)),
            volume=Decimal(str(volume)) if volume is not None else None,
            market_cap=Decimal(str(market_cap)) if market_cap is not None else None,
            observed_at=self.now,
        )


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)




def make_trade(mint: str, price, sol="1", timestamp: datetime = T0, side: str = "buy",
               trader: str = "TRADER", signature: str = "SIG") -> Trade:
    price = Decimal(str(price))
    sol = Decimal(str(sol))
    return Trade(
        mint=mint,
        signature=signature,
        timestamp=timestamp,
        side=side,
        buyer=trader if side == "buy" else "CURVE",
        seller="CURVE" if side == "buy" else trader,
        price_in_quote=price,
        base_amount=sol / price,
        quote_amount=sol,
    )


@pytest.fixture
def mint() -> str:
    return address(1)


@pytest.fixture
def fake_poller() -> FakePoller:
    return FakePoller()


@pytest.fixture
def samples(mint) -> SampleStream:
    return SampleStream(mint)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
