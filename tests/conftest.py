"""
Shared fixtures: fake clock, offline providers and strategy configs.
"""

from __future__ import annotations

import math

import pytest

from polycopy.core.config import (
    CopyConditions,
    RiskControls,
    SizingConfig,
    SizingRule,
    StrategyConfig,
)
from polycopy.strategy.models import MarketData, MarketToken, Side, TradeEvent

TRADER = "0x1111111111111111111111111111111111111111"
CID = "0x" + "ab" * 32
YES_TOKEN = "1001"
NO_TOKEN = "1002"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMarkets:
    def __init__(self, *markets: MarketData) -> None:
        self.markets = {m.condition_id: m for m in markets}
        self.calls = 0

    async def get_market(self, condition_id: str) -> MarketData | None:
        self.calls += 1
        return self.markets.get(condition_id)


class FakeValue:
    """Stands in for both the balance reader and the portfolio client."""

    def __init__(self, value: float) -> None:
        self.value = value
        self.calls = 0

    async def get_balance(self, address: str) -> float:
        self.calls += 1
        return self.value

    async def get_portfolio_value(self, address: str) -> float:
        self.calls += 1
        return self.value


def make_market(condition_id: str = CID, end_date: str = "2099-01-01T00:00:00Z") -> MarketData:
    return MarketData(
        condition_id=condition_id,
        question="Will BTC hit 100k?",
        slug="btc-100k",
        end_date=end_date,
        tokens=(MarketToken(YES_TOKEN, "Yes", 0.5), MarketToken(NO_TOKEN, "No", 0.5)),
    )


def make_trade(
    tx: str = "0xtx1",
    side: Side = Side.BUY,
    size: float = 100.0,
    price: float = 0.5,
    condition_id: str = CID,
    asset: str = YES_TOKEN,
) -> TradeEvent:
    return TradeEvent(
        user=TRADER,
        asset=asset,
        side=side,
        size=size,
        price=price,
        transaction_hash=tx,
        condition_id=condition_id,
    )


def make_strategy(**overrides) -> StrategyConfig:
    conditions = overrides.pop("conditions", CopyConditions())
    risk = overrides.pop("risk", RiskControls())
    sizing = overrides.pop("sizing", SizingConfig(rules=(
        SizingRule(min_trader_alloc=0.12, max_trader_alloc=0.20, copy_size_ratio=0.015),
        SizingRule(min_trader_alloc=0.20, max_trader_alloc=math.inf, copy_size_ratio=0.025),
    )))
    return StrategyConfig(
        trader_address=overrides.pop("trader_address", TRADER),
        alias=overrides.pop("alias", "test"),
        conditions=conditions,
        sizing=sizing,
        risk=risk,
        **overrides,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def market() -> MarketData:
    return make_market()


@pytest.fixture
def strategy() -> StrategyConfig:
    return make_strategy()
