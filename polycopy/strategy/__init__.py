"""跟单策略: 数据模型 / 分档 / 状态 / 引擎"""

from polycopy.strategy.engine import StrategyEngine
from polycopy.strategy.models import (
    AbsoluteUsd,
    Decision,
    MarketData,
    MarketToken,
    RatioOfCapital,
    Side,
    TradeEvent,
)
from polycopy.strategy.state import MarketExposureRecord, StrategyState

__all__ = [
    "AbsoluteUsd",
    "Decision",
    "MarketData",
    "MarketExposureRecord",
    "MarketToken",
    "RatioOfCapital",
    "Side",
    "StrategyEngine",
    "StrategyState",
    "TradeEvent",
]
