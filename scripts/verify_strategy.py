"""
验证跟单策略配置

1. 打印每个策略的分档, 并对一组样本占比给出命中的档位和仓位
2. 用离线的假数据源跑一遍完整判定 (不访问网络):
   目标交易员权益 $1000, 连续买入直到通过占比闸门

使用方法:
  python scripts/verify_strategy.py [--config config/settings.yaml]
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from polycopy.core.config import load_config  # noqa: E402
from polycopy.strategy.engine import StrategyEngine  # noqa: E402
from polycopy.strategy.models import MarketData, MarketToken, Side, TradeEvent  # noqa: E402
from polycopy.strategy.sizing import describe_rules, find_rule, size_for_allocation  # noqa: E402

SAMPLE_ALLOCS = [0.05, 0.10, 0.12, 0.15, 0.1999, 0.20, 0.35, 0.80]
MOCK_MARKET = MarketData(
    condition_id="0xabc",
    question="Will BTC hit 100k?",
    slug="btc-100k",
    end_date="2099-01-01T00:00:00Z",
    tokens=(MarketToken("TOKEN_A", "Yes", 0.5), MarketToken("TOKEN_B", "No", 0.5)),
)


class _OfflineMarkets:
    async def get_market(self, condition_id: str) -> MarketData | None:
        return MOCK_MARKET if condition_id == MOCK_MARKET.condition_id else None


class _FixedValue:
    def __init__(self, value: float) -> None:
        self.value = value

    async def get_balance(self, address: str) -> float:
        return self.value

    async def get_portfolio_value(self, address: str) -> float:
        return self.value


async def simulate(strategy) -> None:
    equity = _FixedValue(1000.0)
    engine = StrategyEngine(_OfflineMarkets(), equity, equity)
    for i in range(1, 6):
        trade = TradeEvent(
            user=strategy.trader_address,
            asset="TOKEN_A",
            side=Side.BUY,
            size=100,
            price=0.5,
            transaction_hash=f"0xsim{i}",
            condition_id=MOCK_MARKET.condition_id,
        )
        decision = await engine.evaluate(trade, strategy)
        print(
            f"  BUY #{i} ($50): {'GO  ' if decision.should_execute else 'SKIP'} "
            f"{decision.reason} | size_usd={decision.size_usd:+.4f}"
        )
        if decision.should_execute:
            break


def main() -> None:
    parser = argparse.ArgumentParser(description="验证跟单策略分档")
    parser.add_argument("--config", default=None)
    args = parser.parse_args()

    cfg = load_config(args.config)
    for strat in cfg.strategies:
        print(f"\n=== {strat.label} ({strat.sizing.mode.value}) ===")
        for line in describe_rules(strat.sizing.rules):
            print(f"  {line}")
        print()
        for alloc in SAMPLE_ALLOCS:
            rule = find_rule(strat.sizing.rules, alloc)
            size = size_for_allocation(strat.sizing, alloc)
            tier = f"[{rule.min_trader_alloc:.0%}, {rule.max_trader_alloc:.0%})" if rule else "no tier"
            print(f"  alloc {alloc:>7.2%} → {tier:<14} size={size if size else 0}")
        print("\n  Offline simulation (equity $1000):")
        asyncio.run(simulate(strat))


if __name__ == "__main__":
    main()
