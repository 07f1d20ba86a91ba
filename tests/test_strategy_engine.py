"""
Tests for StrategyEngine: gate order, aggregation, dedup, window, latch.
"""

from __future__ import annotations

import asyncio
import math

import pytest

from conftest import (
    CID,
    FakeMarkets,
    FakeValue,
    make_market,
    make_strategy,
    make_trade,
)
from polycopy.core.config import CopyConditions, SizingConfig, SizingRule
from polycopy.core.errors import RejectReason
from polycopy.strategy.engine import StrategyEngine
from polycopy.strategy.models import RatioOfCapital, Side
from polycopy.strategy.state import StrategyState


def _engine(clock, equity: float = 1000.0, markets=None, portfolio=None, state=None) -> StrategyEngine:
    markets = markets or FakeMarkets(make_market())
    balances = FakeValue(equity)
    return StrategyEngine(markets, balances, portfolio or balances, state=state, clock=clock)


# ── Conviction scenarios ───────────────────────────────────────────────────


class TestScenarios:

    @pytest.mark.asyncio
    async def test_single_small_buy_rejected_for_allocation(self, clock, strategy):
        engine = _engine(clock)

        decision = await engine.evaluate(make_trade(size=100, price=0.5), strategy)

        assert decision.should_execute is False
        assert decision.rejection == RejectReason.ALLOCATION_TOO_LOW
        assert decision.reason == "Alloc 5.00% < Min 12%"
        assert decision.allocation_pct == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_accumulated_buys_match_first_tier(self, clock, strategy):
        engine = _engine(clock)

        first = await engine.evaluate(make_trade("0xa", size=100, price=0.5), strategy)
        clock.advance(30)
        second = await engine.evaluate(make_trade("0xb", size=200, price=0.5), strategy)

        assert first.should_execute is False
        assert second.should_execute is True
        assert second.size == RatioOfCapital(0.015)
        assert second.size_usd == pytest.approx(-0.015)
        assert second.allocation_pct == pytest.approx(0.15)
        assert second.net_exposure_usd == pytest.approx(150.0)
        assert second.market_data.condition_id == CID
        assert second.reason == "Matched: Alloc 0.15"

    @pytest.mark.asyncio
    async def test_low_dominance_rejected_regardless_of_allocation(self, clock, strategy):
        state = StrategyState()
        state.accumulate(CID, Side.BUY, 300.0, clock())
        state.accumulate(CID, Side.SELL, 150.0, clock())
        engine = _engine(clock, equity=500.0, state=state)

        decision = await engine.evaluate(
            make_trade("0xsell", side=Side.SELL, size=100, price=0.5), strategy,
        )

        assert decision.should_execute is False
        assert decision.rejection == RejectReason.DOMINANCE_TOO_LOW
        assert decision.dominance == pytest.approx(0.60)
        assert decision.allocation_pct == pytest.approx(0.20)


# ── Market lookup / dedup ────────────────────────────────────────────


class TestLookupAndDedup:

    @pytest.mark.asyncio
    async def test_unknown_market_rejected_without_touching_state(self, clock, strategy):
        engine = _engine(clock, markets=FakeMarkets())

        decision = await engine.evaluate(make_trade(), strategy)

        assert decision.rejection == RejectReason.MARKET_NOT_FOUND
        assert decision.reason == "Market Data Not Found"
        assert engine.state.dedup_size == 0
        assert engine.state.exposures == {}

    @pytest.mark.asyncio
    async def test_market_lookup_exception_is_not_found(self, clock, strategy):
        class Boom:
            async def get_market(self, condition_id):
                raise RuntimeError("gamma down")

        engine = _engine(clock, markets=Boom())
        decision = await engine.evaluate(make_trade(), strategy)

        assert decision.rejection == RejectReason.MARKET_NOT_FOUND

    @pytest.mark.asyncio
    async def test_duplicate_hash_evaluated_once(self, clock, strategy):
        engine = _engine(clock)

        await engine.evaluate(make_trade("0xdup", size=100), strategy)
        again = await engine.evaluate(make_trade("0xdup", size=100), strategy)
        third = await engine.evaluate(make_trade("0xdup", size=100), strategy)

        assert again.rejection == RejectReason.DUPLICATE
        assert again.reason == "Duplicate trade"
        assert third.reason == again.reason
        # no double counting
        assert engine.state.exposures[CID].buy_usd == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_missing_hash_rejected(self, clock, strategy):
        engine = _engine(clock)

        decision = await engine.evaluate(make_trade(tx=""), strategy)

        assert decision.rejection == RejectReason.MISSING_TX_HASH
        assert CID not in engine.state.exposures


# ── Window / resolution / price / floor ──────────────────────────────


class TestGates:

    @pytest.mark.asyncio
    async def test_window_expiry_deletes_record(self, clock, strategy):
        engine = _engine(clock)

        await engine.evaluate(make_trade("0x1", size=100), strategy)
        clock.advance(11 * 60)
        late = await engine.evaluate(make_trade("0x2", size=200), strategy)

        assert late.rejection == RejectReason.WINDOW_EXPIRED
        assert late.reason == "Conviction window expired"
        assert CID not in engine.state.exposures

        # next trade starts a fresh episode
        fresh = await engine.evaluate(make_trade("0x3", size=100), strategy)
        assert fresh.rejection == RejectReason.ALLOCATION_TOO_LOW
        assert engine.state.exposures[CID].first_seen_at == clock()
        assert engine.state.exposures[CID].buy_usd == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_within_window_keeps_accumulating(self, clock, strategy):
        engine = _engine(clock)

        await engine.evaluate(make_trade("0x1", size=100), strategy)
        clock.advance(10 * 60)  # exactly at the window edge still counts
        decision = await engine.evaluate(make_trade("0x2", size=200), strategy)

        assert decision.should_execute is True

    @pytest.mark.asyncio
    async def test_too_close_to_resolution(self, clock, strategy):
        from polycopy.utils.time_utils import ts_to_str

        end = ts_to_str(clock() + 30 * 60, "%Y-%m-%dT%H:%M:%SZ")
        engine = _engine(clock, markets=FakeMarkets(make_market(end_date=end)))
        cfg = make_strategy(conditions=CopyConditions(min_time_to_resolution_minutes=60))

        decision = await engine.evaluate(make_trade(size=400), cfg)

        assert decision.rejection == RejectReason.TOO_CLOSE_TO_RESOLUTION
        assert decision.reason.startswith("Too close to resolution (30m < 60m)")

    @pytest.mark.asyncio
    async def test_unparsable_end_date_skips_resolution_gate(self, clock):
        engine = _engine(clock, markets=FakeMarkets(make_market(end_date="not-a-date")))
        cfg = make_strategy(conditions=CopyConditions(min_time_to_resolution_minutes=60))

        decision = await engine.evaluate(make_trade(size=400), cfg)

        assert decision.should_execute is True

    @pytest.mark.asyncio
    async def test_noise_price_rejected(self, clock, strategy):
        engine = _engine(clock)

        decision = await engine.evaluate(make_trade(size=10_000, price=0.02), strategy)

        assert decision.rejection == RejectReason.PRICE_BELOW_FLOOR

    @pytest.mark.asyncio
    async def test_net_floor_skips_equity_lookup(self, clock, strategy):
        balances = FakeValue(1000.0)
        engine = StrategyEngine(FakeMarkets(make_market()), balances, balances, clock=clock)

        decision = await engine.evaluate(make_trade(size=10, price=0.5), strategy)

        assert decision.rejection == RejectReason.EXPOSURE_TOO_SMALL
        assert balances.calls == 0

    @pytest.mark.asyncio
    async def test_equity_is_max_of_cash_and_portfolio(self, clock, strategy):
        engine = _engine(clock, equity=200.0, portfolio=FakeValue(1000.0))

        decision = await engine.evaluate(make_trade(size=300, price=0.5), strategy)

        assert decision.allocation_pct == pytest.approx(0.15)

    @pytest.mark.asyncio
    async def test_equity_at_or_below_one_dollar_gives_zero_allocation(self, clock, strategy):
        engine = _engine(clock, equity=1.0)

        decision = await engine.evaluate(make_trade(size=300, price=0.5), strategy)

        assert decision.rejection == RejectReason.ALLOCATION_TOO_LOW
        assert decision.allocation_pct == 0.0

    @pytest.mark.asyncio
    async def test_provider_exception_falls_back(self, clock, strategy):
        class Broken:
            async def get_portfolio_value(self, address):
                raise RuntimeError("data-api down")

        engine = _engine(clock, equity=1000.0, portfolio=Broken())
        decision = await engine.evaluate(make_trade(size=300, price=0.5), strategy)

        assert decision.should_execute is True
        assert decision.allocation_pct == pytest.approx(0.15)

    @pytest.mark.asyncio
    async def test_allocation_in_tier_gap_yields_zero_size(self, clock):
        cfg = make_strategy(sizing=SizingConfig(rules=(
            SizingRule(min_trader_alloc=0.12, max_trader_alloc=0.15, copy_size_ratio=0.01),
            SizingRule(min_trader_alloc=0.20, max_trader_alloc=math.inf, copy_size_ratio=0.02),
        )))
        engine = _engine(clock)

        decision = await engine.evaluate(make_trade(size=340, price=0.5), cfg)

        assert decision.rejection == RejectReason.NO_SIZING_TIER
        assert decision.reason == "Calculated Size is 0"
        assert decision.size_usd == 0


# ── Latch / executions ───────────────────────────────────────────────


class TestLatch:

    @pytest.mark.asyncio
    async def test_single_shot_latch_after_success(self, clock, strategy):
        engine = _engine(clock)
        go = await engine.evaluate(make_trade("0x1", size=300), strategy)
        assert go.should_execute

        assert engine.claim_execution(CID, strategy) is True
        engine.complete_execution(CID, strategy, success=True)

        again = await engine.evaluate(make_trade("0x2", size=100), strategy)
        assert again.rejection == RejectReason.ALREADY_EXECUTED
        assert again.reason == "Already executed for market"
        assert engine.claim_execution(CID, strategy) is False

    @pytest.mark.asyncio
    async def test_latch_rejection_keeps_diagnostics(self, clock, strategy):
        engine = _engine(clock)
        await engine.evaluate(make_trade("0x1", size=300), strategy)
        assert engine.claim_execution(CID, strategy)
        engine.complete_execution(CID, strategy, success=True)

        again = await engine.evaluate(make_trade("0x2", size=100), strategy)

        assert again.rejection == RejectReason.ALREADY_EXECUTED
        assert again.market_data is not None
        assert again.allocation_pct == pytest.approx(0.20)
        assert again.dominance == pytest.approx(1.0)
        assert again.net_exposure_usd == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_failed_execution_does_not_latch(self, clock, strategy):
        engine = _engine(clock)
        await engine.evaluate(make_trade("0x1", size=300), strategy)

        assert engine.claim_execution(CID, strategy)
        engine.complete_execution(CID, strategy, success=False)

        retry = await engine.evaluate(make_trade("0x2", size=10), strategy)
        assert retry.should_execute is True

    @pytest.mark.asyncio
    async def test_in_flight_claim_blocks_concurrent_decision(self, clock, strategy):
        engine = _engine(clock)
        await engine.evaluate(make_trade("0x1", size=300), strategy)
        assert engine.claim_execution(CID, strategy)

        concurrent = await engine.evaluate(make_trade("0x2", size=10), strategy)

        assert concurrent.rejection == RejectReason.ALREADY_EXECUTED
        assert engine.claim_execution(CID, strategy) is False

    @pytest.mark.asyncio
    async def test_multi_shot_bounded_by_max_executions(self, clock):
        cfg = make_strategy(
            allow_multiple_executions=True,
            conditions=CopyConditions(max_executions_per_market=2),
        )
        engine = _engine(clock)

        for i in range(2):
            decision = await engine.evaluate(make_trade(f"0x{i}", size=300), cfg)
            assert decision.should_execute
            assert engine.claim_execution(CID, cfg)
            engine.complete_execution(CID, cfg, success=True)

        capped = await engine.evaluate(make_trade("0xlast", size=300), cfg)
        assert capped.rejection == RejectReason.MAX_EXECUTIONS
        assert engine.state.execution_count(CID) == 2

    @pytest.mark.asyncio
    async def test_reset_exposure_policy(self, clock):
        cfg = make_strategy(allow_multiple_executions=True, reset_exposure_on_execution=True)
        engine = _engine(clock)

        await engine.evaluate(make_trade("0x1", size=300), cfg)
        engine.claim_execution(CID, cfg)
        engine.complete_execution(CID, cfg, success=True)

        assert CID not in engine.state.exposures
        small = await engine.evaluate(make_trade("0x2", size=100), cfg)
        assert small.rejection == RejectReason.ALLOCATION_TOO_LOW

    @pytest.mark.asyncio
    async def test_concurrent_same_market_signals_claim_once(self, clock, strategy):
        engine = _engine(clock)
        await engine.evaluate(make_trade("0x0", size=300), strategy)

        decisions = await asyncio.gather(
            engine.evaluate(make_trade("0x1", size=10), strategy),
            engine.evaluate(make_trade("0x2", size=10), strategy),
        )
        claims = [engine.claim_execution(CID, strategy) for d in decisions if d.should_execute]

        assert claims.count(True) == 1
        assert engine.state.exposures[CID].buy_usd == pytest.approx(160.0)


# ── Determinism / cleanup ────────────────────────────────────────────


class TestStateLifecycle:

    @pytest.mark.asyncio
    async def test_same_inputs_same_decisions(self, clock, strategy):
        trades = [make_trade("0x1", size=100), make_trade("0x2", size=100), make_trade("0x3", size=200)]

        async def run():
            engine = _engine(clock)
            return [(d.should_execute, d.reason) for d in [await engine.evaluate(t, strategy) for t in trades]]

        assert await run() == await run()

    @pytest.mark.asyncio
    async def test_rejected_market_reevaluates_with_same_reason(self, clock, strategy):
        engine = _engine(clock, equity=100_000.0)

        first = await engine.evaluate(make_trade("0x1", size=300), strategy)
        second = await engine.evaluate(make_trade("0x2", size=0.001), strategy)

        assert first.rejection == second.rejection == RejectReason.ALLOCATION_TOO_LOW

    @pytest.mark.asyncio
    async def test_stale_records_swept(self, clock, strategy):
        other = "0x" + "cd" * 32
        engine = _engine(clock, markets=FakeMarkets(make_market(), make_market(other)))

        await engine.evaluate(make_trade("0x1", size=100), strategy)   # arms the sweep timer
        clock.advance(2 * 3600 + 301)
        await engine.evaluate(make_trade("0x2", size=100, condition_id=other), strategy)

        assert CID not in engine.state.exposures
        assert other in engine.state.exposures
        assert not engine.state.is_seen("0x1")

    def test_dedup_capped_oldest_evicted(self):
        state = StrategyState(max_dedup_entries=3)
        for i in range(5):
            assert state.mark_seen(f"0x{i}", now=1000.0 + i)

        assert state.dedup_size == 3
        assert [state.is_seen(f"0x{i}") for i in range(5)] == [False, False, True, True, True]
        assert not state.mark_seen("0x4", now=2000.0)
