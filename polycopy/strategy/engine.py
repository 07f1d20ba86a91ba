"""
Strategy Engine - 跟单策略引擎

对目标交易员的每一笔成交做判定:

    1.  过期清理 (每 5 分钟, 删除 2 小时前的记录)
    2.  市场元数据查询
    3.  交易哈希去重
    4.  按市场累计买/卖金额
    5.  时间窗口 (超时删除记录)
    6.  距结算时间
    7.  噪声价格
    8.  净敞口下限
    9.  目标交易员仓位占比 (净敞口 / 权益)
    10. 单边主导度
    11. 执行锁存 / 执行次数上限
    12. 分档计算仓位

任一闸门失败即返回 Decision(should_execute=False)。
第 3-5 步在按市场的锁内完成, 锁内没有网络调用。
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable

from loguru import logger

from polycopy.core.errors import (
    DuplicateSignal,
    MarketNotFound,
    RejectReason,
    SignalRejected,
    ThresholdNotMet,
)
from polycopy.strategy.models import Decision, MarketData, TradeEvent
from polycopy.strategy.sizing import size_for_allocation
from polycopy.strategy.state import MarketExposureRecord, StrategyState
from polycopy.utils.time_utils import minutes_until

if TYPE_CHECKING:
    from polycopy.core.config import StrategyConfig
    from polycopy.market.metadata import MarketMetadataClient
    from polycopy.market.portfolio import PortfolioValueClient
    from polycopy.trading.wallet import UsdcBalanceReader


class StrategyEngine:
    """
    跟单策略引擎 (每个目标交易员一个实例)

    用法:
        engine = StrategyEngine(markets, balances, portfolio)
        decision = await engine.evaluate(trade, strategy_cfg)
        if decision.should_execute and engine.claim_execution(cid, strategy_cfg):
            ok = ...
            engine.complete_execution(cid, strategy_cfg, success=ok)
    """

    def __init__(
        self,
        markets: "MarketMetadataClient",
        balances: "UsdcBalanceReader",
        portfolio: "PortfolioValueClient",
        state: StrategyState | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.markets = markets
        self.balances = balances
        self.portfolio = portfolio
        self.state = state or StrategyState()
        self._clock = clock or time.time

    # ================================================================
    #  判定
    # ================================================================

    async def evaluate(self, trade: TradeEvent, config: "StrategyConfig") -> Decision:
        try:
            return await self._evaluate(trade, config)
        except SignalRejected as rej:
            decision = Decision.reject(rej.message, rej.reason, market_data=rej.market_data, **rej.diagnostics)
            logger.debug(f"[STRATEGY] {config.label} {trade.condition_id[:12]}... rejected: {rej.message}")
            return decision

    async def _evaluate(self, trade: TradeEvent, config: "StrategyConfig") -> Decision:
        cond = config.conditions
        now = self._clock()

        # 1. 过期清理
        self.state.maybe_sweep(now)

        # 2. 市场元数据
        market = await self._lookup_market(trade.condition_id)
        if market is None:
            raise MarketNotFound(trade.condition_id)

        # 3-5. 去重 / 累计 / 窗口 (锁内无 I/O)
        async with self.state.lock(trade.condition_id):
            record = self._accumulate(trade, config, market, now)

        # 6. 距结算时间
        if cond.min_time_to_resolution_minutes is not None and market.end_date:
            left = minutes_until(market.end_date, now)
            if left is None:
                logger.warning(
                    f"[STRATEGY] Unparsable endDate {market.end_date!r} for {market.condition_id[:12]}..., "
                    f"skipping resolution check"
                )
            elif left < cond.min_time_to_resolution_minutes:
                raise self._threshold(
                    RejectReason.TOO_CLOSE_TO_RESOLUTION,
                    f"Too close to resolution ({left:.0f}m < {cond.min_time_to_resolution_minutes:g}m)",
                    market,
                )

        # 7. 噪声价格
        if cond.ignore_price_below is not None and trade.price < cond.ignore_price_below:
            raise self._threshold(
                RejectReason.PRICE_BELOW_FLOOR,
                f"Price {trade.price} below noise threshold",
                market,
            )

        # 8. 净敞口下限
        net = record.net_usd
        if net < cond.min_net_exposure_usd:
            raise self._threshold(
                RejectReason.EXPOSURE_TOO_SMALL,
                f"Exposure too small (${net:.2f} < ${cond.min_net_exposure_usd:g})",
                market,
            )

        # 9. 仓位占比
        equity = await self._trader_equity(config.trader_address)
        allocation = net / equity if equity > 1 else 0.0
        if allocation < cond.min_trader_portfolio_alloc:
            raise self._threshold(
                RejectReason.ALLOCATION_TOO_LOW,
                f"Alloc {allocation * 100:.2f}% < Min {cond.min_trader_portfolio_alloc * 100:.0f}%",
                market,
                allocation_pct=allocation,
                net_exposure_usd=net,
            )

        # 10. 主导度
        dominance = record.dominance
        if cond.dominance_threshold is not None and dominance < cond.dominance_threshold:
            raise self._threshold(
                RejectReason.DOMINANCE_TOO_LOW,
                f"Dominance {dominance:.2f} < {cond.dominance_threshold:g}",
                market,
                allocation_pct=allocation,
                dominance=dominance,
                net_exposure_usd=net,
            )

        # 11. 执行锁存
        latch = self._latch_rejection(trade.condition_id, config)
        if latch is not None:
            code, reason = latch
            raise self._threshold(
                code, reason, market,
                allocation_pct=allocation, dominance=dominance, net_exposure_usd=net,
            )

        # 12. 分档
        size = size_for_allocation(config.sizing, allocation)
        if size is None:
            raise self._threshold(
                RejectReason.NO_SIZING_TIER,
                "Calculated Size is 0",
                market,
                allocation_pct=allocation,
                dominance=dominance,
                net_exposure_usd=net,
            )

        logger.info(
            f"[STRATEGY] {config.label} signal on {market.question[:60] or market.condition_id[:12]} | "
            f"net=${net:.2f} alloc={allocation:.2%} dom={dominance:.2f} → size {size}"
        )
        return Decision(
            should_execute=True,
            reason=f"Matched: Alloc {allocation:.2f}",
            size=size,
            market_data=market,
            allocation_pct=allocation,
            dominance=dominance,
            net_exposure_usd=net,
        )

    # ----------------------------------------------------------
    #  各步骤
    # ----------------------------------------------------------
    async def _lookup_market(self, condition_id: str) -> MarketData | None:
        if not condition_id:
            return None
        try:
            return await self.markets.get_market(condition_id)
        except Exception as e:
            logger.warning(f"[STRATEGY] Market lookup failed for {condition_id[:12]}...: {e}")
            return None

    def _accumulate(
        self,
        trade: TradeEvent,
        config: "StrategyConfig",
        market: MarketData,
        now: float,
    ) -> MarketExposureRecord:
        """去重 + 累计 + 窗口检查, 返回记录快照"""
        tx = trade.transaction_hash
        if not tx:
            raise self._threshold(RejectReason.MISSING_TX_HASH, "Missing transaction hash", market)
        if not self.state.mark_seen(tx, now):
            raise DuplicateSignal(tx, market_data=market)

        cid = trade.condition_id
        record = self.state.accumulate(cid, trade.side, trade.notional, now)

        window = config.conditions.time_window_minutes
        if window is not None:
            age = record.age_minutes(now)
            if age > window:
                self.state.expire(cid)
                logger.info(
                    f"[STRATEGY] Conviction window expired for {cid[:12]}... "
                    f"({age:.1f}m > {window:g}m), record reset"
                )
                raise self._threshold(RejectReason.WINDOW_EXPIRED, "Conviction window expired", market)

        return self.state.snapshot(cid)

    async def _trader_equity(self, address: str) -> float:
        """权益 = max(现金余额, 持仓市值), 两者并发查询"""
        cash, portfolio = await asyncio.gather(
            self.balances.get_balance(address),
            self.portfolio.get_portfolio_value(address),
            return_exceptions=True,
        )
        if isinstance(cash, BaseException):
            logger.warning(f"[STRATEGY] Balance lookup failed for {address[:10]}...: {cash}")
            cash = 0.0
        if isinstance(portfolio, BaseException):
            logger.warning(f"[STRATEGY] Portfolio lookup failed for {address[:10]}...: {portfolio}")
            portfolio = 0.0
        return max(float(cash), float(portfolio))

    def _latch_rejection(self, condition_id: str, config: "StrategyConfig") -> tuple[RejectReason, str] | None:
        st = self.state
        if not config.allow_multiple_executions:
            if st.is_latched(condition_id) or st.is_in_flight(condition_id):
                return RejectReason.ALREADY_EXECUTED, "Already executed for market"
            return None
        pending = 1 if st.is_in_flight(condition_id) else 0
        limit = config.conditions.max_executions_per_market
        if st.execution_count(condition_id) + pending >= limit:
            return RejectReason.MAX_EXECUTIONS, f"Max executions reached for market ({limit})"
        return None

    @staticmethod
    def _threshold(
        code: RejectReason,
        message: str,
        market: MarketData | None,
        **diagnostics: float,
    ) -> ThresholdNotMet:
        return ThresholdNotMet(code, message, market_data=market, **diagnostics)

    # ================================================================
    #  执行认领
    # ================================================================

    def claim_execution(self, condition_id: str, config: "StrategyConfig") -> bool:
        """
        在提交订单前认领市场

        复查锁存 / 执行次数并标记 in-flight, 同一市场的两个并发通过的
        判定只有一个能进入执行器。
        """
        if self._latch_rejection(condition_id, config) is not None:
            return False
        self.state.claim(condition_id)
        return True

    def complete_execution(self, condition_id: str, config: "StrategyConfig", success: bool) -> None:
        """释放认领; 成功时设置锁存并累加执行次数"""
        self.state.release(condition_id)
        if success:
            self.state.record_execution(condition_id, reset_exposure=config.reset_exposure_on_execution)
            logger.info(
                f"[STRATEGY] Market {condition_id[:12]}... executed "
                f"({self.state.execution_count(condition_id)}x)"
            )
