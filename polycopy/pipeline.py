"""
Copy Pipeline - 信号 → 判定 → 执行

每条成交信号的处理边界: 所有异常都在这里捕获并记录, 不会中断轮询。
每个目标交易员对应一个 StrategyEngine (独立状态), 执行器全局共享。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from loguru import logger

from polycopy.core.config import StrategyConfig
from polycopy.strategy.engine import StrategyEngine
from polycopy.strategy.models import Decision, TradeEvent
from polycopy.trading.executor import CopyExecutor, ExecutionResult

if TYPE_CHECKING:
    from polycopy.utils.trade_logger import TradeLogger


class CopyPipeline:
    def __init__(
        self,
        engine_factory: Callable[[], StrategyEngine],
        executor: CopyExecutor,
        journal: "TradeLogger | None" = None,
    ) -> None:
        self._engine_factory = engine_factory
        self.executor = executor
        self.journal = journal
        self._engines: dict[str, StrategyEngine] = {}

    def engine_for(self, config: StrategyConfig) -> StrategyEngine:
        key = config.trader_address.lower()
        engine = self._engines.get(key)
        if engine is None:
            engine = self._engine_factory()
            self._engines[key] = engine
        return engine

    async def handle_trade(self, trade: TradeEvent, config: StrategyConfig) -> ExecutionResult | None:
        """处理一条成交; 返回执行结果 (未执行返回 None)"""
        try:
            return await self._handle(trade, config)
        except Exception as e:
            logger.exception(f"Error in trade processing flow ({trade.transaction_hash[:12]}): {e}")
            return None

    async def _handle(self, trade: TradeEvent, config: StrategyConfig) -> ExecutionResult | None:
        engine = self.engine_for(config)
        logger.debug(f"--- Processing trade {trade.transaction_hash[:16]} ({config.label}) ---")

        decision = await engine.evaluate(trade, config)
        self._journal_decision(trade, config, decision)
        if not decision.should_execute:
            logger.info(f"[STRATEGY] SKIP: {decision.reason}")
            return None

        logger.info(f"[STRATEGY] GO: {decision.reason} | Size: {decision.size}")
        market = decision.market_data
        assert market is not None

        outcome_index = market.token_index(trade.asset)
        if outcome_index is None:
            logger.warning(
                f"[STRATEGY] Traded asset {trade.asset[:12]}... not among market tokens, skipping"
            )
            return None

        cid = market.condition_id
        if not engine.claim_execution(cid, config):
            logger.info(f"[STRATEGY] SKIP: execution already in progress or latched for {cid[:12]}...")
            return None

        result: ExecutionResult | None = None
        try:
            result = await self.executor.execute(decision, config, trade.side, outcome_index, trade.price)
        finally:
            engine.complete_execution(cid, config, success=bool(result and result.success))

        if self.journal is not None:
            self.journal.log_execution(trade, config, result)
        if not result.success:
            logger.info(f"[EXECUTOR] {result.status.value}: {result.reason}")
        return result

    def _journal_decision(self, trade: TradeEvent, config: StrategyConfig, decision: Decision) -> None:
        if self.journal is not None:
            self.journal.log_decision(trade, config, decision)
