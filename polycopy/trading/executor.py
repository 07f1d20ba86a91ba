"""
Copy Executor - 跟单执行器

把策略引擎的 Decision 转换为受风控约束的限价单:

    可用资金 = 钱包余额 × global_allocation_fraction
    仓位 (USD) → 单笔截断 → 总敞口 / 单市场 / 持仓数检查并预留
    → outcome token → 份数 → tick_size / neg_risk → 价格对齐 → 下单
    → 成功确认敞口, 失败释放预留

任何一步失败都只记录日志并返回, 不重试, 不改动已确认敞口。
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from polycopy.core.context import Context
from polycopy.core.errors import CredentialError, OrderRejected, RiskLimitExceeded
from polycopy.strategy.models import Decision, Side
from polycopy.trading.clob_api import BookParams, ClobApiClient
from polycopy.trading.exposure import ExposureLimits, ExposureState

if TYPE_CHECKING:
    from polycopy.core.config import StrategyConfig
    from polycopy.trading.wallet import UsdcBalanceReader, WalletManager

MIN_SHARES = 1.0


class ExecutionStatus(str, Enum):
    SKIPPED = "skipped"         # Decision 未通过 / 字段缺失
    REJECTED = "rejected"       # 风控 / 最小份数
    FAILED = "failed"           # token 缺失 / broker 失败 / 交易未启用
    SUBMITTED = "submitted"     # 实盘订单已被 CLOB 接受
    FILLED = "filled"           # 模拟盘成交


@dataclass
class ExecutionResult:
    """跟单执行结果"""
    status: ExecutionStatus
    reason: str = ""
    condition_id: str = ""
    token_id: str = ""
    side: str = ""
    size_usd: float = 0.0
    shares: float = 0.0
    price: float = 0.0
    tick_size: str = ""
    neg_risk: bool = False
    order_id: str = ""
    paper: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.status in (ExecutionStatus.SUBMITTED, ExecutionStatus.FILLED)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "condition_id": self.condition_id,
            "token_id": self.token_id,
            "side": self.side,
            "size_usd": round(self.size_usd, 4),
            "shares": self.shares,
            "price": self.price,
            "tick_size": self.tick_size,
            "neg_risk": self.neg_risk,
            "order_id": self.order_id,
            "paper": self.paper,
            "timestamp": self.timestamp,
        }


def round_to_tick(price: float, tick_size: str) -> float:
    """价格对齐到 tick 并限制在 [tick, 1 - tick]"""
    tick = float(tick_size)
    decimals = len(tick_size.split(".")[1]) if "." in tick_size else 0
    rounded = round(round(price / tick) * tick, decimals)
    return min(max(rounded, tick), round(1 - tick, decimals))


def floor_shares(usd: float, price: float) -> float:
    """份数向下取整到 0.01"""
    return math.floor(usd / price * 100) / 100


class CopyExecutor:
    """
    跟单执行器

    - 实盘: ClobApiClient 下单, 余额来自资金地址的链上 USDC
    - 模拟盘: 以 Context 中的模拟余额成交
    - ExposureState 在所有目标交易员之间共享
    """

    def __init__(
        self,
        context: Context,
        wallet: "WalletManager | None" = None,
        balances: "UsdcBalanceReader | None" = None,
        clob: ClobApiClient | None = None,
        exposure: ExposureState | None = None,
        clob_host: str = "",
        order_type: str = "GTC",
        timeout: float = 30.0,
    ) -> None:
        self.context = context
        self.wallet = wallet
        self.balances = balances
        self.exposure = exposure or ExposureState()
        self.order_type = order_type
        self._clob = clob
        self._clob_host = clob_host
        self._timeout = timeout
        self.trading_enabled = context.is_paper

        self._stats = {
            "submitted": 0,
            "filled": 0,
            "rejected": 0,
            "failed": 0,
            "total_volume": 0.0,
        }

    # ----------------------------------------------------------
    #  初始化
    # ----------------------------------------------------------
    async def initialize(self) -> bool:
        """
        建立 CLOB 连接 (仅实盘)

        凭证失败不会终止进程: 记录 CRITICAL 并关闭交易, 后续实盘下单直接失败。
        """
        if self.context.is_paper:
            logger.info("[EXECUTOR] Paper mode, orders will be simulated")
            self.trading_enabled = True
            return True

        if self.wallet is None or not self.wallet.can_sign():
            logger.critical("[EXECUTOR] No signer configured, live trading DISABLED")
            self.trading_enabled = False
            return False

        if self._clob is None:
            self._clob = ClobApiClient(
                private_key=self.wallet.private_key,
                host=self._clob_host,
                funder=self.wallet.proxy_address,
                timeout=self._timeout,
            )
        try:
            await self._clob.initialize()
        except CredentialError as e:
            logger.critical(f"[EXECUTOR] CLOB credentials unavailable, live trading DISABLED: {e}")
            self.trading_enabled = False
            return False

        self.trading_enabled = True
        logger.info(
            f"[EXECUTOR] CLOB client ready | signer={self.wallet.address[:10]}... "
            f"funder={self.wallet.funding_address[:10]}..."
        )
        return True

    # ----------------------------------------------------------
    #  资金
    # ----------------------------------------------------------
    async def get_wallet_balance(self) -> float:
        if self.context.is_paper:
            return self.context.account.balance
        if self.wallet is None or self.balances is None:
            return 0.0
        return await self.balances.get_balance(self.wallet.funding_address)

    async def get_spendable_capital(self, config: "StrategyConfig") -> float:
        balance = await self.get_wallet_balance()
        return max(balance, 0.0) * config.global_allocation_fraction

    # ----------------------------------------------------------
    #  执行
    # ----------------------------------------------------------
    async def execute(
        self,
        decision: Decision,
        config: "StrategyConfig",
        side: Side,
        outcome_index: int,
        price: float,
    ) -> ExecutionResult:
        market = decision.market_data
        if not decision.should_execute or decision.size is None or market is None:
            return ExecutionResult(status=ExecutionStatus.SKIPPED, reason=decision.reason or "nothing to execute")

        cid = market.condition_id
        side_str = side.value if isinstance(side, Side) else str(side).upper()

        if not self.trading_enabled:
            return self._fail(cid, "trading disabled (no CLOB credentials)")

        # 1. 可用资金 + 仓位
        spendable = await self.get_spendable_capital(config)
        if spendable <= 0:
            return self._reject(cid, f"no spendable capital (balance × {config.global_allocation_fraction:g})")

        size = decision.size.resolve(spendable)
        logger.info(
            f"[EXECUTOR] Attempting order: ${size:.2f} ({decision.size}) on "
            f"{market.question[:60] or cid[:12]} | spendable=${spendable:.2f}"
        )

        # 2. 风控: 单笔只截断
        risk = config.risk
        single_cap = spendable * risk.max_single_trade_size
        if size > single_cap:
            logger.warning(f"[RISK] Trade size ${size:.2f} exceeds max single trade ${single_cap:.2f}. Capping.")
            size = single_cap
        if size <= 0:
            return self._reject(cid, "size is 0 after caps")

        # 3. 风控: 总敞口 / 单市场 / 持仓数 (检查并预留)
        limits = ExposureLimits(
            total_usd=spendable * risk.max_total_open_exposure,
            market_usd=spendable * risk.max_single_market_exposure,
            max_open_positions=risk.max_open_positions,
        )
        try:
            reservation = await self.exposure.reserve(cid, size, limits)
        except RiskLimitExceeded as e:
            logger.warning(f"[RISK] {e.message}. Skipping.")
            return self._reject(cid, e.message, size_usd=size)

        try:
            result = await self._place(decision, side_str, outcome_index, price, size)
        except OrderRejected as e:
            await self.exposure.release(reservation)
            logger.error(f"[EXECUTOR] Order failed for {cid[:12]}...: {e.message}")
            result = self._fail(cid, e.message, size_usd=size)
            result.order_id = e.order_id or ""
            return result
        except Exception as e:
            await self.exposure.release(reservation)
            logger.exception(f"[EXECUTOR] Unexpected error executing {cid[:12]}...: {e}")
            return self._fail(cid, f"unexpected error: {e}", size_usd=size)

        if result.success:
            await self.exposure.commit(reservation)
            if result.paper:
                self.context.record_paper_fill(size)
            self._stats["total_volume"] += size
        else:
            await self.exposure.release(reservation)
        return result

    async def _place(
        self,
        decision: Decision,
        side: str,
        outcome_index: int,
        price: float,
        size: float,
    ) -> ExecutionResult:
        market = decision.market_data
        assert market is not None
        cid = market.condition_id

        # 4. outcome token
        token = market.token_at(outcome_index)
        if token is None or not token.token_id:
            logger.error(f"[EXECUTOR] Token ID not found for outcome index {outcome_index}")
            return self._fail(cid, f"token not found for outcome index {outcome_index}", size_usd=size)

        # 5. 份数
        if price <= 0 or price >= 1:
            return self._reject(cid, f"invalid price {price}", size_usd=size)
        shares = floor_shares(size, price)
        if shares < MIN_SHARES:
            logger.warning(f"[EXECUTOR] Shares too low: {shares:.2f} (${size:.2f} @ {price})")
            return self._reject(cid, f"shares {shares:.2f} below minimum {MIN_SHARES:g}", size_usd=size)

        # 6. tick_size / neg_risk
        if self.context.is_paper or self._clob is None:
            params = BookParams(neg_risk=market.neg_risk)
        else:
            params = await self._clob.get_book_params(token.token_id)

        # 7. 价格对齐
        limit_price = round_to_tick(price, params.tick_size)

        result = ExecutionResult(
            status=ExecutionStatus.FAILED,
            condition_id=cid,
            token_id=token.token_id,
            side=side,
            size_usd=size,
            shares=shares,
            price=limit_price,
            tick_size=params.tick_size,
            neg_risk=params.neg_risk,
            paper=self.context.is_paper,
        )
        logger.info(
            f"[ORDER] Placing {side} for {shares:.2f} shares at {limit_price} "
            f"(Tick: {params.tick_size}, NegRisk: {params.neg_risk})"
        )

        # 8. 下单
        if self.context.is_paper:
            result.status = ExecutionStatus.FILLED
            result.order_id = f"paper-{int(time.time() * 1000)}"
            result.reason = "paper fill"
            self._stats["filled"] += 1
            logger.bind(tags=["trade"]).info(
                f"PAPER FILL | {side} {shares:.2f} {token.outcome or token.token_id[:10]} @ {limit_price} "
                f"(${size:.2f}) | {market.question[:60]}"
            )
            return result

        assert self._clob is not None
        resp = await self._clob.place_order(
            token_id=token.token_id,
            price=limit_price,
            size=shares,
            side=side,
            order_type=self.order_type,
            tick_size=params.tick_size,
            neg_risk=params.neg_risk,
        )
        if not resp.success:
            raise OrderRejected(resp.error or "order rejected", order_id=resp.order_id)

        result.status = ExecutionStatus.SUBMITTED
        result.order_id = resp.order_id
        result.reason = "order accepted"
        self._stats["submitted"] += 1
        logger.bind(tags=["trade"]).info(
            f"LIVE ORDER | {side} {shares:.2f} {token.outcome or token.token_id[:10]} @ {limit_price} "
            f"(${size:.2f}) | orderID={resp.order_id} | {market.question[:60]}"
        )
        return result

    # ----------------------------------------------------------
    #  工具
    # ----------------------------------------------------------
    def _reject(self, cid: str, reason: str, size_usd: float = 0.0) -> ExecutionResult:
        self._stats["rejected"] += 1
        return ExecutionResult(
            status=ExecutionStatus.REJECTED, reason=reason, condition_id=cid,
            size_usd=size_usd, paper=self.context.is_paper,
        )

    def _fail(self, cid: str, reason: str, size_usd: float = 0.0) -> ExecutionResult:
        self._stats["failed"] += 1
        return ExecutionResult(
            status=ExecutionStatus.FAILED, reason=reason, condition_id=cid,
            size_usd=size_usd, paper=self.context.is_paper,
        )

    @property
    def stats(self) -> dict:
        return {**self._stats, "exposure": self.exposure.snapshot()}
