"""
Exposure State - 本次会话的跟单敞口

进程内共享 (所有目标交易员的引擎共用一个), 由执行器持有:
- session_total_usd    已确认成交的总敞口
- per_market_usd       conditionId → 已确认成交的敞口
- 预留 (reservation)   风控检查通过、尚未确认的金额

检查 + 预留 在同一把锁内完成, 并发的两笔执行能看到彼此的预留;
锁不跨越网络调用。已确认敞口只在 broker 确认下单后增加。
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

from loguru import logger

from polycopy.core.errors import RiskLimitExceeded

_EPS = 1e-9


@dataclass(frozen=True)
class Reservation:
    id: int
    condition_id: str
    usd: float


@dataclass(frozen=True)
class ExposureLimits:
    """以美元表示的上限 (= 比例 × 可用资金)"""
    total_usd: float
    market_usd: float
    max_open_positions: int


class ExposureState:
    def __init__(self) -> None:
        self.session_total_usd = 0.0
        self.per_market_usd: dict[str, float] = {}
        self._pending: dict[int, Reservation] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    # ----------------------------------------------------------
    #  查询
    # ----------------------------------------------------------
    def market_exposure(self, condition_id: str) -> float:
        return self.per_market_usd.get(condition_id, 0.0)

    def pending_total(self) -> float:
        return sum(r.usd for r in self._pending.values())

    def pending_for(self, condition_id: str) -> float:
        return sum(r.usd for r in self._pending.values() if r.condition_id == condition_id)

    def open_markets(self) -> set[str]:
        markets = {cid for cid, usd in self.per_market_usd.items() if usd > 0}
        markets.update(r.condition_id for r in self._pending.values())
        return markets

    # ----------------------------------------------------------
    #  预留 / 确认 / 释放
    # ----------------------------------------------------------
    async def reserve(self, condition_id: str, usd: float, limits: ExposureLimits) -> Reservation:
        """风控检查并预留; 超限抛 RiskLimitExceeded (不改变任何状态)"""
        async with self._lock:
            total = self.session_total_usd + self.pending_total()
            if total + usd > limits.total_usd + _EPS:
                raise RiskLimitExceeded(
                    f"Total exposure limit: ${total:.2f} + ${usd:.2f} > ${limits.total_usd:.2f}"
                )

            market = self.market_exposure(condition_id) + self.pending_for(condition_id)
            if market + usd > limits.market_usd + _EPS:
                raise RiskLimitExceeded(
                    f"Single market exposure limit: ${market:.2f} + ${usd:.2f} > ${limits.market_usd:.2f}"
                )

            open_markets = self.open_markets()
            if condition_id not in open_markets and len(open_markets) >= limits.max_open_positions:
                raise RiskLimitExceeded(
                    f"Max open positions reached ({len(open_markets)}/{limits.max_open_positions})"
                )

            res = Reservation(id=next(self._ids), condition_id=condition_id, usd=usd)
            self._pending[res.id] = res
            return res

    async def commit(self, reservation: Reservation) -> None:
        """broker 确认后转为已确认敞口 (每个预留只生效一次)"""
        async with self._lock:
            res = self._pending.pop(reservation.id, None)
            if res is None:
                logger.warning(f"[RISK] Reservation #{reservation.id} already settled, ignoring commit")
                return
            amount = res.usd
            self.session_total_usd += amount
            self.per_market_usd[res.condition_id] = self.market_exposure(res.condition_id) + amount
            logger.debug(
                f"[RISK] Exposure committed: {res.condition_id[:12]}... +${amount:.2f} | "
                f"session=${self.session_total_usd:.2f}"
            )

    async def release(self, reservation: Reservation) -> None:
        async with self._lock:
            self._pending.pop(reservation.id, None)

    def snapshot(self) -> dict:
        return {
            "session_total_usd": round(self.session_total_usd, 4),
            "pending_usd": round(self.pending_total(), 4),
            "markets": {cid: round(v, 4) for cid, v in self.per_market_usd.items()},
        }
