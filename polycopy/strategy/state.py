"""
Strategy State - 策略引擎的可变状态

每个跟单引擎实例 (每个目标交易员) 持有一个 StrategyState:
- exposures       conditionId → 市场敞口累计记录
- 去重集合        transactionHash → 首次出现时间 (按时间 + 容量双重淘汰)
- 执行锁存        已跟单的 conditionId
- 执行计数 / in-flight 认领
- 按市场的 asyncio.Lock

状态只在进程内存中, 重启即清空 (轮询启动时会重新同步上游)。
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, replace

from loguru import logger

from polycopy.strategy.models import Side

CLEANUP_INTERVAL_SECONDS = 300.0       # 5 分钟清理一次
RECORD_RETENTION_SECONDS = 7200.0      # 记录保留 2 小时
MAX_DEDUP_ENTRIES = 10_000


@dataclass
class MarketExposureRecord:
    """单个市场内目标交易员的买卖累计 (USD)"""
    buy_usd: float = 0.0
    sell_usd: float = 0.0
    first_seen_at: float = 0.0

    def add(self, side: Side, usd: float) -> None:
        if side == Side.BUY:
            self.buy_usd += usd
        else:
            self.sell_usd += usd

    @property
    def total_usd(self) -> float:
        return self.buy_usd + self.sell_usd

    @property
    def net_usd(self) -> float:
        return abs(self.buy_usd - self.sell_usd)

    @property
    def dominance(self) -> float:
        """max(buy, sell) / (buy + sell); 净敞口为 0 时返回 0"""
        if self.net_usd == 0 or self.total_usd <= 0:
            return 0.0
        return max(self.buy_usd, self.sell_usd) / self.total_usd

    def age_minutes(self, now: float) -> float:
        return (now - self.first_seen_at) / 60.0


class StrategyState:
    def __init__(
        self,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        retention: float = RECORD_RETENTION_SECONDS,
        max_dedup_entries: int = MAX_DEDUP_ENTRIES,
    ) -> None:
        self.cleanup_interval = cleanup_interval
        self.retention = retention
        self.max_dedup_entries = max_dedup_entries

        self.exposures: dict[str, MarketExposureRecord] = {}
        self.executed_markets: set[str] = set()
        self.execution_counts: dict[str, int] = {}
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._in_flight: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_cleanup: float | None = None

    # ----------------------------------------------------------
    #  锁
    # ----------------------------------------------------------
    def lock(self, condition_id: str) -> asyncio.Lock:
        lk = self._locks.get(condition_id)
        if lk is None:
            lk = asyncio.Lock()
            self._locks[condition_id] = lk
        return lk

    # ----------------------------------------------------------
    #  过期清理
    # ----------------------------------------------------------
    def maybe_sweep(self, now: float) -> int:
        """节流清理: 距上次清理不足 cleanup_interval 时跳过, 返回删除的记录数"""
        if self._last_cleanup is None:
            self._last_cleanup = now
            return 0
        if now - self._last_cleanup < self.cleanup_interval:
            return 0
        self._last_cleanup = now
        return self.sweep(now)

    def sweep(self, now: float) -> int:
        cutoff = now - self.retention
        stale = [cid for cid, rec in self.exposures.items() if rec.first_seen_at < cutoff]
        for cid in stale:
            del self.exposures[cid]

        dropped = 0
        while self._seen:
            tx, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            self._seen.popitem(last=False)
            dropped += 1

        # 没有记录且没有被占用的锁可以丢弃
        for cid in [c for c, lk in self._locks.items() if c not in self.exposures and not lk.locked()]:
            del self._locks[cid]

        if stale or dropped:
            logger.info(
                f"[STRATEGY] Cleanup: removed {len(stale)} stale exposure records, "
                f"{dropped} dedup entries"
            )
        return len(stale)

    # ----------------------------------------------------------
    #  去重
    # ----------------------------------------------------------
    def is_seen(self, tx_hash: str) -> bool:
        return tx_hash in self._seen

    def mark_seen(self, tx_hash: str, now: float) -> bool:
        """首次出现返回 True 并记录; 重复返回 False"""
        if tx_hash in self._seen:
            return False
        self._seen[tx_hash] = now
        while len(self._seen) > self.max_dedup_entries:
            self._seen.popitem(last=False)
        return True

    @property
    def dedup_size(self) -> int:
        return len(self._seen)

    # ----------------------------------------------------------
    #  敞口累计
    # ----------------------------------------------------------
    def accumulate(self, condition_id: str, side: Side, usd: float, now: float) -> MarketExposureRecord:
        rec = self.exposures.get(condition_id)
        if rec is None:
            rec = MarketExposureRecord(first_seen_at=now)
            self.exposures[condition_id] = rec
        rec.add(side, usd)
        return rec

    def snapshot(self, condition_id: str) -> MarketExposureRecord | None:
        rec = self.exposures.get(condition_id)
        return replace(rec) if rec is not None else None

    def expire(self, condition_id: str) -> None:
        self.exposures.pop(condition_id, None)

    # ----------------------------------------------------------
    #  执行锁存
    # ----------------------------------------------------------
    def is_latched(self, condition_id: str) -> bool:
        return condition_id in self.executed_markets

    def is_in_flight(self, condition_id: str) -> bool:
        return condition_id in self._in_flight

    def execution_count(self, condition_id: str) -> int:
        return self.execution_counts.get(condition_id, 0)

    def claim(self, condition_id: str) -> None:
        self._in_flight.add(condition_id)

    def release(self, condition_id: str) -> None:
        self._in_flight.discard(condition_id)

    def record_execution(self, condition_id: str, reset_exposure: bool = False) -> None:
        self.executed_markets.add(condition_id)
        self.execution_counts[condition_id] = self.execution_count(condition_id) + 1
        if reset_exposure:
            self.exposures.pop(condition_id, None)
