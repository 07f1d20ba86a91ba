"""
Trade Poller - 目标交易员成交轮询

每个目标交易员一个后台任务, 定时请求 data-api /trades:
- 首次轮询只记录已有成交 (不复制历史), 并打印最近 5 笔
- 之后的新成交按时间从旧到新依次交给 handler (同一交易员串行处理)
- 已见 ID 集合有容量上限, 超出时淘汰最旧的
- 上游连续失败时指数退避 (带 ±20% 抖动), 成功后恢复正常间隔
- stop() 通过 asyncio.Event 通知所有任务退出
"""

from __future__ import annotations

import asyncio
import random
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

import aiohttp
from loguru import logger

from polycopy.core.config import PollingConfig, StrategyConfig
from polycopy.core.errors import UpstreamUnavailable
from polycopy.market.http import JsonHttpClient
from polycopy.strategy.models import Side, TradeEvent
from polycopy.utils.time_utils import ts_to_str

TradeHandler = Callable[[TradeEvent, StrategyConfig], Awaitable[None]]

DEFAULT_DATA_API = "https://data-api.polymarket.com"
JITTER = 0.2


def trade_key(raw: dict) -> str:
    """成交唯一 ID: transactionHash → id → match_id → asset-timestamp"""
    return str(
        raw.get("transactionHash")
        or raw.get("id")
        or raw.get("match_id")
        or f"{raw.get('asset', '')}-{raw.get('timestamp', '')}"
    )


def parse_trade(raw: dict, user: str) -> TradeEvent | None:
    """data-api 成交记录 → TradeEvent; 字段非法返回 None"""
    try:
        side = Side.parse(raw.get("side", ""))
        return TradeEvent(
            user=user,
            asset=str(raw.get("asset") or ""),
            side=side,
            size=float(raw.get("size") or 0),
            price=float(raw.get("price") or 0),
            transaction_hash=str(raw.get("transactionHash") or ""),
            condition_id=str(raw.get("conditionId") or ""),
            outcome=str(raw.get("outcome") or ""),
            title=str(raw.get("title") or ""),
            timestamp=float(raw.get("timestamp") or 0),
        )
    except (TypeError, ValueError) as e:
        logger.warning(f"[POLLER] Unparsable trade {trade_key(raw)}: {e}")
        return None


def trade_ts(raw: dict) -> float:
    """成交时间戳; 缺失或非法时返回 0"""
    try:
        return float(raw.get("timestamp") or 0)
    except (TypeError, ValueError):
        return 0.0


def next_delay(interval: float, failures: int, max_backoff: float, rng: random.Random | None = None) -> float:
    """下一次轮询的等待时间"""
    if failures <= 0:
        return interval
    base = min(max_backoff, interval * (2 ** failures))
    r = (rng or random).uniform(1 - JITTER, 1 + JITTER)
    return min(max_backoff, base * r)


@dataclass
class _TargetState:
    strategy: StrategyConfig
    seen: OrderedDict = field(default_factory=OrderedDict)
    first_run: bool = True
    failures: int = 0


class TradePoller:
    def __init__(
        self,
        strategies: Sequence[StrategyConfig],
        handler: TradeHandler,
        polling: PollingConfig | None = None,
        base_url: str = DEFAULT_DATA_API,
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.polling = polling or PollingConfig()
        self.handler = handler
        self._http = JsonHttpClient(base_url, timeout=timeout, session=session)
        self._targets = [_TargetState(strategy=s) for s in strategies]
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> list[asyncio.Task]:
        if not self._targets:
            logger.warning("[POLLER] No strategies configured. Poller will not start.")
            return []
        self._stop.clear()
        logger.info(f"[POLLER] Starting activity polling for {len(self._targets)} targets...")
        self._tasks = [
            asyncio.create_task(self._run(t), name=f"poller-{t.strategy.trader_address[:10]}")
            for t in self._targets
        ]
        return self._tasks

    async def stop(self) -> None:
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self._http.close()
        logger.info("[POLLER] Stopped")

    # ----------------------------------------------------------
    #  轮询循环
    # ----------------------------------------------------------
    async def _run(self, target: _TargetState) -> None:
        while not self._stop.is_set():
            try:
                await self.poll_once(target)
            except Exception as e:
                # 任何意外都不能让该交易员的轮询任务退出
                target.failures += 1
                logger.exception(
                    f"[POLLER] Unexpected error polling {target.strategy.trader_address} (x{target.failures}): {e}"
                )
            delay = next_delay(self.polling.interval, target.failures, self.polling.max_backoff)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self, target: _TargetState) -> int:
        """轮询一次, 返回交给 handler 的新成交数"""
        address = target.strategy.trader_address
        try:
            trades = await self._http.get_json(
                "trades", params={"user": address, "limit": self.polling.limit},
            )
        except UpstreamUnavailable as e:
            target.failures += 1
            logger.error(f"[POLLER] Failed to fetch activity for {address} (x{target.failures}): {e}")
            return 0

        if target.failures:
            logger.info(f"[POLLER] Activity feed for {address[:10]}... recovered")
        target.failures = 0

        if not isinstance(trades, list):
            logger.warning(f"[POLLER] Unexpected trades payload for {address[:10]}...: {type(trades)}")
            return 0

        rows = [raw for raw in trades if isinstance(raw, dict)]
        if len(rows) != len(trades):
            logger.warning(f"[POLLER] Skipped {len(trades) - len(rows)} malformed rows for {address[:10]}...")
        trades = rows

        if target.first_run:
            self._seed(target, trades)
            return 0

        # data-api 最新在前, 按时间从旧到新处理
        fresh = [raw for raw in trades if trade_key(raw) not in target.seen]
        fresh.sort(key=trade_ts)

        dispatched = 0
        for raw in fresh:
            self._remember(target, trade_key(raw))
            trade = parse_trade(raw, address)
            if trade is None:
                continue
            logger.info(
                f"[POLLER] New trade detected! {target.strategy.label} {trade.side.value} "
                f"{trade.size:.2f} {trade.outcome} @ {trade.price:.3f} on \"{trade.title}\""
            )
            try:
                await self.handler(trade, target.strategy)
            except Exception as e:
                logger.exception(f"[POLLER] Handler error for {trade_key(raw)}: {e}")
            dispatched += 1
        return dispatched

    def _seed(self, target: _TargetState, trades: list[dict]) -> None:
        for raw in trades:
            self._remember(target, trade_key(raw))
        target.first_run = False

        if trades:
            lines = [f"[POLLER] Target {target.strategy.label}: last {min(5, len(trades))} trades:"]
            for i, raw in enumerate(trades[:5], 1):
                ts = trade_ts(raw)
                when = ts_to_str(ts, "%H:%M:%S") if ts else "N/A"
                try:
                    price = float(raw.get("price") or 0)
                    size = float(raw.get("size") or 0)
                except (TypeError, ValueError):
                    price, size = 0.0, 0.0
                lines.append(
                    f"  {i}. [{raw.get('side', 'UNK')}] {size:.2f} {raw.get('outcome', 'N/A')} "
                    f"@ ${price:.3f} ({when}) {raw.get('title', 'Unknown Market')}"
                )
            logger.info("\n".join(lines))
        logger.info(f"[POLLER] Initial scan complete for {target.strategy.label}. Monitoring for new trades...")

    def _remember(self, target: _TargetState, key: str) -> None:
        target.seen[key] = True
        while len(target.seen) > self.polling.max_seen_ids:
            target.seen.popitem(last=False)
