"""
Trade Logger - 跟单日志记录器

为每次运行记录所有判定与执行结果, 用于后续复盘和调参。

记录内容:
    - 运行会话: run_id, 模式, 启动 / 结束时间, 配置摘要
    - 判定日志: 每条信号的结果, 拒绝原因, 占比 / 主导度 / 净敞口
    - 订单日志: 执行状态, 份数, 价格, tick, orderID
    - 运行摘要

存储:
    - SQLite (结构化, 可用 SQL 查询)
    - JSONL 文件 (完整上下文)
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from polycopy.core.config import StrategyConfig
    from polycopy.strategy.models import Decision, TradeEvent
    from polycopy.trading.executor import ExecutionResult


class TradeLogger:
    """
    跟单日志记录器

    每次运行创建一个实例, 数据同时写入 SQLite 和 JSONL。
    """

    def __init__(
        self,
        data_dir: str | Path = "data",
        run_mode: str = "paper",
        config: dict | None = None,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.run_id = f"{run_mode}_{time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"
        self.run_mode = run_mode
        self.start_time = time.time()
        self._config = config or {}

        # ── JSONL ──
        self._log_dir = self.data_dir / "trade_logs"
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._jsonl_path = self._log_dir / f"{self.run_id}.jsonl"
        self._jsonl_file = open(self._jsonl_path, "a", encoding="utf-8")

        # ── SQLite ──
        self._db_path = self.data_dir / "trade_logs.db"
        self._conn: sqlite3.Connection | None = None
        self._init_db()

        # ── 运行期统计 ──
        self._signal_count = 0
        self._go_count = 0
        self._order_count = 0
        self._fill_count = 0
        self._reject_count = 0
        self._total_volume = 0.0
        self._closed = False

        self._log_run_start()
        logger.info(
            f"TradeLogger 已启动 | run_id={self.run_id} | "
            f"JSONL={self._jsonl_path.name} | DB={self._db_path.name}"
        )

    # ================================================================
    #  SQLite 初始化
    # ================================================================

    def _init_db(self) -> None:
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                mode TEXT NOT NULL,
                start_time REAL NOT NULL,
                end_time REAL,
                total_signals INTEGER DEFAULT 0,
                total_go INTEGER DEFAULT 0,
                total_orders INTEGER DEFAULT 0,
                total_fills INTEGER DEFAULT 0,
                total_rejects INTEGER DEFAULT 0,
                total_volume REAL DEFAULT 0,
                config TEXT,
                status TEXT DEFAULT 'running'
            );

            -- 策略判定
            CREATE TABLE IF NOT EXISTS decision_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                trader TEXT,
                tx_hash TEXT,
                condition_id TEXT,
                asset TEXT,
                side TEXT,
                size REAL,
                price REAL,
                should_execute INTEGER,
                reason TEXT,
                rejection TEXT,
                size_usd REAL,              -- 负 = 资金比例, 正 = 美元
                allocation_pct REAL,
                dominance REAL,
                net_exposure_usd REAL,
                FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );

            -- 执行结果
            CREATE TABLE IF NOT EXISTS order_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                trader TEXT,
                tx_hash TEXT,
                condition_id TEXT,
                token_id TEXT,
                side TEXT,
                status TEXT,                -- filled / submitted / rejected / failed / skipped
                reason TEXT,
                size_usd REAL,
                shares REAL,
                price REAL,
                tick_size TEXT,
                neg_risk INTEGER,
                order_id TEXT,
                paper INTEGER,
                FOREIGN KEY (run_id) REFERENCES runs(run_id)
            );

            CREATE INDEX IF NOT EXISTS idx_dl_run ON decision_logs(run_id);
            CREATE INDEX IF NOT EXISTS idx_dl_cid ON decision_logs(condition_id);
            CREATE INDEX IF NOT EXISTS idx_ol_run ON order_logs(run_id);
            CREATE INDEX IF NOT EXISTS idx_ol_status ON order_logs(status);
        """)
        self._conn.commit()

    # ================================================================
    #  运行生命周期
    # ================================================================

    def _log_run_start(self) -> None:
        self._conn.execute(
            "INSERT INTO runs (run_id, mode, start_time, config, status) VALUES (?, ?, ?, ?, ?)",
            (
                self.run_id,
                self.run_mode,
                self.start_time,
                json.dumps(self._config, default=str, ensure_ascii=False),
                "running",
            ),
        )
        self._conn.commit()
        self._write_jsonl({
            "event": "run_start",
            "run_id": self.run_id,
            "mode": self.run_mode,
            "start_time": self.start_time,
        })

    def finalize(self, extra_stats: dict | None = None) -> dict[str, Any]:
        """运行结束时调用, 写入摘要"""
        end_time = time.time()
        self._conn.execute(
            "UPDATE runs SET end_time=?, total_signals=?, total_go=?, total_orders=?, "
            "total_fills=?, total_rejects=?, total_volume=?, status=? WHERE run_id=?",
            (
                end_time,
                self._signal_count,
                self._go_count,
                self._order_count,
                self._fill_count,
                self._reject_count,
                self._total_volume,
                "completed",
                self.run_id,
            ),
        )
        self._conn.commit()

        summary = {
            "event": "run_end",
            "run_id": self.run_id,
            "duration_s": round(end_time - self.start_time, 1),
            "total_signals": self._signal_count,
            "total_go": self._go_count,
            "total_orders": self._order_count,
            "total_fills": self._fill_count,
            "total_rejects": self._reject_count,
            "total_volume": round(self._total_volume, 4),
        }
        if extra_stats:
            summary.update(extra_stats)
        self._write_jsonl(summary)

        logger.info(
            f"TradeLogger 运行摘要 | run_id={self.run_id} | "
            f"时长={summary['duration_s']:.0f}s | 信号={self._signal_count} 通过={self._go_count} | "
            f"订单={self._order_count} 成交={self._fill_count} 拒绝={self._reject_count} | "
            f"成交额=${self._total_volume:.2f}"
        )
        return summary

    # ================================================================
    #  记录
    # ================================================================

    def log_decision(self, trade: "TradeEvent", config: "StrategyConfig", decision: "Decision") -> None:
        self._signal_count += 1
        if decision.should_execute:
            self._go_count += 1
        now = time.time()
        cid = decision.market_data.condition_id if decision.market_data else trade.condition_id
        self._conn.execute(
            "INSERT INTO decision_logs (run_id, timestamp, trader, tx_hash, condition_id, asset, side, "
            "size, price, should_execute, reason, rejection, size_usd, allocation_pct, dominance, "
            "net_exposure_usd) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                self.run_id, now, config.trader_address, trade.transaction_hash, cid, trade.asset,
                trade.side.value, trade.size, trade.price, int(decision.should_execute), decision.reason,
                decision.rejection.value if decision.rejection else None, decision.size_usd,
                decision.allocation_pct, decision.dominance, decision.net_exposure_usd,
            ),
        )
        self._conn.commit()
        self._write_jsonl({
            "event": "decision",
            "timestamp": now,
            "trader": config.trader_address,
            "tx_hash": trade.transaction_hash,
            "trade": {
                "asset": trade.asset,
                "side": trade.side.value,
                "size": trade.size,
                "price": trade.price,
                "title": trade.title,
                "outcome": trade.outcome,
            },
            **decision.to_dict(),
        })

    def log_execution(
        self,
        trade: "TradeEvent",
        config: "StrategyConfig",
        result: "ExecutionResult",
    ) -> None:
        from polycopy.trading.executor import ExecutionStatus

        self._order_count += 1
        if result.success:
            self._fill_count += 1
            self._total_volume += result.size_usd
        elif result.status == ExecutionStatus.REJECTED:
            self._reject_count += 1

        self._conn.execute(
            "INSERT INTO order_logs (run_id, timestamp, trader, tx_hash, condition_id, token_id, side, "
            "status, reason, size_usd, shares, price, tick_size, neg_risk, order_id, paper) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                self.run_id, result.timestamp, config.trader_address, trade.transaction_hash,
                result.condition_id, result.token_id, result.side, result.status.value, result.reason,
                result.size_usd, result.shares, result.price, result.tick_size, int(result.neg_risk),
                result.order_id, int(result.paper),
            ),
        )
        self._conn.commit()
        self._write_jsonl({
            "event": "execution",
            "trader": config.trader_address,
            "tx_hash": trade.transaction_hash,
            **result.to_dict(),
        })

    # ================================================================
    #  工具
    # ================================================================

    def _write_jsonl(self, record: dict) -> None:
        """追加一条 JSONL 记录"""
        try:
            line = json.dumps(record, default=str, ensure_ascii=False)
            self._jsonl_file.write(line + "\n")
            self._jsonl_file.flush()
        except (OSError, ValueError) as e:
            logger.error(f"TradeLogger JSONL 写入失败: {e}")

    @property
    def jsonl_path(self) -> Path:
        return self._jsonl_path

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """关闭文件和数据库连接"""
        if self._closed:
            return
        self._closed = True
        if self._jsonl_file and not self._jsonl_file.closed:
            self._jsonl_file.close()
        if self._conn:
            self._conn.close()
            self._conn = None
        logger.debug(f"TradeLogger 已关闭 | run_id={self.run_id}")
