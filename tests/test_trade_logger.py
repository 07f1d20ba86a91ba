"""
Tests for TradeLogger (SQLite + JSONL journal) and the trade log filter.
"""

from __future__ import annotations

import json
import sqlite3

import pytest

from conftest import CID, TRADER, make_market, make_strategy, make_trade
from polycopy.core.errors import RejectReason
from polycopy.strategy.models import Decision, RatioOfCapital
from polycopy.trading.executor import ExecutionResult, ExecutionStatus
from polycopy.utils.logger import is_trade_record
from polycopy.utils.trade_logger import TradeLogger


@pytest.fixture
def journal(tmp_path):
    tl = TradeLogger(data_dir=tmp_path, run_mode="paper", config={"mode": "paper"})
    yield tl
    tl.close()


class TestTradeLogger:

    def test_decisions_and_executions_persisted(self, journal):
        cfg = make_strategy()
        trade = make_trade("0xabc")
        journal.log_decision(
            trade, cfg, Decision.reject("Alloc 5.00% < Min 12%", RejectReason.ALLOCATION_TOO_LOW, allocation_pct=0.05),
        )
        journal.log_decision(
            trade, cfg,
            Decision(should_execute=True, reason="Matched: Alloc 0.15", size=RatioOfCapital(0.015),
                     market_data=make_market(), allocation_pct=0.15),
        )
        journal.log_execution(trade, cfg, ExecutionResult(
            status=ExecutionStatus.FILLED, condition_id=CID, size_usd=15.0, shares=30.0, price=0.5, paper=True,
        ))

        summary = journal.finalize({"exposure": {"session_total_usd": 15.0}})

        assert summary["total_signals"] == 2
        assert summary["total_go"] == 1
        assert summary["total_fills"] == 1
        assert summary["total_volume"] == 15.0
        assert summary["exposure"]["session_total_usd"] == 15.0

        conn = sqlite3.connect(journal.db_path)
        rows = conn.execute(
            "SELECT rejection, size_usd FROM decision_logs WHERE run_id=? ORDER BY id", (journal.run_id,),
        ).fetchall()
        assert rows == [("allocation_too_low", 0.0), (None, -0.015)]
        status = conn.execute("SELECT status FROM runs WHERE run_id=?", (journal.run_id,)).fetchone()[0]
        assert status == "completed"
        conn.close()

    def test_jsonl_events(self, journal):
        journal.log_decision(
            make_trade("0x1"), make_strategy(), Decision.reject("Duplicate trade", RejectReason.DUPLICATE),
        )
        journal.close()

        events = [json.loads(line) for line in journal.jsonl_path.read_text(encoding="utf-8").splitlines()]
        assert [e["event"] for e in events] == ["run_start", "decision"]
        assert events[1]["trader"] == TRADER
        assert events[1]["rejection"] == "duplicate"

    def test_close_is_idempotent(self, journal):
        journal.close()
        journal.close()


class TestTradeFilter:

    def test_only_tagged_records(self):
        assert is_trade_record({"extra": {"tags": ["trade"]}})
        assert not is_trade_record({"extra": {}})

    def test_trade_sink_receives_tagged_records(self, tmp_path):
        from loguru import logger

        from polycopy.utils.logger import setup_logger

        log_dir = setup_logger(tmp_path / "logs", level="warning")
        try:
            logger.info("plain message")
            logger.bind(tags=["trade"]).info("PAPER FILL | BUY 40.00 Yes @ 0.5")
        finally:
            logger.remove()

        trade_files = list(log_dir.glob("trades_*.log"))
        assert len(trade_files) == 1
        content = trade_files[0].read_text(encoding="utf-8")
        assert "PAPER FILL" in content
        assert "plain message" not in content
