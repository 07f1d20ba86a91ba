"""
Context - 运行上下文

保存运行模式、模拟账户与可替换的时间源。策略引擎、执行器与跟单流水线
共享同一个 Context, 测试中通过 set_time_func 注入假时钟。
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable


class TradingMode(str, Enum):
    """交易模式"""
    PAPER = "paper"             # 模拟盘: 不提交订单, 以模拟余额成交
    AUTO = "auto"               # 全自动实盘


@dataclass
class AccountState:
    """模拟账户状态 (仅 paper 模式使用)"""
    balance: float = 0.0                # USDC 余额
    initial_balance: float = 0.0
    total_spent: float = 0.0            # 已模拟成交金额
    fills: int = 0


class Context:
    """
    运行上下文

    实盘和模拟盘共用同一套接口。
    """

    def __init__(
        self,
        trading_mode: TradingMode = TradingMode.PAPER,
        paper_balance: float = 1000.0,
    ) -> None:
        self.trading_mode = trading_mode
        self.account = AccountState(balance=paper_balance, initial_balance=paper_balance)

        # 时间管理 (测试时可覆盖)
        self._time_func: Callable[[], float] = time.time
        self.start_time = self.now()

    def now(self) -> float:
        """当前 unix 时间戳"""
        return self._time_func()

    def set_time_func(self, func: Callable[[], float]) -> None:
        self._time_func = func

    @property
    def is_paper(self) -> bool:
        return self.trading_mode == TradingMode.PAPER

    @property
    def is_live(self) -> bool:
        return self.trading_mode == TradingMode.AUTO

    def record_paper_fill(self, usd: float) -> None:
        """模拟成交: 从模拟余额中扣除"""
        self.account.balance -= usd
        self.account.total_spent += usd
        self.account.fills += 1

    def snapshot(self) -> dict[str, Any]:
        return {
            "trading_mode": self.trading_mode.value,
            "account": {
                "balance": self.account.balance,
                "initial_balance": self.account.initial_balance,
                "total_spent": self.account.total_spent,
                "fills": self.account.fills,
            },
            "timestamp": self.now(),
        }
