"""
Errors - 异常体系

配置错误在启动时致命; 单条信号的拒绝 (SignalRejected 及其子类) 由策略引擎
转换为 Decision(should_execute=False), 不会向外传播。
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class RejectReason(str, Enum):
    """信号被拒绝的原因码"""
    MARKET_NOT_FOUND = "market_not_found"
    MISSING_TX_HASH = "missing_tx_hash"
    DUPLICATE = "duplicate"
    WINDOW_EXPIRED = "window_expired"
    TOO_CLOSE_TO_RESOLUTION = "too_close_to_resolution"
    PRICE_BELOW_FLOOR = "price_below_floor"
    EXPOSURE_TOO_SMALL = "exposure_too_small"
    ALLOCATION_TOO_LOW = "allocation_too_low"
    DOMINANCE_TOO_LOW = "dominance_too_low"
    ALREADY_EXECUTED = "already_executed"
    MAX_EXECUTIONS = "max_executions"
    NO_SIZING_TIER = "no_sizing_tier"
    RISK_LIMIT = "risk_limit"


class PolycopyError(Exception):
    """所有项目异常的基类"""


class ConfigurationError(PolycopyError):
    """配置缺失或非法 (启动即失败)"""


class UpstreamUnavailable(PolycopyError):
    """外部数据源 (Gamma / data-api / RPC) 不可用"""


class CredentialError(PolycopyError):
    """无法派生或创建 CLOB API 凭证, 交易功能被禁用"""


class OrderRejected(PolycopyError):
    """Broker 拒绝订单 (不重试, 预留敞口释放)"""

    def __init__(self, message: str, order_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.order_id = order_id


class SignalRejected(PolycopyError):
    """单条信号被某个闸门拒绝"""

    def __init__(
        self,
        reason: RejectReason,
        message: str = "",
        market_data: Any = None,
        **diagnostics: float,
    ) -> None:
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message or reason.value
        self.market_data = market_data
        # allocation_pct / dominance / net_exposure_usd, 原样写入 Decision
        self.diagnostics = diagnostics


class MarketNotFound(SignalRejected):
    def __init__(self, condition_id: str) -> None:
        super().__init__(RejectReason.MARKET_NOT_FOUND, "Market Data Not Found")
        self.condition_id = condition_id


class DuplicateSignal(SignalRejected):
    def __init__(self, tx_hash: str, market_data: Any = None) -> None:
        super().__init__(RejectReason.DUPLICATE, "Duplicate trade", market_data)
        self.tx_hash = tx_hash


class ThresholdNotMet(SignalRejected):
    """数值闸门未通过 (窗口 / 价格 / 敞口 / 占比 / 主导度 / 锁存)"""


class RiskLimitExceeded(ThresholdNotMet):
    """执行器风控上限"""

    def __init__(self, message: str) -> None:
        super().__init__(RejectReason.RISK_LIMIT, message)
