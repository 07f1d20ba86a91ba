"""
Strategy Models - 跟单数据模型

TradeEvent   目标交易员的一笔成交 (不可变)
MarketData   Gamma 市场元数据
Decision     策略引擎对一条信号的判定结果
RatioOfCapital / AbsoluteUsd  仓位大小指令
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from polycopy.core.errors import RejectReason


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, raw: str) -> "Side":
        return cls(str(raw).strip().upper())


@dataclass(frozen=True)
class TradeEvent:
    """目标交易员的成交事件"""
    user: str
    asset: str                  # outcome token id
    side: Side
    size: float                 # 份数
    price: float                # 0-1
    transaction_hash: str       # 去重 key
    condition_id: str           # 市场 key
    outcome: str = ""
    title: str = ""
    timestamp: float = 0.0

    @property
    def notional(self) -> float:
        """成交金额 (USD)"""
        return self.size * self.price


@dataclass(frozen=True)
class MarketToken:
    token_id: str
    outcome: str
    price: float = 0.0


@dataclass(frozen=True)
class MarketData:
    """市场元数据 (Gamma API)"""
    condition_id: str
    question: str = ""
    slug: str = ""
    end_date: str = ""          # ISO-8601
    tokens: tuple[MarketToken, ...] = ()
    neg_risk: bool = False

    def token_index(self, token_id: str) -> int | None:
        for i, tok in enumerate(self.tokens):
            if tok.token_id == token_id:
                return i
        return None

    def token_at(self, index: int) -> MarketToken | None:
        if 0 <= index < len(self.tokens):
            return self.tokens[index]
        return None


# ----------------------------------------------------------
#  仓位指令
# ----------------------------------------------------------

@dataclass(frozen=True)
class RatioOfCapital:
    """按可用资金比例下单"""
    fraction: float

    def resolve(self, capital: float) -> float:
        return self.fraction * capital

    @property
    def signed_value(self) -> float:
        # 兼容旧约定: 负数 = 资金比例
        return -self.fraction

    def __str__(self) -> str:
        return f"{self.fraction:.2%} of capital"


@dataclass(frozen=True)
class AbsoluteUsd:
    """固定美元金额"""
    amount: float

    def resolve(self, capital: float) -> float:
        return self.amount

    @property
    def signed_value(self) -> float:
        return self.amount

    def __str__(self) -> str:
        return f"${self.amount:.2f}"


SizeInstruction = Union[RatioOfCapital, AbsoluteUsd]


@dataclass
class Decision:
    """策略判定结果"""
    should_execute: bool
    reason: str
    size: SizeInstruction | None = None
    market_data: MarketData | None = None
    rejection: RejectReason | None = None
    # 诊断信息
    allocation_pct: float = 0.0
    dominance: float = 0.0
    net_exposure_usd: float = 0.0
    extra: dict = field(default_factory=dict)

    @property
    def size_usd(self) -> float:
        """旧约定下的带符号仓位值 (负 = 资金比例, 正 = 美元); 拒绝时为 0"""
        return self.size.signed_value if self.size is not None else 0.0

    @classmethod
    def reject(
        cls,
        reason: str,
        code: RejectReason,
        market_data: MarketData | None = None,
        **diagnostics,
    ) -> "Decision":
        return cls(
            should_execute=False,
            reason=reason,
            rejection=code,
            market_data=market_data,
            **diagnostics,
        )

    def to_dict(self) -> dict:
        return {
            "should_execute": self.should_execute,
            "reason": self.reason,
            "rejection": self.rejection.value if self.rejection else None,
            "size": str(self.size) if self.size is not None else None,
            "size_usd": self.size_usd,
            "condition_id": self.market_data.condition_id if self.market_data else None,
            "allocation_pct": round(self.allocation_pct, 6),
            "dominance": round(self.dominance, 6),
            "net_exposure_usd": round(self.net_exposure_usd, 4),
        }
