"""
Sizing - 仓位分档

目标交易员的仓位占比 (allocation) 落在哪个半开区间 [min, max),
就使用该档位的跟单比例。档位之间不允许重叠, 区间之间允许有空隙
(落在空隙中的占比不跟单)。
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Sequence

from polycopy.strategy.models import AbsoluteUsd, RatioOfCapital, SizeInstruction

if TYPE_CHECKING:
    from polycopy.core.config import SizingConfig, SizingRule


def validate_rules(rules: Sequence["SizingRule"]) -> list[str]:
    """检查档位合法性, 返回错误列表 (空列表 = 合法)"""
    errors: list[str] = []
    for i, rule in enumerate(rules):
        if rule.min_trader_alloc < 0:
            errors.append(f"rule #{i}: min_trader_alloc must be >= 0")
        if not rule.min_trader_alloc < rule.max_trader_alloc:
            errors.append(
                f"rule #{i}: min_trader_alloc {rule.min_trader_alloc} "
                f"must be < max_trader_alloc {rule.max_trader_alloc}"
            )
        if rule.copy_size_ratio is None and rule.copy_wallet_ratio is None and rule.copy_fixed_usd is None:
            errors.append(f"rule #{i}: no copy_size_ratio / copy_wallet_ratio / copy_fixed_usd")
        for name in ("copy_size_ratio", "copy_wallet_ratio"):
            value = getattr(rule, name)
            if value is not None and not 0 < value <= 1:
                errors.append(f"rule #{i}: {name}={value} must be in (0, 1]")
        if rule.copy_fixed_usd is not None and rule.copy_fixed_usd <= 0:
            errors.append(f"rule #{i}: copy_fixed_usd must be > 0")

    # 半开区间 [a, b) 与 [c, d) 重叠 ⇔ a < d and c < b
    ordered = sorted(rules, key=lambda r: r.min_trader_alloc)
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.min_trader_alloc < prev.max_trader_alloc:
            errors.append(
                f"overlapping tiers: [{prev.min_trader_alloc}, {prev.max_trader_alloc}) "
                f"and [{cur.min_trader_alloc}, {cur.max_trader_alloc})"
            )
    return errors


def find_rule(rules: Sequence["SizingRule"], allocation: float) -> "SizingRule | None":
    """返回包含 allocation 的唯一档位"""
    if math.isnan(allocation):
        return None
    for rule in rules:
        if rule.min_trader_alloc <= allocation < rule.max_trader_alloc:
            return rule
    return None


def size_for_allocation(sizing: "SizingConfig", allocation: float) -> SizeInstruction | None:
    """
    计算仓位指令

    FIXED_TIERS 优先使用 copy_size_ratio, WALLET_SCALED 优先使用
    copy_wallet_ratio; 都没有时使用 copy_fixed_usd。
    """
    rule = find_rule(sizing.rules, allocation)
    if rule is None:
        return None

    from polycopy.core.config import SizingMode

    if sizing.mode == SizingMode.WALLET_SCALED:
        ratio = rule.copy_wallet_ratio if rule.copy_wallet_ratio is not None else rule.copy_size_ratio
    else:
        ratio = rule.copy_size_ratio if rule.copy_size_ratio is not None else rule.copy_wallet_ratio

    if ratio is not None and ratio > 0:
        return RatioOfCapital(ratio)
    if rule.copy_fixed_usd is not None and rule.copy_fixed_usd > 0:
        return AbsoluteUsd(rule.copy_fixed_usd)
    return None


def describe_rules(rules: Sequence["SizingRule"]) -> list[str]:
    """档位的可读描述 (日志 / 校验脚本)"""
    lines = []
    for rule in rules:
        upper = "inf" if math.isinf(rule.max_trader_alloc) else f"{rule.max_trader_alloc:.0%}"
        parts = []
        if rule.copy_size_ratio is not None:
            parts.append(f"size_ratio={rule.copy_size_ratio:.2%}")
        if rule.copy_wallet_ratio is not None:
            parts.append(f"wallet_ratio={rule.copy_wallet_ratio:.2%}")
        if rule.copy_fixed_usd is not None:
            parts.append(f"fixed=${rule.copy_fixed_usd:.2f}")
        lines.append(f"[{rule.min_trader_alloc:.0%}, {upper}) -> {', '.join(parts)}")
    return lines
