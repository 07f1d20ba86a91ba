"""
Time Utils - 时间工具
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def ts_to_str(ts: float, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """时间戳转字符串 (UTC)"""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(fmt)


def parse_iso(value: str) -> float | None:
    """
    ISO-8601 → unix 时间戳

    支持 "2025-01-31T12:00:00Z" / "+00:00" 后缀 / 纯日期 "2025-01-31";
    无时区时按 UTC 处理。无法解析返回 None。
    """
    if not value:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def minutes_until(iso_end: str, now: float | None = None) -> float | None:
    """距离 iso_end 的分钟数 (已过期为负数); 无法解析返回 None"""
    end_ts = parse_iso(iso_end)
    if end_ts is None:
        return None
    if now is None:
        now = time.time()
    return (end_ts - now) / 60.0
