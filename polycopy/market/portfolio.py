"""
Portfolio Value - 目标交易员持仓市值

data-api /positions 汇总 size × curPrice。
市值过小 (≤ $100) 或请求失败时返回保守的默认值, 不抛异常。
"""

from __future__ import annotations

import aiohttp
from loguru import logger

from polycopy.core.errors import UpstreamUnavailable
from polycopy.market.http import JsonHttpClient

DEFAULT_DATA_API = "https://data-api.polymarket.com"
FALLBACK_PORTFOLIO_VALUE = 1000.0
MIN_TRUSTED_VALUE = 100.0


class PortfolioValueClient:
    def __init__(
        self,
        base_url: str = DEFAULT_DATA_API,
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
        fallback: float = FALLBACK_PORTFOLIO_VALUE,
    ) -> None:
        self._http = JsonHttpClient(base_url, timeout=timeout, session=session)
        self.fallback = fallback

    async def get_portfolio_value(self, address: str) -> float:
        try:
            data = await self._http.get_json(
                "positions", params={"user": address, "size_gt": "0.000001"},
            )
        except UpstreamUnavailable as e:
            logger.warning(f"Portfolio lookup failed for {address[:10]}...: {e}")
            return self.fallback

        if not isinstance(data, list):
            return self.fallback

        total = 0.0
        for pos in data:
            try:
                total += float(pos.get("size") or 0) * float(pos.get("curPrice") or 0)
            except (TypeError, ValueError, AttributeError):
                continue

        return total if total > MIN_TRUSTED_VALUE else self.fallback

    async def close(self) -> None:
        await self._http.close()
