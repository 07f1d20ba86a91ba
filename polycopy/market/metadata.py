"""
Market Metadata - Gamma API 市场元数据

按 conditionId 查询市场 (问题 / 结束时间 / outcome token)。
查不到或请求失败时返回 None, 不抛异常。
"""

from __future__ import annotations

import json
from typing import Any

import aiohttp
from loguru import logger

from polycopy.core.errors import UpstreamUnavailable
from polycopy.market.http import JsonHttpClient
from polycopy.strategy.models import MarketData, MarketToken

DEFAULT_GAMMA_API = "https://gamma-api.polymarket.com"


def _json_list(value: Any) -> list:
    # Gamma 的 outcomes / outcomePrices / clobTokenIds 是 JSON 字符串
    if value is None:
        return []
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return list(value)


def parse_gamma_market(raw: dict) -> MarketData | None:
    """解析 Gamma API 返回的市场数据"""
    condition_id = raw.get("conditionId") or raw.get("condition_id") or ""
    if not condition_id:
        return None

    tokens: list[MarketToken] = []
    if isinstance(raw.get("tokens"), list) and raw["tokens"]:
        # CLOB 风格: [{token_id, outcome, price}]
        for t in raw["tokens"]:
            tokens.append(MarketToken(
                token_id=str(t.get("token_id", "")),
                outcome=str(t.get("outcome", "")),
                price=float(t.get("price") or 0),
            ))
    else:
        outcomes = _json_list(raw.get("outcomes"))
        token_ids = _json_list(raw.get("clobTokenIds"))
        prices = _json_list(raw.get("outcomePrices"))
        for i, token_id in enumerate(token_ids):
            tokens.append(MarketToken(
                token_id=str(token_id),
                outcome=str(outcomes[i]) if i < len(outcomes) else "",
                price=float(prices[i]) if i < len(prices) else 0.0,
            ))

    return MarketData(
        condition_id=condition_id,
        question=raw.get("question", "") or "",
        slug=raw.get("slug", "") or "",
        end_date=raw.get("endDate") or raw.get("end_date_iso") or "",
        tokens=tuple(tokens),
        neg_risk=bool(raw.get("negRisk", raw.get("neg_risk", False))),
    )


class MarketMetadataClient:
    """
    Gamma 市场元数据查询 (带进程内缓存)

    市场元数据在跟单窗口内基本不变, 命中缓存后不再请求。
    """

    def __init__(
        self,
        base_url: str = DEFAULT_GAMMA_API,
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
        cache_size: int = 512,
    ) -> None:
        self._http = JsonHttpClient(base_url, timeout=timeout, session=session)
        self._cache: dict[str, MarketData] = {}
        self._cache_size = cache_size

    async def get_market(self, condition_id: str) -> MarketData | None:
        cached = self._cache.get(condition_id)
        if cached is not None:
            return cached

        try:
            data = await self._http.get_json("markets", params={"condition_ids": condition_id})
        except UpstreamUnavailable as e:
            logger.warning(f"Gamma lookup failed for {condition_id[:12]}...: {e}")
            return None

        rows = data if isinstance(data, list) else (data or {}).get("data", [])
        market = None
        for row in rows:
            try:
                parsed = parse_gamma_market(row)
            except (TypeError, ValueError) as e:
                logger.debug(f"解析市场失败: {e}")
                continue
            if parsed and parsed.condition_id.lower() == condition_id.lower():
                market = parsed
                break

        if market is None:
            logger.debug(f"Market not found on Gamma: {condition_id[:12]}...")
            return None

        if len(self._cache) >= self._cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[condition_id] = market
        return market

    async def close(self) -> None:
        await self._http.close()
