"""
HTTP Client - Polymarket 公共 REST API 的轻量封装

所有请求共享一个 aiohttp.ClientSession, 带总超时。
失败统一抛出 UpstreamUnavailable, 由调用方决定降级值。
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
from loguru import logger

from polycopy.core.errors import UpstreamUnavailable


class JsonHttpClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        session = self._get_session()
        try:
            async with session.get(
                url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise UpstreamUnavailable(f"GET {url} → HTTP {resp.status}: {body[:200]}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamUnavailable(f"GET {url} failed: {e!r}") from e

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug(f"HTTP session closed ({self.base_url})")
        self._session = None
