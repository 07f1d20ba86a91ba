"""
CLOB API Client - Polymarket CLOB 交易接口

封装 py-clob-client SDK, 提供:
- API Key 派生 / 创建 (Level 1 → Level 2 认证)
- 订单簿参数查询 (tick_size / neg_risk)
- 异步下单 (不重试)
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any

from loguru import logger

# Polymarket CLOB SDK
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    OrderArgs,
    OrderType as ClobOrderType,
    PartialCreateOrderOptions,
)

from polycopy.core.errors import CredentialError

# Polymarket 签名类型
SIG_EOA = 0           # 直接用 EOA 钱包交易
SIG_GNOSIS_SAFE = 2   # 代理钱包 (Gnosis Safe)
POLYGON_CHAIN_ID = 137

DEFAULT_CLOB_HOST = "https://clob.polymarket.com"
DEFAULT_TICK_SIZE = "0.01"
DEFAULT_NEG_RISK = False


@dataclass
class ClobOrderResult:
    """CLOB 下单结果"""
    success: bool
    order_id: str = ""
    error: str = ""
    raw: dict[str, Any] | None = None


@dataclass
class BookParams:
    """订单簿参数"""
    tick_size: str = DEFAULT_TICK_SIZE
    neg_risk: bool = DEFAULT_NEG_RISK
    from_book: bool = False     # False = 使用默认值


class ClobApiClient:
    """
    Polymarket CLOB 交易客户端

    使用流程:
        client = ClobApiClient(private_key=key, funder=proxy)
        await client.initialize()           # 失败抛 CredentialError
        params = await client.get_book_params(token_id)
        result = await client.place_order(token_id, price, size, side,
                                          tick_size=params.tick_size,
                                          neg_risk=params.neg_risk)
    """

    def __init__(
        self,
        private_key: str,
        host: str = "",
        chain_id: int = POLYGON_CHAIN_ID,
        funder: str = "",
        signature_type: int | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._private_key = private_key
        self._host = host or os.environ.get("CLOB_HOST", DEFAULT_CLOB_HOST)
        self._chain_id = chain_id
        self._funder = funder
        # 有 proxy 地址 → GNOSIS_SAFE(2), 否则 EOA(0)
        if signature_type is not None:
            self._sig_type = signature_type
        else:
            self._sig_type = SIG_GNOSIS_SAFE if self._funder else SIG_EOA
        self._timeout = timeout
        self._client: ClobClient | None = None
        self._creds: ApiCreds | None = None
        self._initialized = False

    @property
    def is_ready(self) -> bool:
        return self._initialized and self._client is not None

    @property
    def signature_type(self) -> int:
        return self._sig_type

    # ----------------------------------------------------------
    #  初始化
    # ----------------------------------------------------------
    async def initialize(self) -> bool:
        """
        初始化 CLOB 客户端

        1. Level-1 client (仅私钥, EOA 签名, 不带 funder)
        2. derive_api_key 复用已有 key, 失败则 create_api_key
        3. 用 creds + funder + 签名类型重建 Level-2 client

        两种方式都拿不到 creds 时抛 CredentialError。
        """
        self._patch_sdk_timeout()

        try:
            # Level 1 派生 key 必须用 EOA, 带 funder 会被服务端拒绝 (400)
            l1 = ClobClient(host=self._host, chain_id=self._chain_id, key=self._private_key)
        except Exception as e:
            raise CredentialError(f"invalid signer key: {e}") from e

        creds = None
        try:
            creds = await asyncio.wait_for(asyncio.to_thread(l1.derive_api_key), timeout=self._timeout)
            logger.info("CLOB API key derived successfully")
        except Exception as e:
            logger.debug(f"derive_api_key failed (expected for first use): {e}")

        if not creds:
            try:
                creds = await asyncio.wait_for(asyncio.to_thread(l1.create_api_key), timeout=self._timeout)
                logger.info("CLOB API key created successfully")
            except Exception as e:
                logger.error(f"create_api_key failed: {e}")

        if not creds:
            raise CredentialError("could not derive or create CLOB API credentials")

        self._creds = creds
        self._client = ClobClient(
            host=self._host,
            chain_id=self._chain_id,
            key=self._private_key,
            creds=creds,
            signature_type=self._sig_type,
            funder=self._funder or None,  # type: ignore[arg-type]
        )
        sig_label = {SIG_EOA: "EOA", SIG_GNOSIS_SAFE: "GNOSIS_SAFE"}.get(self._sig_type, str(self._sig_type))
        logger.info(
            f"CLOB client initialized (host={self._host}, signature_type={sig_label}"
            + (f", funder={self._funder[:10]}...)" if self._funder else ")")
        )
        self._initialized = True
        return True

    def _patch_sdk_timeout(self) -> None:
        # SDK 内部 httpx 默认超时太短, 直接替换模块级 _http_client
        try:
            import httpx
            import py_clob_client.http_helpers.helpers as sdk_helpers
            sdk_helpers._http_client = httpx.Client(timeout=self._timeout)
            logger.debug(f"SDK httpx timeout → {self._timeout:.0f}s")
        except (ImportError, AttributeError) as e:
            logger.warning(f"无法设置 SDK httpx timeout: {e}")

    # ----------------------------------------------------------
    #  订单簿参数
    # ----------------------------------------------------------
    async def get_book_params(self, token_id: str) -> BookParams:
        """查询 tick_size / neg_risk; 失败或超时使用默认值 (0.01 / False)"""
        if not self.is_ready:
            return BookParams()
        assert self._client is not None
        try:
            book = await asyncio.wait_for(
                asyncio.to_thread(self._client.get_order_book, token_id),
                timeout=self._timeout,
            )
        except Exception as e:
            logger.warning(f"[EXECUTOR] Failed to fetch book params for {token_id[:10]}..., using defaults: {e}")
            return BookParams()

        if isinstance(book, dict):
            tick = book.get("tick_size")
            neg = book.get("neg_risk")
        else:
            tick = getattr(book, "tick_size", None)
            neg = getattr(book, "neg_risk", None)
        return BookParams(
            tick_size=str(tick) if tick else DEFAULT_TICK_SIZE,
            neg_risk=bool(neg) if neg is not None else DEFAULT_NEG_RISK,
            from_book=True,
        )

    # ----------------------------------------------------------
    #  下单
    # ----------------------------------------------------------
    async def place_order(
        self,
        token_id: str,
        price: float,
        size: float,
        side: str,                # "BUY" 或 "SELL"
        order_type: str = "GTC",
        tick_size: str = DEFAULT_TICK_SIZE,
        neg_risk: bool = DEFAULT_NEG_RISK,
    ) -> ClobOrderResult:
        """
        提交限价单到 CLOB

        Args:
            token_id: outcome token ID
            price: 价格 (0-1), 已按 tick 对齐
            size: 份数 (不是 USDC 金额)
            side: "BUY" / "SELL"
            order_type: GTC / FOK / GTD

        不做重试: 宁可错过一笔跟单, 也不冒重复下单的风险。
        """
        if not self.is_ready:
            return ClobOrderResult(success=False, error="CLOB client not initialized")
        assert self._client is not None

        order_args = OrderArgs(token_id=token_id, price=price, size=size, side=side)
        options = PartialCreateOrderOptions(
            tick_size=tick_size,  # type: ignore[arg-type]
            neg_risk=neg_risk,
        )
        clob_ot = {
            "GTC": ClobOrderType.GTC,
            "FOK": ClobOrderType.FOK,
            "GTD": ClobOrderType.GTD,
        }.get(order_type.upper(), ClobOrderType.GTC)

        try:
            signed_order = await asyncio.wait_for(
                asyncio.to_thread(self._client.create_order, order_args, options),
                timeout=self._timeout,
            )
            resp = await asyncio.wait_for(
                asyncio.to_thread(self._client.post_order, signed_order, clob_ot),  # type: ignore[arg-type]
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"CLOB place_order timed out after {self._timeout:.0f}s")
            return ClobOrderResult(success=False, error="timeout")
        except Exception as e:
            logger.error(f"CLOB place_order failed: {e}")
            return ClobOrderResult(success=False, error=str(e))

        if not isinstance(resp, dict):
            logger.warning(f"Unexpected CLOB response type: {type(resp)}: {resp}")
            return ClobOrderResult(success=False, error=f"Unexpected response: {resp}")

        order_id = resp.get("orderID", "") or resp.get("id", "")
        if resp.get("success") is False or resp.get("errorMsg"):
            err = resp.get("errorMsg") or str(resp)
            logger.error(f"CLOB order rejected: {err}")
            return ClobOrderResult(success=False, order_id=order_id, error=err, raw=resp)

        logger.info(f"CLOB order posted: {side} {size}@{price} token={token_id[:10]}... → orderID={order_id}")
        return ClobOrderResult(success=True, order_id=order_id, raw=resp)
