"""
Wallet - 钱包与余额

WalletManager      从私钥推导签名地址 (EOA), 确定资金地址 (proxy / EOA)
UsdcBalanceReader  通过 Polygon RPC 查询 USDC 余额
"""

from __future__ import annotations

import asyncio
import os

from eth_account import Account
from loguru import logger
from web3 import Web3

# USDC.e on Polygon (Polymarket 抵押品), 6 位小数
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
USDC_DECIMALS = 6
DEFAULT_RPC = "https://polygon-rpc.com"

# 简化的 ERC20 ABI
ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    }
]


def mask_address(address: str) -> str:
    return address[:6] + "..." + address[-4:] if len(address) > 10 else "***"


class WalletManager:
    """
    钱包管理器

    - 私钥仅从环境变量或配置传入
    - 永远不在日志中打印私钥
    - 有 proxy 地址时资金在 proxy 钱包中, 否则在 EOA 中
    """

    def __init__(self, private_key: str = "", proxy_address: str = "") -> None:
        self._private_key = private_key
        self.proxy_address = proxy_address
        self._address = ""
        self._initialized = False

    def initialize(self) -> bool:
        if not self._private_key:
            logger.warning("No signer key configured (read-only)")
            return False
        try:
            self._address = Account.from_key(self._private_key).address
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to derive address from key: {e}")
            return False
        self._initialized = True
        logger.info(
            f"Wallet initialized: signer={mask_address(self._address)}"
            + (f" funder={mask_address(self.proxy_address)}" if self.proxy_address else "")
        )
        return True

    def initialize_from_env(self) -> bool:
        """从 PM_PRIVATE_KEY / PM_PROXY_ADDRESS 加载"""
        self._private_key = os.environ.get("PM_PRIVATE_KEY", "")
        self.proxy_address = os.environ.get("PM_PROXY_ADDRESS", "")
        return self.initialize()

    @property
    def address(self) -> str:
        """签名地址 (EOA)"""
        return self._address

    @property
    def funding_address(self) -> str:
        """资金地址: proxy 优先, 否则 EOA"""
        return self.proxy_address or self._address

    @property
    def private_key(self) -> str:
        return self._private_key

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def can_sign(self) -> bool:
        return self._initialized and bool(self._private_key)


class UsdcBalanceReader:
    """
    USDC 余额查询 (Polygon)

    web3 是同步库, 通过 asyncio.to_thread 执行并加超时;
    地址非法或 RPC 失败时返回 0.0。
    """

    def __init__(self, rpc_url: str = "", timeout: float = 15.0) -> None:
        self.rpc_url = rpc_url or os.environ.get("POLYGON_RPC", DEFAULT_RPC)
        self.timeout = timeout
        self._w3: Web3 | None = None
        self._contract = None

    def _get_contract(self):
        if self._contract is None:
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
            self._contract = self._w3.eth.contract(
                address=Web3.to_checksum_address(USDC_ADDRESS),
                abi=ERC20_BALANCE_ABI,
            )
        return self._contract

    def _balance_sync(self, address: str) -> float:
        contract = self._get_contract()
        raw = contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        return raw / 10 ** USDC_DECIMALS

    async def get_balance(self, address: str) -> float:
        if not address or not Web3.is_address(address):
            logger.warning(f"Invalid address for balance lookup: {address!r}")
            return 0.0
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._balance_sync, address),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"USDC balance lookup timed out for {mask_address(address)}")
            return 0.0
        except Exception as e:
            logger.error(f"Failed to get USDC balance for {mask_address(address)}: {e}")
            return 0.0
