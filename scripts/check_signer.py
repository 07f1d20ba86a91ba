"""
检查签名钱包配置

从 .env 读取 PM_PRIVATE_KEY / PM_PROXY_ADDRESS, 打印:
  - 私钥推导出的 EOA 地址 (签名地址)
  - 资金地址 (proxy 优先) 与 CLOB 签名类型
  - EOA / proxy 的 USDC 余额

可选 --derive-creds: 实际向 CLOB 派生 / 创建 API Key (需要网络)

使用方法:
  python scripts/check_signer.py [--derive-creds]
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv  # noqa: E402

from polycopy.core.errors import CredentialError  # noqa: E402
from polycopy.trading.clob_api import SIG_EOA, SIG_GNOSIS_SAFE, ClobApiClient  # noqa: E402
from polycopy.trading.wallet import UsdcBalanceReader, WalletManager  # noqa: E402


async def main(derive_creds: bool) -> int:
    load_dotenv(override=False)
    wallet = WalletManager()
    if not wallet.initialize_from_env():
        print("PM_PRIVATE_KEY 未配置或无效")
        return 1

    sig = SIG_GNOSIS_SAFE if wallet.proxy_address else SIG_EOA
    print(f"Signer (EOA) : {wallet.address}")
    print(f"Funder       : {wallet.funding_address} ({'PROXY' if wallet.proxy_address else 'EOA'})")
    print(f"Sig type     : {sig} ({'GNOSIS_SAFE' if sig == SIG_GNOSIS_SAFE else 'EOA'})")

    balances = UsdcBalanceReader(rpc_url=os.environ.get("POLYGON_RPC", ""))
    eoa_bal = await balances.get_balance(wallet.address)
    print(f"EOA USDC     : ${eoa_bal:.2f}")
    if wallet.proxy_address:
        proxy_bal = await balances.get_balance(wallet.proxy_address)
        print(f"Proxy USDC   : ${proxy_bal:.2f}")

    if derive_creds:
        client = ClobApiClient(private_key=wallet.private_key, funder=wallet.proxy_address)
        try:
            await client.initialize()
        except CredentialError as e:
            print(f"CLOB credentials FAILED: {e}")
            return 1
        print("CLOB credentials OK (Level-2 client ready)")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="检查签名钱包配置")
    parser.add_argument("--derive-creds", action="store_true", help="向 CLOB 派生 / 创建 API Key")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.derive_creds)))
