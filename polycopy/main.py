"""
Polymarket Copy-Trading Bot
===========================
主入口文件, 将所有模块编排到一起。

用法:
    python -m polycopy.main                 # 按 settings.yaml 的 trading_mode 运行
    python -m polycopy.main --mode paper    # 模拟盘
    python -m polycopy.main --mode live     # 实盘
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import aiohttp
from loguru import logger

from polycopy.core.config import ROOT_DIR, AppConfig, load_config
from polycopy.core.context import Context
from polycopy.core.errors import ConfigurationError
from polycopy.market.metadata import MarketMetadataClient
from polycopy.market.portfolio import PortfolioValueClient
from polycopy.monitor.poller import TradePoller
from polycopy.pipeline import CopyPipeline
from polycopy.strategy.engine import StrategyEngine
from polycopy.strategy.sizing import describe_rules
from polycopy.trading.executor import CopyExecutor
from polycopy.trading.wallet import UsdcBalanceReader, WalletManager, mask_address
from polycopy.utils.logger import setup_logger
from polycopy.utils.trade_logger import TradeLogger

LOW_BALANCE_WARNING = 5.0


# ================================================================
#  启动检查
# ================================================================
async def health_check(cfg: AppConfig, wallet: WalletManager, balances: UsdcBalanceReader) -> None:
    """打印我方钱包余额 (proxy 或 EOA) 和目标交易员现金余额"""
    if wallet.is_initialized:
        addr = wallet.funding_address
        kind = "PROXY" if wallet.proxy_address else "EOA"
        my_bal = await balances.get_balance(addr)
        logger.info(f"[HEALTH] My wallet ({mask_address(addr)}) [{kind}]: ${my_bal:.2f} USDC")
        if my_bal < LOW_BALANCE_WARNING:
            logger.warning(f"[HEALTH] Balance is very low (< ${LOW_BALANCE_WARNING:.0f}). Bot might fail to trade.")
    elif cfg.is_live:
        logger.error("[HEALTH] No signer available for live trading")

    for strat in cfg.strategies:
        target_bal = await balances.get_balance(strat.trader_address)
        logger.info(f"[HEALTH] Target trader {strat.label}: ${target_bal:.2f} USDC (cash)")


def log_banner(cfg: AppConfig, ctx: Context) -> None:
    logger.info("=" * 60)
    logger.info("  Polymarket Copy-Trading Bot")
    logger.info(f"  交易模式: {cfg.trading_mode.value}")
    if ctx.is_paper:
        logger.info(f"  模拟余额: ${ctx.account.balance:.2f}")
    for strat in cfg.strategies:
        logger.info(
            f"  目标: {strat.label} | {strat.strategy_type.value} | "
            f"min_alloc={strat.conditions.min_trader_portfolio_alloc:.0%} "
            f"window={strat.conditions.time_window_minutes}m "
            f"multi={strat.allow_multiple_executions}"
        )
        for line in describe_rules(strat.sizing.rules):
            logger.info(f"    {line}")
    logger.info("=" * 60)


# ================================================================
#  运行
# ================================================================
async def run(cfg: AppConfig) -> None:
    ctx = Context(trading_mode=cfg.trading_mode, paper_balance=cfg.paper_balance)
    timeout = cfg.network.http_timeout

    wallet = WalletManager(private_key=cfg.private_key, proxy_address=cfg.proxy_address)
    wallet.initialize()

    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))
    balances = UsdcBalanceReader(rpc_url=cfg.network.rpc_url, timeout=timeout)
    markets = MarketMetadataClient(cfg.network.gamma_api, timeout=timeout, session=session)
    portfolio = PortfolioValueClient(cfg.network.data_api, timeout=timeout, session=session)

    await health_check(cfg, wallet, balances)

    executor = CopyExecutor(
        context=ctx,
        wallet=wallet,
        balances=balances,
        clob_host=cfg.network.clob_host,
    )
    await executor.initialize()

    journal = TradeLogger(
        data_dir=ROOT_DIR / cfg.data_dir,
        run_mode=cfg.trading_mode.value,
        config={"strategies": [s.label for s in cfg.strategies], "mode": cfg.trading_mode.value},
    )

    pipeline = CopyPipeline(
        engine_factory=lambda: StrategyEngine(markets, balances, portfolio, clock=ctx.now),
        executor=executor,
        journal=journal,
    )
    poller = TradePoller(
        cfg.strategies,
        pipeline.handle_trade,
        polling=cfg.polling,
        base_url=cfg.network.data_api,
        timeout=timeout,
        session=session,
    )

    # ── 优雅退出 ────
    stop_event = asyncio.Event()

    def _signal_handler():
        logger.info("收到退出信号, 正在停止...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows 不支持 add_signal_handler
            pass

    log_banner(cfg, ctx)
    poller.start()
    logger.info("Bot running. Polling for signals...")

    try:
        await stop_event.wait()
    finally:
        logger.info("正在停止所有模块...")
        await poller.stop()
        await markets.close()
        await portfolio.close()
        await session.close()
        journal.finalize(extra_stats={"executor": executor.stats, "account": ctx.snapshot()["account"]})
        journal.close()
        logger.info("系统已安全退出 ✓")


# ================================================================
#  CLI 入口
# ================================================================
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Polymarket Copy-Trading Bot")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="配置文件路径 (默认: ./config/settings.yaml)",
    )
    parser.add_argument(
        "--mode",
        choices=["paper", "live"],
        default=None,
        help="交易模式, 覆盖 settings.yaml 的 app.trading_mode",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="详细日志输出",
    )
    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        cfg = load_config(Path(args.config) if args.config else None, trading_mode=args.mode)
    except ConfigurationError as e:
        logger.error(f"配置错误: {e}")
        return 2

    log_level = "DEBUG" if args.verbose else cfg.log_level
    setup_logger(log_dir=ROOT_DIR / cfg.log_dir, level=log_level)

    await run(cfg)
    return 0


def main() -> None:
    """同步入口点。"""
    try:
        code = asyncio.run(async_main())
    except KeyboardInterrupt:
        print("\n已退出。")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
