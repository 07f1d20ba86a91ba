"""
Config - 配置加载

从 .env (python-dotenv) 和 config/settings.yaml (PyYAML) 读取配置,
构建不可变的 AppConfig。配置在进程启动时只加载一次。

环境变量:
    PM_PRIVATE_KEY          交易签名私钥 (实盘必需)
    PM_PROXY_ADDRESS        Polymarket 代理钱包地址 (funder), 可选
    POLYGON_RPC             Polygon RPC
    CLOB_HOST               CLOB 服务器
    TRADER_ADDRESS_TARGET   跟单目标地址 (YAML 未配置时填入第一个策略)
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv
from loguru import logger

from polycopy.core.context import TradingMode
from polycopy.core.errors import ConfigurationError
from polycopy.strategy.sizing import validate_rules

ROOT_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = ROOT_DIR / "config" / "settings.yaml"


class StrategyType(str, Enum):
    CERTAINTY_SNIPER = "CERTAINTY_SNIPER"
    DIVERSIFIED_COPY = "DIVERSIFIED_COPY"


class SizingMode(str, Enum):
    FIXED_TIERS = "FIXED_TIERS"
    WALLET_SCALED = "WALLET_SCALED"


# ================================================================
#  配置结构
# ================================================================

@dataclass(frozen=True)
class SizingRule:
    """半开区间 [min_trader_alloc, max_trader_alloc) → 跟单比例"""
    min_trader_alloc: float
    max_trader_alloc: float = math.inf
    copy_size_ratio: float | None = None      # 固定档位: 占我方资金比例
    copy_wallet_ratio: float | None = None    # 钱包缩放: 占我方资金比例
    copy_fixed_usd: float | None = None       # 固定美元金额


@dataclass(frozen=True)
class SizingConfig:
    mode: SizingMode = SizingMode.FIXED_TIERS
    rules: tuple[SizingRule, ...] = ()


@dataclass(frozen=True)
class CopyConditions:
    min_trader_portfolio_alloc: float = 0.12
    ignore_price_below: float | None = 0.03
    max_executions_per_market: int = 5
    time_window_minutes: float | None = 10.0
    min_time_to_resolution_minutes: float | None = None
    dominance_threshold: float | None = 0.90
    min_net_exposure_usd: float = 25.0


@dataclass(frozen=True)
class RiskControls:
    max_total_open_exposure: float = 0.75     # 总敞口 / 可用资金
    max_single_market_exposure: float = 0.22  # 单市场敞口 / 可用资金
    max_single_trade_size: float = 0.02       # 单笔 / 可用资金 (只截断不拒绝)
    max_open_positions: int = 6


@dataclass(frozen=True)
class StrategyConfig:
    trader_address: str
    alias: str = ""
    strategy_type: StrategyType = StrategyType.DIVERSIFIED_COPY
    conditions: CopyConditions = field(default_factory=CopyConditions)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    risk: RiskControls = field(default_factory=RiskControls)
    allow_multiple_executions: bool = False
    global_allocation_fraction: float = 1.0
    reset_exposure_on_execution: bool = False

    @property
    def label(self) -> str:
        addr = self.trader_address
        short = f"{addr[:6]}...{addr[-4:]}" if len(addr) > 10 else addr
        return f"{self.alias} ({short})" if self.alias else short


@dataclass(frozen=True)
class NetworkConfig:
    http_timeout: float = 15.0
    rpc_url: str = "https://polygon-rpc.com"
    clob_host: str = "https://clob.polymarket.com"
    gamma_api: str = "https://gamma-api.polymarket.com"
    data_api: str = "https://data-api.polymarket.com"


@dataclass(frozen=True)
class PollingConfig:
    interval: float = 2.0
    limit: int = 10
    max_backoff: float = 60.0
    max_seen_ids: int = 1000


@dataclass(frozen=True)
class AppConfig:
    trading_mode: TradingMode = TradingMode.PAPER
    log_level: str = "INFO"
    log_dir: str = "logs"
    data_dir: str = "data"
    paper_balance: float = 1000.0
    private_key: str = ""
    proxy_address: str = ""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    strategies: tuple[StrategyConfig, ...] = ()

    @property
    def is_live(self) -> bool:
        return self.trading_mode == TradingMode.AUTO


# 默认档位 (与 settings.yaml 一致)
DEFAULT_SIZING_RULES = (
    SizingRule(min_trader_alloc=0.12, max_trader_alloc=0.20, copy_size_ratio=0.015),
    SizingRule(min_trader_alloc=0.20, max_trader_alloc=math.inf, copy_size_ratio=0.025),
)


# ================================================================
#  解析
# ================================================================

def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _upper_bound(value: Any) -> float:
    # YAML 中 null / .inf / "inf" 都表示无上限
    if value is None:
        return math.inf
    if isinstance(value, str) and value.strip().lower() in ("inf", "infinity", ".inf"):
        return math.inf
    return float(value)


def parse_sizing(raw: Mapping[str, Any] | None) -> SizingConfig:
    raw = raw or {}
    try:
        mode = SizingMode(str(raw.get("mode", SizingMode.FIXED_TIERS.value)).upper())
    except ValueError as e:
        raise ConfigurationError(f"invalid sizing mode: {raw.get('mode')}") from e

    raw_rules = raw.get("rules")
    if raw_rules is None:
        return SizingConfig(mode=mode, rules=DEFAULT_SIZING_RULES)

    rules = []
    for item in raw_rules:
        try:
            rules.append(SizingRule(
                min_trader_alloc=float(item["min_trader_alloc"]),
                max_trader_alloc=_upper_bound(item.get("max_trader_alloc")),
                copy_size_ratio=_opt_float(item.get("copy_size_ratio")),
                copy_wallet_ratio=_opt_float(item.get("copy_wallet_ratio")),
                copy_fixed_usd=_opt_float(item.get("copy_fixed_usd")),
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid sizing rule {item!r}: {e}") from e
    return SizingConfig(mode=mode, rules=tuple(rules))


def parse_strategy(raw: Mapping[str, Any]) -> StrategyConfig:
    """YAML 策略块 → StrategyConfig (不做校验)"""
    try:
        cond_raw = raw.get("conditions") or {}
        defaults = CopyConditions()
        conditions = CopyConditions(
            min_trader_portfolio_alloc=float(
                cond_raw.get("min_trader_portfolio_alloc", defaults.min_trader_portfolio_alloc)
            ),
            ignore_price_below=_opt_float(cond_raw.get("ignore_price_below", defaults.ignore_price_below)),
            max_executions_per_market=int(
                cond_raw.get("max_executions_per_market", defaults.max_executions_per_market)
            ),
            time_window_minutes=_opt_float(cond_raw.get("time_window_minutes", defaults.time_window_minutes)),
            min_time_to_resolution_minutes=_opt_float(cond_raw.get("min_time_to_resolution_minutes")),
            dominance_threshold=_opt_float(cond_raw.get("dominance_threshold", defaults.dominance_threshold)),
            min_net_exposure_usd=float(cond_raw.get("min_net_exposure_usd", defaults.min_net_exposure_usd)),
        )

        risk_raw = raw.get("risk") or {}
        rd = RiskControls()
        risk = RiskControls(
            max_total_open_exposure=float(risk_raw.get("max_total_open_exposure", rd.max_total_open_exposure)),
            max_single_market_exposure=float(
                risk_raw.get("max_single_market_exposure", rd.max_single_market_exposure)
            ),
            max_single_trade_size=float(risk_raw.get("max_single_trade_size", rd.max_single_trade_size)),
            max_open_positions=int(risk_raw.get("max_open_positions", rd.max_open_positions)),
        )

        strategy_type = StrategyType(
            str(raw.get("strategy_type", StrategyType.DIVERSIFIED_COPY.value)).upper()
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid strategy block: {e}") from e

    return StrategyConfig(
        trader_address=str(raw.get("trader_address") or "").strip(),
        alias=str(raw.get("alias") or ""),
        strategy_type=strategy_type,
        conditions=conditions,
        sizing=parse_sizing(raw.get("sizing")),
        risk=risk,
        allow_multiple_executions=bool(raw.get("allow_multiple_executions", False)),
        global_allocation_fraction=float(raw.get("global_allocation_fraction", 1.0)),
        reset_exposure_on_execution=bool(raw.get("reset_exposure_on_execution", False)),
    )


# ================================================================
#  校验
# ================================================================

def _check_fraction(errors: list[str], name: str, value: float | None, allow_zero: bool = True) -> None:
    if value is None:
        return
    low_ok = value >= 0 if allow_zero else value > 0
    if not (low_ok and value <= 1):
        errors.append(f"{name}={value} must be within {'[0' if allow_zero else '(0'}, 1]")


def validate_strategy(cfg: StrategyConfig) -> None:
    """校验单个策略, 出错抛 ConfigurationError"""
    errors: list[str] = []
    if not cfg.trader_address:
        errors.append("trader_address is required")
    elif not (cfg.trader_address.startswith("0x") and len(cfg.trader_address) == 42):
        errors.append(f"trader_address {cfg.trader_address!r} is not a 0x-prefixed 20-byte address")

    c = cfg.conditions
    _check_fraction(errors, "min_trader_portfolio_alloc", c.min_trader_portfolio_alloc)
    _check_fraction(errors, "ignore_price_below", c.ignore_price_below)
    _check_fraction(errors, "dominance_threshold", c.dominance_threshold)
    if c.time_window_minutes is not None and c.time_window_minutes <= 0:
        errors.append("time_window_minutes must be > 0")
    if c.max_executions_per_market < 1:
        errors.append("max_executions_per_market must be >= 1")
    if c.min_net_exposure_usd < 0:
        errors.append("min_net_exposure_usd must be >= 0")

    r = cfg.risk
    _check_fraction(errors, "max_total_open_exposure", r.max_total_open_exposure, allow_zero=False)
    _check_fraction(errors, "max_single_market_exposure", r.max_single_market_exposure, allow_zero=False)
    _check_fraction(errors, "max_single_trade_size", r.max_single_trade_size, allow_zero=False)
    if r.max_open_positions < 1:
        errors.append("max_open_positions must be >= 1")

    _check_fraction(errors, "global_allocation_fraction", cfg.global_allocation_fraction, allow_zero=False)

    if not cfg.sizing.rules:
        errors.append("sizing.rules must not be empty")
    errors.extend(validate_rules(cfg.sizing.rules))

    if errors:
        raise ConfigurationError(f"strategy {cfg.label or '?'}: " + "; ".join(errors))


def build_app_config(
    raw: Mapping[str, Any],
    env: Mapping[str, str] | None = None,
    trading_mode: str | None = None,
) -> AppConfig:
    """原始 dict (YAML) + 环境变量 → 已校验的 AppConfig"""
    env = os.environ if env is None else env

    app = raw.get("app") or {}
    mode_raw = (trading_mode or app.get("trading_mode") or "paper").lower()
    if mode_raw == "live":
        mode_raw = TradingMode.AUTO.value
    try:
        mode = TradingMode(mode_raw)
    except ValueError as e:
        raise ConfigurationError(f"invalid trading_mode: {mode_raw}") from e

    net_raw = raw.get("network") or {}
    nd = NetworkConfig()
    network = NetworkConfig(
        http_timeout=float(net_raw.get("http_timeout", nd.http_timeout)),
        rpc_url=env.get("POLYGON_RPC") or net_raw.get("rpc_url") or nd.rpc_url,
        clob_host=env.get("CLOB_HOST") or net_raw.get("clob_host") or nd.clob_host,
        gamma_api=(net_raw.get("gamma_api") or nd.gamma_api).rstrip("/"),
        data_api=(net_raw.get("data_api") or nd.data_api).rstrip("/"),
    )
    if network.http_timeout <= 0:
        raise ConfigurationError("network.http_timeout must be > 0")

    poll_raw = raw.get("polling") or {}
    pd = PollingConfig()
    polling = PollingConfig(
        interval=float(poll_raw.get("interval", pd.interval)),
        limit=int(poll_raw.get("limit", pd.limit)),
        max_backoff=float(poll_raw.get("max_backoff", pd.max_backoff)),
        max_seen_ids=int(poll_raw.get("max_seen_ids", pd.max_seen_ids)),
    )
    if polling.interval <= 0 or polling.limit < 1:
        raise ConfigurationError("polling.interval must be > 0 and polling.limit >= 1")

    strategies = [parse_strategy(s) for s in (raw.get("strategies") or [])]
    target = (env.get("TRADER_ADDRESS_TARGET") or "").strip()
    if not strategies and target:
        strategies = [StrategyConfig(trader_address=target, sizing=SizingConfig(rules=DEFAULT_SIZING_RULES))]
    elif strategies and target and not strategies[0].trader_address:
        strategies[0] = replace(strategies[0], trader_address=target)

    if not strategies:
        raise ConfigurationError("no strategies configured (set strategies in settings.yaml or TRADER_ADDRESS_TARGET)")
    for s in strategies:
        validate_strategy(s)

    private_key = (env.get("PM_PRIVATE_KEY") or "").strip()
    if mode == TradingMode.AUTO and not private_key:
        raise ConfigurationError("PM_PRIVATE_KEY is required for live trading")

    paper = raw.get("paper_account") or {}
    return AppConfig(
        trading_mode=mode,
        log_level=str(app.get("log_level", "INFO")).upper(),
        log_dir=str(app.get("log_dir", "logs")),
        data_dir=str(app.get("data_dir", "data")),
        paper_balance=float(paper.get("initial_balance", 1000.0)),
        private_key=private_key,
        proxy_address=(env.get("PM_PROXY_ADDRESS") or "").strip(),
        network=network,
        polling=polling,
        strategies=tuple(strategies),
    )


def load_config(path: str | Path | None = None, trading_mode: str | None = None) -> AppConfig:
    """加载 .env + settings.yaml"""
    load_dotenv(override=False)

    settings_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not settings_path.exists():
        raise ConfigurationError(f"配置文件不存在: {settings_path}")

    try:
        with open(settings_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {settings_path}: {e}") from e

    cfg = build_app_config(raw, trading_mode=trading_mode)
    logger.info(
        f"Config loaded: {settings_path.name} | mode={cfg.trading_mode.value} | "
        f"strategies={[s.label for s in cfg.strategies]}"
    )
    return cfg
