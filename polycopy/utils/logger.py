"""
Logger - 日志配置

基于 loguru。控制台 + 三个文件:
    polycopy_{date}.log   全量 DEBUG
    errors_{date}.log     ERROR 及以上
    trades_{date}.log     跟单订单 / 模拟成交 (logger.bind(tags=["trade"]))
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level:8s}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:8s} | {name}:{function}:{line} | {message}"
TRADE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {message}"


def is_trade_record(record) -> bool:
    return "trade" in record["extra"].get("tags", [])


def setup_logger(
    log_dir: str | Path = "logs",
    level: str = "INFO",
    rotation: str = "10 MB",
    retention: str = "30 days",
) -> Path:
    """
    配置全局日志, 返回日志目录

    Args:
        log_dir: 日志文件目录
        level: 控制台日志级别 (文件始终记录 DEBUG)
        rotation / retention: 全量和错误日志的轮转与保留
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT, colorize=True)

    for name, sink_level in (("polycopy", "DEBUG"), ("errors", "ERROR")):
        logger.add(
            str(log_dir / f"{name}_{{time:YYYY-MM-DD}}.log"),
            level=sink_level,
            format=FILE_FORMAT,
            rotation=rotation,
            retention=retention,
            encoding="utf-8",
        )

    # 订单记录保留更久, 按天切分
    logger.add(
        str(log_dir / "trades_{time:YYYY-MM-DD}.log"),
        level="INFO",
        format=TRADE_FORMAT,
        filter=is_trade_record,
        rotation="1 day",
        retention="90 days",
        encoding="utf-8",
    )

    logger.info(f"Logger initialized: console={level.upper()}, dir={log_dir.resolve()}")
    return log_dir
