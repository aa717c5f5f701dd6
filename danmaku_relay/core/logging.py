"""
danmaku_relay.core.logging
~~~~~~~~~~~~~~~~~~~~~~~~~~

统一日志配置，根据环境自动设置日志级别和格式。

日志同时输出到 stdout；配置了 ``LOGS_DIR`` 时额外写入按天滚动的日志文件
（``log.YYYY-MM-DD.log``）。

所有模块应通过 ``get_logger(__name__)`` 获取 logger 实例。
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from danmaku_relay.core.config import Settings, get_settings

# 日志格式：时间 | 级别 | 模块名 | 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"


def _daily_file_handler(logs_dir: str) -> logging.Handler:
    """创建每天零点滚动的文件 handler，滚动后的文件名形如 ``log.2024-01-01.log``。"""
    directory = Path(logs_dir)
    directory.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        directory / "log",
        when="midnight",
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d.log"
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """根据当前环境配置全局日志。应在应用启动时调用一次。"""
    settings = settings or get_settings()
    level = getattr(logging, settings.effective_log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.LOGS_DIR:
        handlers.append(_daily_file_handler(settings.LOGS_DIR))

    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        handlers=handlers,
        force=True,  # 覆盖可能已有的 basicConfig
    )

    # 降低第三方库的日志噪音
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """获取指定模块的 logger 实例。

    Args:
        name: 模块名，通常传 ``__name__``。

    Returns:
        配置好的 ``logging.Logger`` 实例。
    """
    return logging.getLogger(name)
