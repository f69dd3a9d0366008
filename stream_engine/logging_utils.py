"""
流式推理引擎日志工具模块

提供统一的日志配置和获取接口。
库内部的logger均挂在"stream_engine"命名空间下。
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union


# 默认日志格式
DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 库的根logger名称
LIBRARY_LOGGER = "stream_engine"

_log_level: int = logging.INFO
_log_file: Optional[Path] = None
_initialized: bool = False


def _to_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(
    level: Union[str, int] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    format_str: str = DEFAULT_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> None:
    """
    全局日志初始化

    Args:
        level: 日志级别，可以是字符串("DEBUG", "INFO"等)或int
        log_file: 可选的日志文件路径
        format_str: 日志格式字符串
        date_format: 时间格式字符串
    """
    global _log_level, _log_file, _initialized

    level = _to_level(level)
    _log_level = level
    _log_file = Path(log_file) if log_file else None

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(format_str, date_format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if _log_file:
        _log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(_log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    获取指定名称的logger

    Args:
        name: logger名称，通常使用模块名 __name__；
              不在stream_engine命名空间下的名称会被挂到其下

    Returns:
        配置好的Logger实例
    """
    if not _initialized:
        setup_logging(_log_level)

    if name != LIBRARY_LOGGER and not name.startswith(LIBRARY_LOGGER + "."):
        name = f"{LIBRARY_LOGGER}.{name}"
    return logging.getLogger(name)


def set_log_level(level: Union[str, int]) -> None:
    """
    动态修改全局日志级别

    Args:
        level: 新的日志级别
    """
    global _log_level

    level = _to_level(level)
    _log_level = level

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)


class LoggerMixin:
    """
    为类提供logger属性的Mixin

    使用方式:
        class StreamingRuntime(LoggerMixin):
            def forward(self, x):
                self.logger.debug("forward...")
    """

    @property
    def logger(self) -> logging.Logger:
        if not hasattr(self, '_logger'):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger
