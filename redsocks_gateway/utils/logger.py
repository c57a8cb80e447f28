"""
日志模块 - 提供网关日志功能

支持:
- 标准错误上的控制台彩色输出
- 可选的文件日志（普通文本或 JSON）
- 包级日志记录器，级别由 --verbose 控制
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "redsocks_gateway"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """控制台彩色日志格式化器"""

    COLORS = {
        'DEBUG': '\033[36m',     # 青色
        'INFO': '\033[32m',      # 绿色
        'WARNING': '\033[33m',   # 黄色
        'ERROR': '\033[31m',     # 红色
        'CRITICAL': '\033[35m',  # 紫色
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        # 保存原始 levelname
        original_levelname = record.levelname
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        result = super().format(record)
        # 恢复原始 levelname
        record.levelname = original_levelname
        return result


class JsonFormatter(logging.Formatter):
    """
    JSON 格式日志格式化器

    每行一个 JSON 对象，便于日志收集。
    """

    SKIP_FIELDS = {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key in self.SKIP_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                extra_fields[key] = value
            except (TypeError, ValueError):
                extra_fields[key] = str(value)

        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, ensure_ascii=False)


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if sys.stderr.isatty():
        handler.setFormatter(ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _package_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    # 避免重复配置
    if not root.handlers:
        root.setLevel(logging.WARNING)
        root.addHandler(_console_handler())
    return root


def get_logger(name: str) -> logging.Logger:
    """
    获取模块日志记录器

    模块日志记录器挂在包日志记录器之下，控制台 handler 与级别由后者持有。

    Args:
        name: 日志记录器名称，通常为 __name__

    Returns:
        日志记录器
    """
    _package_logger()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def setup_main_logger(level: str = "WARNING") -> logging.Logger:
    """设置包日志级别并返回包日志记录器"""
    logger = _package_logger()
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))
    return logger


def setup_file_logging(
    log_file: Path,
    level: Optional[str] = None,
    json_format: bool = False
) -> None:
    """
    同时将包日志写入文件

    Args:
        log_file: 日志文件路径
        level: handler 级别（默认跟随包级别）
        json_format: 是否使用 JSON 格式
    """
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    if level:
        file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        file_handler.setFormatter(JsonFormatter())
    else:
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    _package_logger().addHandler(file_handler)


__all__ = [
    "ROOT_LOGGER_NAME",
    "get_logger",
    "setup_main_logger",
    "setup_file_logging",
    "ColoredFormatter",
    "JsonFormatter",
]
