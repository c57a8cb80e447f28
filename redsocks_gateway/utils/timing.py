"""
计时工具模块

timed: 记录一段代码（防火墙安装/清理、中继运行时长）的耗时
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator


def _format_elapsed(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.1f}s"


@contextmanager
def timed(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **fields: Any
) -> Iterator[None]:
    """
    计时上下文管理器

    代码块结束时（包括抛出异常）记录一条日志，例如
    ``firewall setup took 12ms (chains=1 ports=2)``。

    Args:
        logger: 日志记录器
        operation: 操作名称
        level: 日志级别
        **fields: 附加在消息末尾的 key=value 字段
    """
    started = time.monotonic()
    try:
        yield
    finally:
        message = f"{operation} took {_format_elapsed(time.monotonic() - started)}"
        if fields:
            message += " (" + " ".join(f"{k}={v}" for k, v in fields.items()) + ")"
        logger.log(level, message)


__all__ = [
    "timed",
]
