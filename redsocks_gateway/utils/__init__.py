"""
Utils 模块

导出:
- get_logger: 获取模块日志记录器
- setup_main_logger: 设置包日志级别
- setup_file_logging: 日志同时写入文件
- timed: 记录代码块耗时
"""

from .logger import get_logger, setup_main_logger, setup_file_logging
from .timing import timed

__all__ = [
    "get_logger",
    "setup_main_logger",
    "setup_file_logging",
    "timed",
]
