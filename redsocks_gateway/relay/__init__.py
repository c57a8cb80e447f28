"""
Relay 模块 - 中继守护进程配置与管理

导出:
- build_relay_config: 生成中继配置文本
- write_relay_config: 写出配置并关闭文件
- RelaySupervisor: 启动并监控中继守护进程
"""

from .config_builder import build_relay_config, write_relay_config
from .supervisor import RelaySupervisor

__all__ = [
    "build_relay_config",
    "write_relay_config",
    "RelaySupervisor",
]
