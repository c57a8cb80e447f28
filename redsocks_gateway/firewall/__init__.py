"""
Firewall 模块 - NAT 链与目标端口规则

导出:
- RuleManager: 安装/删除链与规则
- Hook: OUTPUT 或 PREROUTING
- CommandResult: 单条防火墙命令的结构化结果
- CommandRunner: 基于 subprocess 的串行执行器
- RecordingRunner: dry run 使用的记录器
"""

from .command import CommandResult, CommandRunner, RecordingRunner
from .rules import Hook, RuleManager

__all__ = [
    "Hook",
    "RuleManager",
    "CommandResult",
    "CommandRunner",
    "RecordingRunner",
]
