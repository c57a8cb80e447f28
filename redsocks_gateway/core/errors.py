"""
统一异常模型模块

功能:
- 定义网关领域异常层级结构
- 区分配置、防火墙、中继进程三类致命错误
- 为 CLI 唯一的致命退出点提供统一的错误描述

异常层级:
    GatewayError (基类)
    ├── ConfigError (配置错误 - 在修改防火墙之前抛出)
    │   ├── MissingConfigError
    │   ├── InvalidConfigError
    │   ├── PortSpecError (port:TYPE 条目无效)
    │   └── ProxyParseError (代理 URL 格式错误 - 仅记录警告，不致命)
    ├── ExternalCommandError (防火墙命令返回非零)
    └── ProcessError (中继进程)
        ├── ProcessSpawnError
        ├── SignalDeliveryError
        └── UnexpectedTerminationError
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..firewall.command import CommandResult


class ErrorCategory(Enum):
    """错误分类"""
    CONFIG = "config"           # 配置错误
    FIREWALL = "firewall"       # 防火墙命令错误
    PROCESS = "process"         # 中继进程错误
    UNKNOWN = "unknown"         # 未知错误


class GatewayError(Exception):
    """
    网关异常基类

    所有项目异常的父类，提供统一的属性接口。

    Attributes:
        message: 错误消息
        category: 错误分类
        cause: 原始异常（如有）
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str = "",
        *,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.cause:
            return f"{base} (cause: {self.cause})"
        return base

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"category={self.category.value})"
        )


# ============================================================================
# 配置错误
# ============================================================================

class ConfigError(GatewayError):
    """
    配置错误

    配置无效、缺失或无法写出时抛出，总是发生在修改防火墙之前。
    """
    category = ErrorCategory.CONFIG


class MissingConfigError(ConfigError):
    """缺少必需的配置项"""
    pass


class InvalidConfigError(ConfigError):
    """配置值无效"""
    pass


class PortSpecError(ConfigError):
    """
    端口规格条目错误

    携带出错的 ``port:TYPE`` 条目。
    """

    def __init__(self, message: str, token: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.token = token

    def __str__(self) -> str:
        if self.token:
            return f"{self.message}: {self.token!r}"
        return self.message


class ProxyParseError(ConfigError):
    """代理 URL 解析错误"""
    pass


# ============================================================================
# 防火墙错误
# ============================================================================

class ExternalCommandError(GatewayError):
    """
    防火墙命令失败

    携带失败命令的结构化结果（参数向量、退出码、合并输出）。
    """
    category = ErrorCategory.FIREWALL

    def __init__(self, message: str, result: "CommandResult", **kwargs):
        super().__init__(message, **kwargs)
        self.result = result

    def __str__(self) -> str:
        output = self.result.output.strip() or "(no output)"
        return (
            f"{self.message}: `{self.result.command_line}` "
            f"exited with {self.result.returncode}: {output}"
        )


# ============================================================================
# 中继进程错误
# ============================================================================

class ProcessError(GatewayError):
    """中继进程错误基类"""
    category = ErrorCategory.PROCESS


class ProcessSpawnError(ProcessError):
    """中继进程无法启动"""
    pass


class SignalDeliveryError(ProcessError):
    """清理阶段无法向中继进程发送信号"""
    pass


class UnexpectedTerminationError(ProcessError):
    """
    中继输出流结束

    中继应当一直运行，因此无论是否由中断引起，输出结束都视为致命。
    """

    def __init__(self, message: str, returncode: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode

    def __str__(self) -> str:
        base = super().__str__()
        if self.returncode is not None:
            return f"{base} (exit status {self.returncode})"
        return base


# ============================================================================
# 工具函数
# ============================================================================

def get_error_category(error: Exception) -> ErrorCategory:
    """
    获取错误分类

    Args:
        error: 异常实例

    Returns:
        错误分类
    """
    if isinstance(error, GatewayError):
        return error.category
    return ErrorCategory.UNKNOWN


def describe_error(error: Exception) -> str:
    """致命报告中的错误描述"""
    category = get_error_category(error)
    return f"[{category.value}] {error}"


__all__ = [
    "ErrorCategory",
    "GatewayError",
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    "PortSpecError",
    "ProxyParseError",
    "ExternalCommandError",
    "ProcessError",
    "ProcessSpawnError",
    "SignalDeliveryError",
    "UnexpectedTerminationError",
    "get_error_category",
    "describe_error",
]
