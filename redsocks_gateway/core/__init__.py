"""
Core 模块 - 配置、错误与网关生命周期

使用方式:
    from redsocks_gateway.core.config import AppConfig, load_config
    from redsocks_gateway.core.errors import GatewayError, describe_error
    from redsocks_gateway.core.lifecycle import Gateway, run_gateway
"""

# 只导出错误类: config 依赖 proxy，而 proxy 依赖 errors
from .errors import (
    GatewayError,
    ErrorCategory,
    get_error_category,
    describe_error,
)

__all__ = [
    "GatewayError",
    "ErrorCategory",
    "get_error_category",
    "describe_error",
]
