"""
Proxy 模块 - 上游代理与端口规格解析

导出:
- ProxyType: 上游代理协议类型
- ProxyEndpoint: 解析后的上游 host/port
- resolve_endpoint: 解析代理 URL
- PortMapping: 单个 PORT:TYPE 条目
- parse_port_spec: 解析逗号分隔的端口规格
"""

from .parser import ProxyType, ProxyEndpoint, ProxyParseError, TEARDOWN_ORDER, resolve_endpoint
from .port_spec import PortMapping, parse_port_spec

__all__ = [
    "ProxyType",
    "ProxyEndpoint",
    "ProxyParseError",
    "TEARDOWN_ORDER",
    "resolve_endpoint",
    "PortMapping",
    "parse_port_spec",
]
