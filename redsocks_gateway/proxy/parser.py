"""
代理解析模块 - 解析上游代理 URL

支持格式: [scheme://]host:port[/path][?query]
scheme 被忽略（协议类型由传入 URL 的参数决定），路径和查询部分同样忽略。
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.errors import ProxyParseError as BaseProxyParseError
from ..utils.logger import get_logger

logger = get_logger(__name__)

_URL_RE = re.compile(
    r"^(?:[a-z][a-z0-9+.\-]*://)?"
    r"(?P<host>[a-z0-9.\-]+)"
    r":(?P<port>[0-9]+)"
    r"(?:[/?#].*)?$"
)


class ProxyType(Enum):
    """
    上游代理协议类型

    每个成员对应一个中继后端类型、一条重定向到本地监听端口的防火墙链，
    以及该监听端口的默认值。
    """
    HTTP = "HTTP"
    CONNECT = "CONNECT"
    SOCKS4 = "SOCKS4"
    SOCKS5 = "SOCKS5"

    @property
    def relay_type(self) -> str:
        return _RELAY_TYPES[self]

    @property
    def chain(self) -> str:
        return f"REDSOCKS_{self.value}"

    @property
    def default_local_port(self) -> int:
        return _DEFAULT_LOCAL_PORTS[self]

    @classmethod
    def from_token(cls, token: str) -> "ProxyType":
        """精确匹配（区分大小写），否则抛出 ValueError"""
        return cls(token)


_RELAY_TYPES = {
    ProxyType.HTTP: "http-relay",
    ProxyType.CONNECT: "http-connect",
    ProxyType.SOCKS4: "socks4",
    ProxyType.SOCKS5: "socks5",
}

_DEFAULT_LOCAL_PORTS = {
    ProxyType.HTTP: 12345,
    ProxyType.CONNECT: 12346,
    ProxyType.SOCKS4: 12347,
    ProxyType.SOCKS5: 12348,
}

# 无论配置顺序如何，链都按此顺序删除
TEARDOWN_ORDER = (
    ProxyType.CONNECT,
    ProxyType.HTTP,
    ProxyType.SOCKS4,
    ProxyType.SOCKS5,
)


@dataclass(frozen=True)
class ProxyEndpoint:
    """解析后的上游代理端点"""
    proxy_type: ProxyType
    host: str = ""
    port: Optional[int] = None

    @property
    def configured(self) -> bool:
        """host 非空且 port 为合法 TCP 端口"""
        return bool(self.host) and self.port is not None and 1 <= self.port <= 65535

    def __str__(self) -> str:
        if not self.configured:
            return f"{self.proxy_type.value}(unconfigured)"
        return f"{self.proxy_type.value}({self.host}:{self.port})"


# 统一异常模型
ProxyParseError = BaseProxyParseError


def split_host_port(url: str) -> tuple:
    """
    拆分代理 URL 为 (host, port)

    Args:
        url: 代理 URL，不区分大小写

    Returns:
        (小写 host, int 端口)

    Raises:
        ProxyParseError: URL 格式不匹配
    """
    match = _URL_RE.match(url.strip().lower())
    if not match:
        raise ProxyParseError(f"malformed proxy URL: {url}")
    return match.group("host"), int(match.group("port"))


def resolve_endpoint(proxy_type: ProxyType, url: Optional[str]) -> ProxyEndpoint:
    """
    解析某一协议类型的代理 URL

    空 URL 静默返回未配置的端点；格式错误或端口越界时记录警告，
    同样返回未配置的端点，二者都不致命。

    Args:
        proxy_type: URL 对应的协议类型
        url: 原始 URL（可为空或 None）

    Returns:
        ProxyEndpoint
    """
    if not url or not url.strip():
        return ProxyEndpoint(proxy_type)

    try:
        host, port = split_host_port(url)
    except ProxyParseError:
        logger.warning(f"Malformed {proxy_type.value} proxy URL, ignoring it: {url}")
        return ProxyEndpoint(proxy_type)

    endpoint = ProxyEndpoint(proxy_type, host, port)
    if not endpoint.configured:
        logger.warning(f"{proxy_type.value} proxy port out of range, ignoring it: {url}")
        return ProxyEndpoint(proxy_type)

    logger.debug(f"Resolved {endpoint}")
    return endpoint


__all__ = [
    "ProxyType",
    "ProxyEndpoint",
    "ProxyParseError",
    "TEARDOWN_ORDER",
    "split_host_port",
    "resolve_endpoint",
]
