"""
中继配置生成模块

生成 redsocks 配置: 一个 ``base`` 段，每个已配置端点一个 ``redsocks`` 段。
中继只在启动时读取一次配置，因此必须在启动中继之前写完并关闭文件；
write_relay_config 在文件关闭后才返回。
"""

from pathlib import Path
from typing import Iterable, List

import aiofiles

from ..core.config import RelayConfig
from ..core.errors import ConfigError
from ..proxy.parser import ProxyEndpoint, ProxyType
from ..utils.logger import get_logger

logger = get_logger(__name__)


def render_base_section(log: str) -> str:
    return (
        "base {\n"
        "    log_debug = on;\n"
        "    log_info = on;\n"
        f"    log = \"{log}\";\n"
        "    daemon = off;\n"
        "    redirector = iptables;\n"
        "}\n"
    )


def render_backend_section(
    endpoint: ProxyEndpoint,
    bind_address: str,
    local_port: int,
) -> str:
    return (
        "redsocks {\n"
        f"    local_ip = {bind_address};\n"
        f"    local_port = {local_port};\n"
        f"    ip = {endpoint.host};\n"
        f"    port = {endpoint.port};\n"
        f"    type = {endpoint.proxy_type.relay_type};\n"
        "}\n"
    )


def build_relay_config(
    endpoints: Iterable[ProxyEndpoint],
    relay: RelayConfig,
) -> str:
    """
    生成中继配置文本

    后端段按 ProxyType 声明顺序排列，未配置的端点不生成段。

    Args:
        endpoints: 解析后的端点
        relay: 中继设置（日志目标、监听地址、本地端口）

    Returns:
        配置文本
    """
    by_type = {e.proxy_type: e for e in endpoints}
    sections: List[str] = [render_base_section(relay.log)]
    for proxy_type in ProxyType:
        endpoint = by_type.get(proxy_type)
        if endpoint is None or not endpoint.configured:
            continue
        sections.append(
            render_backend_section(
                endpoint, relay.bind_address, relay.local_port(proxy_type)
            )
        )
    return "\n".join(sections)


async def write_relay_config(path: Path, text: str) -> Path:
    """
    写出配置，文件关闭后返回

    Raises:
        ConfigError: 路径无法写入
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(text)
    except OSError as e:
        raise ConfigError(f"cannot write relay configuration {path}", cause=e)
    logger.info(f"Relay configuration written to {path}")
    return path


__all__ = [
    "render_base_section",
    "render_backend_section",
    "build_relay_config",
    "write_relay_config",
]
