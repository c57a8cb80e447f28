"""
NAT 表重定向规则管理

管理两类对象:

- 每个已配置代理类型一条链: 先为每个跳过网段加 RETURN 规则，
  最后一条 REDIRECT 到本地中继端口
- 目标端口规则: OUTPUT（本机发出的流量）与桥接接口上的
  PREROUTING（转发流量），跳转到端口对应代理类型的链

仍被规则引用的链无法删除，因此必须先删除某条链的全部目标端口规则，
再删除链本身。任何非零退出码都抛出 ExternalCommandError，
已安装的内容不会回滚。
"""

from enum import Enum
from typing import Callable, List, Optional, Sequence

from ..core.errors import ExternalCommandError
from ..proxy.parser import ProxyType
from ..utils.logger import get_logger
from .command import CommandResult, CommandRunner

logger = get_logger(__name__)

Runner = Callable[[Sequence[str]], CommandResult]


class Hook(Enum):
    """目标端口规则挂载的 NAT 钩子"""
    OUTPUT = "OUTPUT"
    PREROUTING = "PREROUTING"


class RuleManager:
    """通过单一串行 runner 执行防火墙变更"""

    def __init__(
        self,
        command: str = "iptables",
        table: str = "nat",
        runner: Optional[Runner] = None,
    ):
        """
        Args:
            command: 防火墙命令
            table: 链所在的表
            runner: 执行单个参数向量的可调用对象
        """
        self.command = command
        self.table = table
        self.runner: Runner = runner or CommandRunner()
        self.history: List[CommandResult] = []

    def _run(self, action: str, *args: str) -> CommandResult:
        result = self.runner([self.command, "-t", self.table, *args])
        if not result.ok:
            raise ExternalCommandError(f"failed to {action}", result)
        self.history.append(result)
        return result

    # ------------------------------------------------------------------
    # 基本操作

    def new_chain(self, chain: str) -> None:
        self._run(f"create chain {chain}", "-N", chain)

    def append_rule(self, chain: str, *spec: str) -> None:
        self._run(f"append rule to {chain}", "-A", chain, *spec)

    def delete_rule(self, chain: str, *spec: str) -> None:
        self._run(f"delete rule from {chain}", "-D", chain, *spec)

    def flush_chain(self, chain: str) -> None:
        self._run(f"flush chain {chain}", "-F", chain)

    def delete_chain(self, chain: str) -> None:
        self._run(f"delete chain {chain}", "-X", chain)

    # ------------------------------------------------------------------
    # 链

    def install_chain(
        self,
        proxy_type: ProxyType,
        local_port: int,
        skip_cidrs: Sequence[str],
    ) -> None:
        """
        创建代理类型对应的链

        跳过规则让所列网段（包括上游代理本身的流量）不被重定向。
        """
        chain = proxy_type.chain
        logger.info(f"Setting up chain {chain} -> local port {local_port}")
        self.new_chain(chain)
        for cidr in skip_cidrs:
            self.append_rule(chain, "-d", cidr, "-j", "RETURN")
        self.append_rule(
            chain, "-p", "tcp", "-j", "REDIRECT", "--to-ports", str(local_port)
        )

    def remove_chain(self, proxy_type: ProxyType) -> None:
        """清空并删除链，此时不能再有规则跳转到它"""
        chain = proxy_type.chain
        logger.info(f"Removing chain {chain}")
        self.flush_chain(chain)
        self.delete_chain(chain)

    # ------------------------------------------------------------------
    # 目标端口规则

    @staticmethod
    def dest_port_spec(
        destination: str,
        port: int,
        proxy_type: ProxyType,
        hook: Hook,
        interface: Optional[str] = None,
    ) -> List[str]:
        """安装与删除共用的匹配参数"""
        spec: List[str] = []
        if hook is Hook.PREROUTING and interface:
            spec += ["-i", interface]
        spec += [
            "-p", "tcp",
            "-d", destination,
            "--dport", str(port),
            "-j", proxy_type.chain,
        ]
        return spec

    def install_dest_port_rule(
        self,
        destination: str,
        port: int,
        proxy_type: ProxyType,
        hook: Hook,
        interface: Optional[str] = None,
    ) -> None:
        logger.info(f"Redirecting {hook.value} tcp/{port} -> {proxy_type.chain}")
        self.append_rule(
            hook.value,
            *self.dest_port_spec(destination, port, proxy_type, hook, interface),
        )

    def remove_dest_port_rule(
        self,
        destination: str,
        port: int,
        proxy_type: ProxyType,
        hook: Hook,
        interface: Optional[str] = None,
    ) -> None:
        logger.info(f"Removing {hook.value} tcp/{port} -> {proxy_type.chain}")
        self.delete_rule(
            hook.value,
            *self.dest_port_spec(destination, port, proxy_type, hook, interface),
        )


__all__ = [
    "Hook",
    "RuleManager",
]
