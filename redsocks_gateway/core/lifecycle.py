"""
网关生命周期模块

状态:
    IDLE -> CONFIGURING -> RULES_INSTALLED -> RUNNING -> CLEANING -> TERMINATED

启动阶段: 解析端点与端口规格，写出中继配置，先安装全部链再安装全部
目标端口规则，最后启动中继。启动失败直接中止，不回滚已安装的内容。

信号处理器只设置停止标志。监控循环等待下一行中继输出或停止标志，
随后在主任务中按顺序清理:

1. 按输入顺序处理每个端口映射: OUTPUT 规则，PREROUTING 规则
2. 按 TEARDOWN_ORDER 处理每条已配置的链（清空 + 删除）
3. 向中继发送 SIGTERM

之后读完中继剩余输出，运行总以 UnexpectedTerminationError 结束:
中继本不应停止。
"""

import asyncio
import logging
import signal
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..firewall.command import RecordingRunner
from ..firewall.rules import Hook, RuleManager
from ..proxy.parser import TEARDOWN_ORDER, ProxyEndpoint, ProxyType, resolve_endpoint
from ..proxy.port_spec import PortMapping, parse_port_spec
from ..relay.config_builder import build_relay_config, write_relay_config
from ..relay.supervisor import RelaySupervisor
from ..utils.logger import get_logger
from ..utils.timing import timed
from .config import AppConfig
from .errors import InvalidConfigError, MissingConfigError, UnexpectedTerminationError

logger = get_logger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GatewayState(Enum):
    """网关生命周期状态"""
    IDLE = "idle"
    CONFIGURING = "configuring"
    RULES_INSTALLED = "rules_installed"
    RUNNING = "running"
    CLEANING = "cleaning"
    TERMINATED = "terminated"


class Gateway:
    """负责启动、监控与清理流程"""

    def __init__(
        self,
        config: AppConfig,
        rules: Optional[RuleManager] = None,
        supervisor: Optional[RelaySupervisor] = None,
    ):
        """
        Args:
            config: 已校验的应用配置
            rules: 防火墙规则管理器（默认: 真实 iptables）
            supervisor: 中继进程管理器（默认: 按 config.relay 创建）
        """
        self.config = config
        self.rules = rules or RuleManager(
            command=config.firewall.command,
            table=config.firewall.table,
        )
        self.supervisor = supervisor or RelaySupervisor(
            binary=config.relay.binary,
            config_path=config.relay.config_path,
            prefix=config.relay.output_prefix,
        )
        self.state = GatewayState.IDLE
        self.endpoints: Dict[ProxyType, ProxyEndpoint] = {}
        self.mappings: Tuple[PortMapping, ...] = ()
        self.relay_output_ended = False
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # 停止请求

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """信号处理器入口: 只记录停止请求"""
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # 启动

    def prepare(self) -> None:
        """
        解析端点与端口规格

        无副作用；所有输入错误都在修改防火墙之前于此处抛出。

        Raises:
            MissingConfigError: 没有可用的代理
            PortSpecError: 端口规格条目无效
            InvalidConfigError: 端口映射到未配置的代理类型
        """
        self.endpoints = {
            t: resolve_endpoint(t, self.config.proxies.url_for(t))
            for t in ProxyType
        }
        if not self.configured_types():
            raise MissingConfigError("no usable proxy configured")

        self.mappings = parse_port_spec(self.config.port_spec)
        for mapping in self.mappings:
            if not self.endpoints[mapping.proxy_type].configured:
                raise InvalidConfigError(
                    f"port spec entry {mapping} uses a {mapping.proxy_type.value} "
                    "proxy that is not configured"
                )

    def configured_types(self) -> List[ProxyType]:
        """按声明顺序排列的已配置代理类型"""
        return [t for t in ProxyType if t in self.endpoints and self.endpoints[t].configured]

    def relay_config_text(self) -> str:
        return build_relay_config(self.endpoints.values(), self.config.relay)

    async def configure(self) -> None:
        self.state = GatewayState.CONFIGURING
        await write_relay_config(self.config.relay.config_path, self.relay_config_text())

    def _dest_port_rules(self, mapping: PortMapping):
        firewall = self.config.firewall
        yield (firewall.destination, mapping.port, mapping.proxy_type, Hook.OUTPUT, None)
        yield (
            firewall.destination,
            mapping.port,
            mapping.proxy_type,
            Hook.PREROUTING,
            firewall.bridge_interface,
        )

    def install_rules(self) -> None:
        """先安装全部链，再为每个端口映射安装两条规则"""
        for proxy_type in self.configured_types():
            self.rules.install_chain(
                proxy_type,
                self.config.relay.local_port(proxy_type),
                self.config.firewall.skip_cidrs,
            )
        for mapping in self.mappings:
            for rule in self._dest_port_rules(mapping):
                self.rules.install_dest_port_rule(*rule)
        self.state = GatewayState.RULES_INSTALLED

    async def start_relay(self) -> None:
        await self.supervisor.start()
        self.state = GatewayState.RUNNING

    async def setup(self) -> None:
        self.prepare()
        await self.configure()
        with timed(logger, "firewall setup", chains=len(self.configured_types()),
                   ports=len(self.mappings)):
            self.install_rules()
        await self.start_relay()

    # ------------------------------------------------------------------
    # 监控

    async def supervise(self) -> bool:
        """
        转发中继输出，直到输出结束或收到停止请求

        Returns:
            收到停止请求时为 True，中继输出自行结束时为 False
        """
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            while True:
                read_task = asyncio.ensure_future(self.supervisor.read_line())
                await asyncio.wait(
                    {read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if read_task.done():
                    line = read_task.result()
                    if line is None:
                        self.relay_output_ended = True
                        return self._stop_requested
                    self.supervisor.emit(line)
                if stop_task.done():
                    if not read_task.done():
                        # StreamReader 同一时间只允许一个挂起的读取
                        read_task.cancel()
                        await asyncio.wait({read_task})
                    return True
        finally:
            if not stop_task.done():
                stop_task.cancel()

    # ------------------------------------------------------------------
    # 清理

    def remove_rules(self) -> None:
        """先删除规则，再删除它们跳转的链"""
        self.state = GatewayState.CLEANING
        for mapping in self.mappings:
            for rule in self._dest_port_rules(mapping):
                self.rules.remove_dest_port_rule(*rule)
        configured = set(self.configured_types())
        for proxy_type in TEARDOWN_ORDER:
            if proxy_type in configured:
                self.rules.remove_chain(proxy_type)

    def teardown(self, relay_exited: bool = False) -> None:
        """
        清理防火墙状态，然后停止中继

        Args:
            relay_exited: 中继输出已结束，子进程可能已退出，
                仅在仍在运行时发送信号
        """
        with timed(logger, "firewall teardown", ports=len(self.mappings)):
            self.remove_rules()
        if relay_exited and not self.supervisor.running:
            return
        self.supervisor.terminate()

    async def run(self) -> None:
        """
        完整生命周期，从不正常返回

        Raises:
            UnexpectedTerminationError: 清理完成后总是抛出
            GatewayError: 启动或清理中的致命错误
        """
        await self.setup()

        with timed(logger, "relay supervision", pid=self.supervisor.pid):
            stopped = await self.supervise()
        if stopped:
            logger.info("Stop requested, cleaning up")
            self.teardown(relay_exited=self.relay_output_ended)
        else:
            logger.error("Relay output ended unexpectedly, cleaning up")
            self.teardown(relay_exited=True)

        returncode = await self.supervisor.drain()
        self.state = GatewayState.TERMINATED
        raise UnexpectedTerminationError("relay process terminated", returncode)


def dry_run(config: AppConfig, echo: Callable[[str], None] = print) -> List[tuple]:
    """
    打印启动与清理将执行的操作，但不实际执行

    Returns:
        全部防火墙参数向量，启动部分在前
    """
    runner = RecordingRunner()
    gateway = Gateway(
        config,
        rules=RuleManager(config.firewall.command, config.firewall.table, runner=runner),
    )
    gateway.prepare()

    echo(f"# {config.relay.config_path}")
    echo(gateway.relay_config_text())
    echo("# setup")
    gateway.install_rules()
    setup_count = len(runner.commands)
    for args in runner.commands:
        echo(" ".join(args))
    echo(f"# {config.relay.binary} {config.relay.config_path}")
    echo("# teardown")
    gateway.remove_rules()
    for args in runner.commands[setup_count:]:
        echo(" ".join(args))
    return list(runner.commands)


async def run_gateway(
    config: AppConfig,
    rules: Optional[RuleManager] = None,
    supervisor: Optional[RelaySupervisor] = None,
) -> None:
    """
    运行网关，SIGINT/SIGTERM 连接到停止标志

    运行中止时若中继仍存活则将其杀死，致命错误不会留下孤儿中继进程。
    """
    gateway = Gateway(config, rules=rules, supervisor=supervisor)
    loop = asyncio.get_running_loop()
    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, gateway.request_stop)
    try:
        await gateway.run()
    finally:
        for sig in STOP_SIGNALS:
            loop.remove_signal_handler(sig)
        gateway.supervisor.kill()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"{len(gateway.rules.history)} firewall commands issued")


__all__ = [
    "GatewayState",
    "Gateway",
    "dry_run",
    "run_gateway",
]
