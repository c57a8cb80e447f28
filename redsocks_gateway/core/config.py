"""
配置模型模块

功能:
- 使用 dataclass 集中管理配置
- 支持 YAML 文件加载
- 支持 CLI 参数合并（CLI 优先于文件，文件优先于默认值）
- 在修改防火墙之前完成类型校验
"""

import ipaddress
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..proxy.parser import ProxyType
from .errors import ConfigError, InvalidConfigError, MissingConfigError

# PATH 会写进中继配置的双引号字符串，不能含引号或换行
RELAY_LOG_RE = re.compile(r'^(stderr|file:[^"\r\n]+|syslog:[A-Za-z0-9_]+)$')

DEFAULT_SKIP_CIDRS = [
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "198.18.0.0/15",
    "224.0.0.0/4",
    "240.0.0.0/4",
]


def _default_local_ports() -> Dict[ProxyType, int]:
    return {t: t.default_local_port for t in ProxyType}


def _check_ipv4_network(value: str, name: str) -> None:
    try:
        ipaddress.IPv4Network(value, strict=False)
    except ValueError as e:
        raise InvalidConfigError(f"{name} is not an IPv4 network: {value}", cause=e)


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """取出一个配置段，缺省为空 dict"""
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidConfigError(f"{name} must be a mapping")
    return value


def _text(
    section: Dict[str, Any],
    key: str,
    default: str,
    name: str,
    required: bool = True,
) -> str:
    """
    取出一个字符串配置项

    Args:
        section: 配置段
        key: 键名
        default: 键不存在时的默认值
        name: 错误消息中使用的完整名称
        required: 为 False 时 null 视为空字符串

    Raises:
        MissingConfigError: 必需项显式为 null
        InvalidConfigError: 值不是字符串
    """
    value = section.get(key, default)
    if value is None:
        if required:
            raise MissingConfigError(f"{name} is required")
        return ""
    if not isinstance(value, str):
        raise InvalidConfigError(f"{name} must be a string: {value!r}")
    return value


def _normalize_relay_log(log: str) -> str:
    # syslog 设施名统一为小写
    prefix, sep, facility = log.partition(":")
    if sep and prefix == "syslog":
        return f"syslog:{facility.lower()}"
    return log


@dataclass
class ProxiesConfig:
    """上游代理 URL，每种协议类型一个"""
    http: str = ""
    connect: str = ""
    socks4: str = ""
    socks5: str = ""

    def url_for(self, proxy_type: ProxyType) -> str:
        return getattr(self, proxy_type.value.lower()) or ""

    def any_given(self) -> bool:
        return any(self.url_for(t).strip() for t in ProxyType)


@dataclass
class RelayConfig:
    """中继守护进程配置"""
    binary: str = "redsocks"
    config_path: Path = field(default_factory=lambda: Path("/tmp/redsocks.conf"))
    bind_address: str = "0.0.0.0"
    log: str = "stderr"
    output_prefix: str = "redsocks: "
    local_ports: Dict[ProxyType, int] = field(default_factory=_default_local_ports)

    def __post_init__(self):
        if isinstance(self.config_path, str):
            self.config_path = Path(self.config_path)
        if isinstance(self.log, str):
            self.log = _normalize_relay_log(self.log)

    def local_port(self, proxy_type: ProxyType) -> int:
        return self.local_ports[proxy_type]

    def validate(self) -> None:
        if not self.binary:
            raise MissingConfigError("relay.binary is required")
        if not RELAY_LOG_RE.match(self.log):
            raise InvalidConfigError(
                f"relay.log is invalid: {self.log}, "
                "expected stderr, file:PATH (without quotes) or syslog:FACILITY"
            )
        try:
            ipaddress.IPv4Address(self.bind_address)
        except ValueError as e:
            raise InvalidConfigError(
                f"relay.bind_address is not an IPv4 address: {self.bind_address}",
                cause=e,
            )

        missing = [t.value for t in ProxyType if t not in self.local_ports]
        if missing:
            raise MissingConfigError(f"relay.local_ports missing: {', '.join(missing)}")
        for proxy_type, port in self.local_ports.items():
            if not 1 <= port <= 65535:
                raise InvalidConfigError(
                    f"relay.local_ports.{proxy_type.value} out of range: {port}"
                )
        if len(set(self.local_ports.values())) != len(self.local_ports):
            raise InvalidConfigError("relay.local_ports must be distinct")


@dataclass
class FirewallConfig:
    """防火墙配置"""
    command: str = "iptables"
    table: str = "nat"
    bridge_interface: str = "docker0"
    destination: str = "0.0.0.0/0"
    skip_cidrs: List[str] = field(default_factory=lambda: list(DEFAULT_SKIP_CIDRS))

    def validate(self) -> None:
        if not self.command:
            raise MissingConfigError("firewall.command is required")
        if not self.bridge_interface:
            raise MissingConfigError("firewall.bridge_interface is required")
        _check_ipv4_network(self.destination, "firewall.destination")
        for cidr in self.skip_cidrs:
            _check_ipv4_network(cidr, "firewall.skip_cidrs entry")


@dataclass
class LoggingConfig:
    """日志配置"""
    level: str = "WARNING"
    file: Optional[Path] = None
    json_format: bool = False

    def __post_init__(self):
        if isinstance(self.file, str):
            self.file = Path(self.file)

    def validate(self) -> None:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if not isinstance(self.level, str) or self.level.upper() not in valid_levels:
            raise InvalidConfigError(
                f"logging.level is invalid: {self.level}, valid: {sorted(valid_levels)}"
            )


@dataclass
class AppConfig:
    """应用总配置"""
    proxies: ProxiesConfig = field(default_factory=ProxiesConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    firewall: FirewallConfig = field(default_factory=FirewallConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    port_spec: str = ""
    verbose: bool = False

    def validate(self) -> None:
        """校验所有配置段"""
        self.relay.validate()
        self.firewall.validate()
        self.logging.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """
        从字典创建配置

        Args:
            data: 配置字典（YAML 结构）

        Returns:
            AppConfig 实例

        Raises:
            ConfigError: 某个值的类型不对
        """
        proxies_data = _section(data, "proxies")
        relay_data = _section(data, "relay")
        firewall_data = _section(data, "firewall")
        logging_data = _section(data, "logging")

        local_ports = _default_local_ports()
        local_ports_data = relay_data.get("local_ports") or {}
        if not isinstance(local_ports_data, dict):
            raise InvalidConfigError("relay.local_ports must be a mapping")
        for key, value in local_ports_data.items():
            try:
                proxy_type = ProxyType(str(key).upper())
            except ValueError:
                raise InvalidConfigError(f"relay.local_ports has unknown type: {key}")
            try:
                local_ports[proxy_type] = int(value)
            except (TypeError, ValueError):
                raise InvalidConfigError(
                    f"relay.local_ports.{proxy_type.value} is not a number: {value}"
                )

        skip_cidrs = firewall_data.get("skip_cidrs")
        if skip_cidrs is None:
            skip_cidrs = list(DEFAULT_SKIP_CIDRS)
        elif not isinstance(skip_cidrs, list):
            raise InvalidConfigError("firewall.skip_cidrs must be a list")

        log_file = _text(logging_data, "file", "", "logging.file", required=False)

        return cls(
            proxies=ProxiesConfig(**{
                key: _text(proxies_data, key, "", f"proxies.{key}", required=False)
                for key in ("http", "connect", "socks4", "socks5")
            }),
            relay=RelayConfig(
                binary=_text(relay_data, "binary", "redsocks", "relay.binary"),
                config_path=Path(_text(
                    relay_data, "config_path", "/tmp/redsocks.conf", "relay.config_path"
                )),
                bind_address=_text(relay_data, "bind_address", "0.0.0.0", "relay.bind_address"),
                log=_text(relay_data, "log", "stderr", "relay.log"),
                output_prefix=_text(
                    relay_data, "output_prefix", "redsocks: ", "relay.output_prefix",
                    required=False,
                ),
                local_ports=local_ports,
            ),
            firewall=FirewallConfig(
                command=_text(firewall_data, "command", "iptables", "firewall.command"),
                table=_text(firewall_data, "table", "nat", "firewall.table"),
                bridge_interface=_text(
                    firewall_data, "bridge_interface", "docker0", "firewall.bridge_interface"
                ),
                destination=_text(
                    firewall_data, "destination", "0.0.0.0/0", "firewall.destination"
                ),
                skip_cidrs=[str(c) for c in skip_cidrs],
            ),
            logging=LoggingConfig(
                level=_text(logging_data, "level", "WARNING", "logging.level"),
                file=Path(log_file) if log_file else None,
                json_format=bool(logging_data.get("json_format", False)),
            ),
            port_spec=_text(data, "port_spec", "", "port_spec", required=False),
            verbose=bool(data.get("verbose", False)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "AppConfig":
        """
        从 YAML 文件加载配置

        Raises:
            ConfigError: 文件不存在、无法读取或格式错误
        """
        if not path.exists():
            raise ConfigError(f"config file does not exist: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"YAML parse error in {path}", cause=e)
        except OSError as e:
            raise ConfigError(f"cannot read config file {path}", cause=e)

        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a mapping")

        return cls.from_dict(data)

    @classmethod
    def merge_cli_args(
        cls,
        config: "AppConfig",
        *,
        http_proxy: Optional[str] = None,
        connect_proxy: Optional[str] = None,
        socks4_proxy: Optional[str] = None,
        socks5_proxy: Optional[str] = None,
        port_spec: Optional[str] = None,
        rs_log: Optional[str] = None,
        log_file: Optional[Path] = None,
        log_json: bool = False,
        verbose: bool = False,
    ) -> "AppConfig":
        """
        合并 CLI 参数到配置

        CLI 参数优先级高于配置文件。

        Returns:
            合并后的新配置实例
        """
        data = config.to_dict()
        proxies = data["proxies"]
        if http_proxy is not None:
            proxies["http"] = http_proxy
        if connect_proxy is not None:
            proxies["connect"] = connect_proxy
        if socks4_proxy is not None:
            proxies["socks4"] = socks4_proxy
        if socks5_proxy is not None:
            proxies["socks5"] = socks5_proxy
        if port_spec is not None:
            data["port_spec"] = port_spec
        if rs_log is not None:
            data["relay"]["log"] = rs_log
        if log_file is not None:
            data["logging"]["file"] = str(log_file)
        if log_json:
            data["logging"]["json_format"] = True
        if verbose:
            data["verbose"] = True
            data["logging"]["level"] = "DEBUG"

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """转换为 YAML 结构的字典"""
        return {
            "proxies": {
                "http": self.proxies.http,
                "connect": self.proxies.connect,
                "socks4": self.proxies.socks4,
                "socks5": self.proxies.socks5,
            },
            "relay": {
                "binary": self.relay.binary,
                "config_path": str(self.relay.config_path),
                "bind_address": self.relay.bind_address,
                "log": self.relay.log,
                "output_prefix": self.relay.output_prefix,
                "local_ports": {t.value: p for t, p in self.relay.local_ports.items()},
            },
            "firewall": {
                "command": self.firewall.command,
                "table": self.firewall.table,
                "bridge_interface": self.firewall.bridge_interface,
                "destination": self.firewall.destination,
                "skip_cidrs": list(self.firewall.skip_cidrs),
            },
            "logging": {
                "level": self.logging.level,
                "file": str(self.logging.file) if self.logging.file else None,
                "json_format": self.logging.json_format,
            },
            "port_spec": self.port_spec,
            "verbose": self.verbose,
        }


def load_config(
    config_path: Optional[Path] = None,
    **cli_overrides
) -> AppConfig:
    """
    加载配置（便捷函数）

    Args:
        config_path: YAML 配置文件路径（可选）
        **cli_overrides: CLI 参数，见 AppConfig.merge_cli_args

    Returns:
        校验通过的 AppConfig
    """
    if config_path is not None:
        config = AppConfig.from_yaml(config_path)
    else:
        config = AppConfig()

    if cli_overrides:
        config = AppConfig.merge_cli_args(config, **cli_overrides)

    config.validate()
    return config


__all__ = [
    "RELAY_LOG_RE",
    "DEFAULT_SKIP_CIDRS",
    "ProxiesConfig",
    "RelayConfig",
    "FirewallConfig",
    "LoggingConfig",
    "AppConfig",
    "load_config",
]
