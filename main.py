#!/usr/bin/env python3
"""
redsocks-gateway - transparent TCP proxy gateway

NAME
    redsocks-gateway - redirect selected TCP ports through upstream proxies

SYNOPSIS
    redsocks-gateway [--http_proxy URL] [--connect_proxy URL]
                     [--socks4_proxy URL] [--socks5_proxy URL]
                     --port_spec "PORT:TYPE,..." [--rs_log TARGET]
                     [--config FILE] [--verbose] [--dry-run]

DESCRIPTION
    Turns this host (usually a container) into a transparent proxy
    gateway. Connections to the ports listed in the port spec, whether
    they originate on this host (OUTPUT) or are forwarded from the
    bridge interface (PREROUTING), are redirected by iptables to a local
    redsocks listener, which relays them through the upstream proxy of
    the matching type.

    At least one proxy URL is required. TYPE is one of HTTP, CONNECT,
    SOCKS4 or SOCKS5 and must have a proxy configured.

    The gateway runs until it receives SIGINT or SIGTERM. It then
    removes every firewall rule and chain it created, terminates
    redsocks and exits with status 1: redsocks stopping is always
    reported as fatal.

OPTIONS
    --http_proxy URL            HTTP relay proxy (type HTTP)
    --connect_proxy URL         HTTP CONNECT proxy (type CONNECT)
    --https_proxy URL           alias of --connect_proxy
    --socks4_proxy URL          SOCKS4 proxy (type SOCKS4)
    --socks5_proxy URL          SOCKS5 proxy (type SOCKS5)
    --port_spec SPEC            comma-separated PORT:TYPE list
    --rs_log TARGET             redsocks log: stderr, file:PATH or
                                syslog:FACILITY (default stderr);
                                PATH may not contain double quotes,
                                FACILITY is lower-cased
    --config FILE               YAML configuration file
    --log-file FILE             mirror the gateway log to FILE
    --log-json                  write the log file as JSON lines
    --verbose                   show setup and teardown progress
    --dry-run                   print the relay configuration and the
                                firewall commands, change nothing
    --help                      short help
    --man                       this manual

    URLs have the form [scheme://]host:port; the scheme is ignored.

EXAMPLES
    redsocks-gateway --http_proxy http://10.0.0.5:3128 --port_spec 80:HTTP
    redsocks-gateway --socks5_proxy socks5://proxy.local:1080 \\
        --port_spec 443:SOCKS5,8080:SOCKS5

EXIT STATUS
    0 for --help, --man and --dry-run; 2 for usage errors; 1 for every
    fatal error, including the normal end after an interrupt.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from redsocks_gateway.core.config import RELAY_LOG_RE, AppConfig, load_config
from redsocks_gateway.core.errors import ConfigError, GatewayError, describe_error
from redsocks_gateway.core.lifecycle import dry_run, run_gateway
from redsocks_gateway.utils.logger import get_logger, setup_file_logging, setup_main_logger

logger = get_logger("redsocks_gateway.cli")

EXIT_FATAL = 1


class ManAction(argparse.Action):
    """打印完整手册并以 0 退出"""

    def __init__(self, option_strings, dest=argparse.SUPPRESS, default=argparse.SUPPRESS, help=None):
        super().__init__(option_strings, dest=dest, default=default, nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        print(__doc__.strip())
        parser.exit(0)


def rs_log_target(value: str) -> str:
    if not RELAY_LOG_RE.match(value):
        raise argparse.ArgumentTypeError(
            f"invalid log target {value!r}, expected stderr, file:PATH (without quotes) or syslog:FACILITY"
        )
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redsocks-gateway",
        description="Transparent TCP proxy gateway (iptables + redsocks)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  redsocks-gateway --http_proxy http://10.0.0.5:3128 --port_spec 80:HTTP
  redsocks-gateway --socks5_proxy socks5://proxy.local:1080 --port_spec 443:SOCKS5,8080:SOCKS5

see --man for the full manual
        """
    )

    proxies = parser.add_argument_group("upstream proxies")
    proxies.add_argument("--http_proxy", metavar="URL", help="HTTP relay proxy")
    proxies.add_argument(
        "--connect_proxy", "--https_proxy",
        dest="connect_proxy",
        metavar="URL",
        help="HTTP CONNECT proxy",
    )
    proxies.add_argument("--socks4_proxy", metavar="URL", help="SOCKS4 proxy")
    proxies.add_argument("--socks5_proxy", metavar="URL", help="SOCKS5 proxy")

    parser.add_argument(
        "--port_spec",
        metavar="SPEC",
        help='ports to redirect, e.g. "80:HTTP,443:CONNECT"',
    )
    parser.add_argument(
        "--rs_log",
        type=rs_log_target,
        metavar="TARGET",
        help="redsocks log target: stderr, file:PATH or syslog:FACILITY",
    )
    parser.add_argument("--config", "-c", type=Path, help="YAML configuration file")
    parser.add_argument("--log-file", type=Path, help="mirror the log to this file")
    parser.add_argument("--log-json", action="store_true", help="JSON log file")
    parser.add_argument("--verbose", "-v", action="store_true", help="show progress")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="print the relay configuration and firewall commands only",
    )
    parser.add_argument("--man", action=ManAction, help="show the full manual and exit")

    return parser


def configure(argv=None) -> "tuple[AppConfig, argparse.Namespace]":
    """
    解析命令行参数并加载配置

    用法错误在修改任何内容之前以状态码 2 退出。
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(
            config_path=args.config,
            http_proxy=args.http_proxy,
            connect_proxy=args.connect_proxy,
            socks4_proxy=args.socks4_proxy,
            socks5_proxy=args.socks5_proxy,
            port_spec=args.port_spec,
            rs_log=args.rs_log,
            log_file=args.log_file,
            log_json=args.log_json,
            verbose=args.verbose,
        )
    except ConfigError as e:
        parser.error(str(e))

    if not config.proxies.any_given():
        parser.error("at least one of --http_proxy, --connect_proxy, "
                     "--socks4_proxy, --socks5_proxy is required")
    if not config.port_spec.strip():
        parser.error("--port_spec is required")

    return config, args


async def main(argv=None) -> int:
    """主入口"""
    config, args = configure(argv)

    setup_main_logger(config.logging.level)

    try:
        if config.logging.file:
            try:
                setup_file_logging(config.logging.file, json_format=config.logging.json_format)
            except OSError as e:
                raise ConfigError(f"cannot open log file {config.logging.file}", cause=e)
        if args.dry_run:
            dry_run(config)
            return 0
        await run_gateway(config)
    except GatewayError as e:
        logger.error(f"fatal: {describe_error(e)}")
        return EXIT_FATAL

    # run_gateway 只会以异常结束
    logger.error("fatal: gateway stopped")
    return EXIT_FATAL


def run():
    """命令行入口"""
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.error("interrupted before the gateway was running")
        sys.exit(130)


if __name__ == "__main__":
    run()
