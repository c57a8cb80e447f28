"""
Tests for the gateway lifecycle: setup, supervision and ordered teardown.
"""
import asyncio
import os
import signal

import pytest

from redsocks_gateway.core.errors import (
    ExternalCommandError,
    InvalidConfigError,
    MissingConfigError,
    PortSpecError,
    ProcessSpawnError,
    UnexpectedTerminationError,
)
from redsocks_gateway.core.lifecycle import Gateway, GatewayState, dry_run, run_gateway
from redsocks_gateway.firewall.rules import RuleManager
from redsocks_gateway.proxy.parser import ProxyType
from redsocks_gateway.relay.supervisor import RelaySupervisor

from conftest import FakeRunner

OUTPUT_80 = ("-A", "OUTPUT", "-p", "tcp", "-d", "0.0.0.0/0", "--dport", "80", "-j", "REDSOCKS_HTTP")
PREROUTING_80 = (
    "-A", "PREROUTING", "-i", "docker0", "-p", "tcp", "-d", "0.0.0.0/0",
    "--dport", "80", "-j", "REDSOCKS_HTTP",
)


def _gateway(config, runner, binary="redsocks", sink=None):
    rules = RuleManager(config.firewall.command, config.firewall.table, runner=runner)
    supervisor = RelaySupervisor(binary, config.relay.config_path, sink=sink)
    return Gateway(config, rules=rules, supervisor=supervisor)


async def _wait_for(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


def test_scenario_a_setup(make_config):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    runner = FakeRunner()
    gateway = _gateway(config, runner)

    gateway.prepare()
    asyncio.run(gateway.configure())
    gateway.install_rules()

    assert gateway.state is GatewayState.RULES_INSTALLED
    assert runner.verbs() == [
        ("-N", "REDSOCKS_HTTP"),
        ("-A", "REDSOCKS_HTTP", "-d", "10.0.0.0/8", "-j", "RETURN"),
        ("-A", "REDSOCKS_HTTP", "-d", "127.0.0.0/8", "-j", "RETURN"),
        ("-A", "REDSOCKS_HTTP", "-p", "tcp", "-j", "REDIRECT", "--to-ports", "12345"),
        OUTPUT_80,
        PREROUTING_80,
    ]
    text = config.relay.config_path.read_text()
    assert text.count("redsocks {") == 1
    assert "ip = 10.0.0.5;" in text
    assert "port = 3128;" in text
    assert "type = http-relay;" in text


def test_scenario_c_two_ports_one_chain(make_config):
    config = make_config(
        socks5_proxy="socks5://proxy.local:1080",
        port_spec="443:SOCKS5,8080:SOCKS5",
    )
    runner = FakeRunner()
    gateway = _gateway(config, runner)
    gateway.prepare()
    gateway.install_rules()

    verbs = runner.verbs()
    assert [v for v in verbs if v[0] == "-N"] == [("-N", "REDSOCKS_SOCKS5")]
    dest_rules = [v for v in verbs if v[1] in ("OUTPUT", "PREROUTING")]
    assert [(v[1], v[v.index("--dport") + 1]) for v in dest_rules] == [
        ("OUTPUT", "443"), ("PREROUTING", "443"),
        ("OUTPUT", "8080"), ("PREROUTING", "8080"),
    ]
    assert gateway.relay_config_text().count("type = socks5;") == 1


def test_teardown_removes_rules_before_chains(make_config):
    config = make_config(
        http_proxy="http://10.0.0.5:3128",
        connect_proxy="http://10.0.0.6:8080",
        socks5_proxy="socks5://10.0.0.7:1080",
        port_spec="1080:SOCKS5,80:HTTP,443:CONNECT",
    )
    runner = FakeRunner()
    gateway = _gateway(config, runner)
    gateway.prepare()
    gateway.install_rules()
    installed = len(runner.commands)
    gateway.remove_rules()

    removed = runner.verbs()[installed:]
    assert [(v[0], v[1]) for v in removed] == [
        ("-D", "OUTPUT"), ("-D", "PREROUTING"),
        ("-D", "OUTPUT"), ("-D", "PREROUTING"),
        ("-D", "OUTPUT"), ("-D", "PREROUTING"),
        ("-F", "REDSOCKS_CONNECT"), ("-X", "REDSOCKS_CONNECT"),
        ("-F", "REDSOCKS_HTTP"), ("-X", "REDSOCKS_HTTP"),
        ("-F", "REDSOCKS_SOCKS5"), ("-X", "REDSOCKS_SOCKS5"),
    ]
    # setup used declaration order for chains
    assert [v[1] for v in runner.verbs()[:installed] if v[0] == "-N"] == [
        "REDSOCKS_HTTP", "REDSOCKS_CONNECT", "REDSOCKS_SOCKS5",
    ]
    assert gateway.state is GatewayState.CLEANING


def test_scenario_d_interrupt_cleanup_order(make_config, relay_script):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    events = []
    runner = FakeRunner(events=events)
    gateway = _gateway(
        config, runner, binary=str(relay_script),
        sink=lambda line: events.append(("relay", line)),
    )

    async def scenario():
        task = asyncio.ensure_future(gateway.run())
        await _wait_for(lambda: ("relay", "redsocks: listening") in events)
        assert gateway.state is GatewayState.RUNNING
        gateway.request_stop()
        with pytest.raises(UnexpectedTerminationError) as exc_info:
            await task
        return exc_info.value

    error = asyncio.run(scenario())
    assert error.returncode == 0
    assert gateway.state is GatewayState.TERMINATED

    assert events[0][0] == "fw"
    assert ("relay", "redsocks: config base {") in events
    teardown = events[events.index(("relay", "redsocks: listening")) + 1:]
    assert teardown == [
        ("fw", "-D") + OUTPUT_80[1:],
        ("fw", "-D") + PREROUTING_80[1:],
        ("fw", "-F", "REDSOCKS_HTTP"),
        ("fw", "-X", "REDSOCKS_HTTP"),
        ("relay", "redsocks: stopping"),
    ]


def test_relay_exit_without_interrupt_is_fatal_and_cleans_up(make_config, crashing_relay_script):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    runner = FakeRunner()
    lines = []
    gateway = _gateway(config, runner, binary=str(crashing_relay_script), sink=lines.append)

    with pytest.raises(UnexpectedTerminationError) as exc_info:
        asyncio.run(gateway.run())

    assert exc_info.value.returncode == 3
    assert lines == ["redsocks: cannot bind"]
    assert runner.verbs()[-2:] == [("-F", "REDSOCKS_HTTP"), ("-X", "REDSOCKS_HTTP")]
    assert not gateway.stop_requested


def test_overlong_relay_line_still_tears_down(make_config, overlong_relay_script):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    runner = FakeRunner()
    lines = []
    gateway = _gateway(config, runner, binary=str(overlong_relay_script), sink=lines.append)

    with pytest.raises(UnexpectedTerminationError):
        asyncio.run(gateway.run())

    assert lines[-1] == "redsocks: after"
    assert runner.verbs()[-4:] == [
        ("-D",) + OUTPUT_80[1:],
        ("-D",) + PREROUTING_80[1:],
        ("-F", "REDSOCKS_HTTP"),
        ("-X", "REDSOCKS_HTTP"),
    ]


def test_stop_requested_during_setup_still_tears_down(make_config, relay_script):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    runner = FakeRunner()
    gateway = _gateway(config, runner, binary=str(relay_script), sink=lambda line: None)
    gateway.request_stop()

    with pytest.raises(UnexpectedTerminationError):
        asyncio.run(gateway.run())
    assert runner.verbs()[-1] == ("-X", "REDSOCKS_HTTP")


def test_scenario_e_invalid_entry_installs_nothing(make_config):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP,abc:HTTP")
    runner = FakeRunner()
    gateway = _gateway(config, runner)

    with pytest.raises(PortSpecError):
        asyncio.run(gateway.setup())
    assert runner.commands == []
    assert not config.relay.config_path.exists()


def test_port_mapped_to_unconfigured_proxy(make_config):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP,1080:SOCKS5")
    gateway = _gateway(config, FakeRunner())
    with pytest.raises(InvalidConfigError):
        gateway.prepare()


def test_all_proxies_malformed(make_config):
    config = make_config(http_proxy="garbage", port_spec="80:HTTP")
    gateway = _gateway(config, FakeRunner())
    with pytest.raises(MissingConfigError):
        gateway.prepare()


def test_setup_failure_is_not_rolled_back(make_config):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    runner = FakeRunner(fail_when=lambda args: "PREROUTING" in args)
    gateway = _gateway(config, runner)

    with pytest.raises(ExternalCommandError):
        asyncio.run(gateway.setup())
    assert runner.verbs()[-2:] == [OUTPUT_80, PREROUTING_80]
    assert not any(v[0] in ("-D", "-F", "-X") for v in runner.verbs())
    assert gateway.state is GatewayState.CONFIGURING
    assert not gateway.supervisor.started


def test_teardown_failure_aborts_remaining_steps(make_config):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP,8080:HTTP")
    runner = FakeRunner(fail_when=lambda args: args[3] == "-D" and "8080" in args)
    gateway = _gateway(config, runner)
    gateway.prepare()
    gateway.install_rules()

    with pytest.raises(ExternalCommandError):
        gateway.teardown()
    removed = [v for v in runner.verbs() if v[0] in ("-D", "-F", "-X")]
    assert [(v[0], v[1], v[-3]) for v in removed] == [
        ("-D", "OUTPUT", "80"), ("-D", "PREROUTING", "80"), ("-D", "OUTPUT", "8080"),
    ]


def test_spawn_failure_leaves_rules_installed(make_config, tmp_path):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    runner = FakeRunner()
    gateway = _gateway(config, runner, binary=str(tmp_path / "missing-redsocks"))

    with pytest.raises(ProcessSpawnError):
        asyncio.run(gateway.run())
    assert gateway.state is GatewayState.RULES_INSTALLED
    assert runner.verbs()[-1] == PREROUTING_80


def test_run_gateway_handles_sigint(make_config, relay_script):
    config = make_config(http_proxy="http://10.0.0.5:3128", port_spec="80:HTTP")
    config.relay.binary = str(relay_script)
    runner = FakeRunner()
    lines = []
    rules = RuleManager(runner=runner)
    supervisor = RelaySupervisor(config.relay.binary, config.relay.config_path, sink=lines.append)

    async def scenario():
        task = asyncio.ensure_future(run_gateway(config, rules=rules, supervisor=supervisor))
        await _wait_for(lambda: "redsocks: listening" in lines)
        os.kill(os.getpid(), signal.SIGINT)
        with pytest.raises(UnexpectedTerminationError):
            await task

    asyncio.run(scenario())
    assert lines[-1] == "redsocks: stopping"
    assert runner.verbs()[-1] == ("-X", "REDSOCKS_HTTP")
    assert not supervisor.running


def test_dry_run_prints_without_mutating(make_config):
    config = make_config(
        connect_proxy="http://10.0.0.6:8080",
        port_spec="443:CONNECT",
    )
    out = []
    commands = dry_run(config, echo=out.append)

    assert not config.relay.config_path.exists()
    assert commands[0] == ("iptables", "-t", "nat", "-N", "REDSOCKS_CONNECT")
    assert commands[-1] == ("iptables", "-t", "nat", "-X", "REDSOCKS_CONNECT")
    text = "\n".join(out)
    assert "type = http-connect;" in text
    assert "# teardown" in text
    assert ProxyType.CONNECT.chain in text
