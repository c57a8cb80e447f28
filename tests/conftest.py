"""
Pytest configuration and fixtures.
"""
import stat
import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from redsocks_gateway.core.config import AppConfig
from redsocks_gateway.firewall.command import CommandResult
from redsocks_gateway.firewall.rules import RuleManager


class FakeRunner:
    """
    Records firewall argument vectors instead of running them.

    ``fail_when`` picks the command that returns a nonzero status.
    ``events`` may be shared with other fakes to check global ordering.
    """

    def __init__(self, fail_when: Optional[Callable[[tuple], bool]] = None, events: Optional[list] = None):
        self.commands: List[tuple] = []
        self.fail_when = fail_when
        self.events = events if events is not None else []

    def __call__(self, args):
        args = tuple(args)
        self.commands.append(args)
        self.events.append(("fw",) + args[3:])
        if self.fail_when and self.fail_when(args):
            return CommandResult(args, 1, "iptables: Too many links.\n")
        return CommandResult(args, 0, "")

    def verbs(self):
        """Commands without the 'iptables -t nat' prefix"""
        return [c[3:] for c in self.commands]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def rule_manager(fake_runner):
    return RuleManager(command="iptables", table="nat", runner=fake_runner)


@pytest.fixture
def make_config(tmp_path):
    """Build a validated AppConfig from CLI-style overrides."""
    def _make(**overrides):
        config = AppConfig.merge_cli_args(AppConfig(), **overrides)
        config.relay.config_path = tmp_path / "redsocks.conf"
        config.firewall.skip_cidrs = ["10.0.0.0/8", "127.0.0.0/8"]
        config.validate()
        return config
    return _make


RELAY_SCRIPT = """
import signal
import sys
import time

def stop(signum, frame):
    print("stopping", flush=True)
    sys.exit(0)

signal.signal(signal.SIGTERM, stop)
with open(sys.argv[1]) as f:
    print("config " + f.readline().strip(), flush=True)
sys.stderr.write("listening\\n")
sys.stderr.flush()
while True:
    time.sleep(0.05)
"""

CRASHING_RELAY_SCRIPT = """
import sys
print("cannot bind", flush=True)
sys.exit(3)
"""


# longer than the relay stream limit (1 MiB)
OVERLONG_LINE_BYTES = 2 * 1024 * 1024

OVERLONG_RELAY_SCRIPT = f"""
import sys
sys.stdout.write("x" * {OVERLONG_LINE_BYTES} + "\\n")
print("after", flush=True)
"""


def _write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def relay_script(tmp_path):
    """Executable fake relay that runs until SIGTERM."""
    return _write_script(tmp_path / "fake-redsocks", RELAY_SCRIPT)


@pytest.fixture
def crashing_relay_script(tmp_path):
    """Executable fake relay that exits on its own."""
    return _write_script(tmp_path / "crashing-redsocks", CRASHING_RELAY_SCRIPT)


@pytest.fixture
def overlong_relay_script(tmp_path):
    """Executable fake relay that prints one line past the stream limit, then exits."""
    return _write_script(tmp_path / "overlong-redsocks", OVERLONG_RELAY_SCRIPT)
