"""
Relay process supervisor

Spawns the relay daemon with the configuration path as its only
argument, merges its stderr into stdout and re-emits every output line
with a fixed prefix. The relay is expected to run until it is told to
stop; the end of its output stream means it is gone.
"""

import asyncio
import signal
from pathlib import Path
from typing import Callable, Optional

from ..core.errors import ProcessSpawnError, SignalDeliveryError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# relay log lines can be long when debug logging is on
STREAM_LIMIT = 1024 * 1024


def _print_line(line: str) -> None:
    print(line, flush=True)


class RelaySupervisor:
    """Handle to the relay daemon child process"""

    def __init__(
        self,
        binary: str,
        config_path: Path,
        prefix: str = "redsocks: ",
        sink: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            binary: relay executable
            config_path: configuration file passed as the sole argument
            prefix: prefix added to every re-emitted output line
            sink: receives every prefixed line (default: standard output)
        """
        self.binary = binary
        self.config_path = Path(config_path)
        self.prefix = prefix
        self.sink = sink or _print_line
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def started(self) -> bool:
        return self._process is not None

    @property
    def running(self) -> bool:
        """True until the child has been reaped"""
        return self._process is not None and self._process.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    async def start(self) -> "RelaySupervisor":
        """
        Spawn the relay

        The child gets its own session so a terminal interrupt reaches
        only the gateway, which terminates the child after cleanup.

        Raises:
            ProcessSpawnError: the executable cannot be started
        """
        if self._process is not None:
            raise ProcessSpawnError("relay process already started")

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.binary,
                str(self.config_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessSpawnError(f"cannot start relay {self.binary}", cause=e)

        logger.info(f"Relay started: {self.binary} {self.config_path} (pid {self.pid})")
        return self

    async def read_line(self) -> Optional[str]:
        """
        Next output line without its newline, None at end of stream

        A line longer than STREAM_LIMIT comes back in several pieces.
        """
        if self._process is None or self._process.stdout is None:
            return None
        stream = self._process.stdout
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            line = e.partial
        except asyncio.LimitOverrunError as e:
            # the oversized chunk is still buffered
            line = await stream.read(e.consumed)
        if not line:
            return None
        return line.decode("utf-8", errors="replace").rstrip("\r\n")

    def emit(self, line: str) -> None:
        self.sink(f"{self.prefix}{line}")

    def terminate(self) -> None:
        """
        Send SIGTERM to the relay

        Raises:
            SignalDeliveryError: the child cannot be signalled
        """
        if self._process is None:
            raise SignalDeliveryError("relay process was never started")
        logger.info(f"Terminating relay (pid {self.pid})")
        try:
            self._process.send_signal(signal.SIGTERM)
        except ProcessLookupError as e:
            raise SignalDeliveryError(
                f"cannot signal relay process {self.pid}", cause=e
            )

    def kill(self) -> None:
        """SIGKILL the relay if it is still running"""
        if not self.running:
            return
        logger.warning(f"Killing relay (pid {self.pid})")
        try:
            self._process.kill()
        except ProcessLookupError:
            # already gone
            pass

    async def drain(self) -> Optional[int]:
        """
        Re-emit the remaining output, then wait for the child

        Returns:
            exit status of the relay
        """
        if self._process is None:
            return None
        while True:
            line = await self.read_line()
            if line is None:
                break
            self.emit(line)
        return await self._process.wait()


__all__ = [
    "RelaySupervisor",
]
