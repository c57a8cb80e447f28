"""
防火墙外部命令接口

每条命令执行完毕后才开始下一条，合并捕获 stdout/stderr 与退出码。
"""

import shlex
import subprocess
from dataclasses import dataclass, field
from typing import List, Sequence

from ..utils.logger import get_logger

logger = get_logger(__name__)

# 命令本身无法执行时报告的退出码
EXEC_FAILED = 127


@dataclass(frozen=True)
class CommandResult:
    """单条外部命令的结果"""
    args: tuple
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.args)


class CommandRunner:
    """通过 subprocess 逐条执行防火墙命令"""

    def __call__(self, args: Sequence[str]) -> CommandResult:
        args = tuple(str(a) for a in args)
        logger.debug(f"$ {shlex.join(args)}")
        try:
            proc = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as e:
            return CommandResult(args, EXEC_FAILED, str(e))
        return CommandResult(args, proc.returncode, proc.stdout or "")


@dataclass
class RecordingRunner:
    """
    只记录、不执行命令的 runner

    用于 --dry-run，所有命令都视为成功。
    """
    commands: List[tuple] = field(default_factory=list)

    def __call__(self, args: Sequence[str]) -> CommandResult:
        args = tuple(str(a) for a in args)
        self.commands.append(args)
        return CommandResult(args, 0, "")


__all__ = [
    "EXEC_FAILED",
    "CommandResult",
    "CommandRunner",
    "RecordingRunner",
]
