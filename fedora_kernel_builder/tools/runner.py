"""Command runner for external tools.

Every external process the workflow spawns (git, fedpkg, dnf, pesign,
mokutil, ...) goes through CommandRunner so that:
- output is appended to the run log with command headers
- privileged commands get a sudo prefix in one place
- a missing executable surfaces as ToolMissing

No timeouts are imposed; a kernel build legitimately takes hours.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections import deque
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, ContextManager

from fedora_kernel_builder.errors import ToolMissing

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        args: Command as executed (including any sudo prefix).
        returncode: Process exit code.
        output: Combined stdout/stderr (possibly only the tail).
        duration: Wall-clock seconds.
    """

    args: list[str]
    returncode: int
    output: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return shlex.join(self.args)

    def tail(self, lines: int = 20) -> str:
        """Return the last lines of output for diagnostics."""
        return "\n".join(self.output.splitlines()[-lines:])


class CommandRunner:
    """Run external commands and log their output.

    Args:
        log_path: Run log to append command output to (None = no log file).
        use_sudo: Whether privileged commands get a ``sudo`` prefix.
    """

    def __init__(self, log_path: Path | None = None, use_sudo: bool = True) -> None:
        self.log_path = log_path
        self.use_sudo = use_sudo

    def which(self, tool: str) -> str | None:
        return shutil.which(tool)

    def has(self, tool: str) -> bool:
        return self.which(tool) is not None

    def run(
        self,
        args: list[str],
        cwd: Path | None = None,
        sudo: bool = False,
        interactive: bool = False,
        keep_lines: int | None = None,
        stdin_text: str | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            args: Command and arguments.
            cwd: Working directory.
            sudo: Run with elevated privileges.
            interactive: Attach the terminal instead of capturing output
                (needed for password prompts such as ``mokutil --import``).
            keep_lines: Only keep this many trailing output lines in memory.
            stdin_text: Text fed to the command on stdin.

        Returns:
            CommandResult; a non-zero exit code is not raised.

        Raises:
            ToolMissing: If the executable does not exist.
        """
        cmd = list(args)
        if sudo and self.use_sudo:
            cmd = ["sudo", *cmd]
        cmd_str = shlex.join(cmd)
        logger.debug("Running: %s (cwd=%s)", cmd_str, cwd)

        started_at = datetime.now(timezone.utc)
        with self._open_log() as log_file:
            if log_file is not None:
                log_file.write(f"\n# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                if cwd is not None:
                    log_file.write(f"# CWD: {cwd}\n")
                log_file.flush()

            try:
                if interactive:
                    returncode = subprocess.run(cmd, cwd=cwd, check=False).returncode
                    output = ""
                else:
                    returncode, output = self._capture(
                        cmd, cwd, log_file, keep_lines, stdin_text
                    )
            except FileNotFoundError as e:
                raise ToolMissing(cmd[0]) from e

            finished_at = datetime.now(timezone.utc)
            duration = (finished_at - started_at).total_seconds()
            if log_file is not None:
                log_file.write(f"# Exit code: {returncode}\n")
                log_file.write(f"# Duration: {duration:.1f}s\n")

        if returncode != 0:
            logger.debug("Command failed with exit code %d: %s", returncode, cmd_str)
        return CommandResult(
            args=cmd, returncode=returncode, output=output, duration=duration
        )

    def _open_log(self) -> ContextManager[IO[str] | None]:
        if self.log_path is None:
            return nullcontext(None)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        return self.log_path.open("a")

    @staticmethod
    def _capture(
        cmd: list[str],
        cwd: Path | None,
        log_file: IO[str] | None,
        keep_lines: int | None,
        stdin_text: str | None = None,
    ) -> tuple[int, str]:
        lines: deque[str] = deque(maxlen=keep_lines)
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
        try:
            if stdin_text is not None:
                assert proc.stdin is not None
                proc.stdin.write(stdin_text)
                proc.stdin.close()
            assert proc.stdout is not None
            for line in proc.stdout:
                lines.append(line)
                if log_file is not None:
                    log_file.write(line)
            proc.wait()
        except KeyboardInterrupt:
            # Only the active external process is aborted
            proc.terminate()
            proc.wait()
            raise
        return proc.returncode, "".join(lines)


__all__ = ["CommandResult", "CommandRunner"]
