"""Logging setup for CLI invocations.

Console output goes through rich; everything, including the output of
external commands written by CommandRunner, also lands in a timestamped
log file under the configured log directory.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from fedora_kernel_builder import __version__

PACKAGE_LOGGER = "fedora_kernel_builder"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def log_file_name(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d-%H-%M-%S")
    return f"build-{stamp}.log"


def configure_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    console: Console | None = None,
) -> Path | None:
    """Attach console and file handlers to the package logger.

    Calling it again replaces the handlers from the previous call.

    Args:
        level: Log level name.
        log_dir: Directory for the run log; None disables the file.
        console: Console the rich handler writes to.

    Returns:
        Path of the run log, if one was created.
    """
    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
        handler.close()
    pkg_logger.setLevel(level)

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    rich_handler.setLevel(level)
    pkg_logger.addHandler(rich_handler)

    if log_dir is None:
        return None

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_file_name()
    with log_path.open("w") as f:
        f.write(f"# fedora-kernel-builder {__version__}\n")
        f.write(f"# Started: {datetime.now().isoformat()}\n")

    file_handler = logging.FileHandler(log_path, mode="a")
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    # The file keeps debug detail regardless of the console level
    file_handler.setLevel(logging.DEBUG)
    pkg_logger.addHandler(file_handler)
    pkg_logger.setLevel(logging.DEBUG)
    return log_path


__all__ = ["configure_logging", "log_file_name"]
