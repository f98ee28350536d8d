"""Tests for logging setup."""

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console

from fedora_kernel_builder.logs import PACKAGE_LOGGER, configure_logging, log_file_name


def test_log_file_name() -> None:
    assert log_file_name(datetime(2026, 1, 31, 8, 5, 9)) == "build-2026-01-31-08-05-09.log"


def test_file_log_keeps_debug(tmp_path: Path) -> None:
    console = Console(file=open(tmp_path / "console.txt", "w"))
    log_path = configure_logging("INFO", tmp_path / "logs", console=console)

    logger = logging.getLogger("fedora_kernel_builder.workflow")
    logger.debug("debug detail")
    logger.info("phase started")
    for handler in logging.getLogger(PACKAGE_LOGGER).handlers:
        handler.flush()
    console.file.close()

    assert log_path is not None and log_path.parent == tmp_path / "logs"
    text = log_path.read_text()
    assert text.startswith("# fedora-kernel-builder")
    assert "debug detail" in text
    assert "phase started" in text
    console_text = (tmp_path / "console.txt").read_text()
    assert "phase started" in console_text
    assert "debug detail" not in console_text


def test_reconfigure_replaces_handlers(tmp_path: Path) -> None:
    configure_logging("INFO", tmp_path)
    configure_logging("WARNING", None)

    handlers = logging.getLogger(PACKAGE_LOGGER).handlers
    assert len(handlers) == 1
    assert handlers[0].level == logging.WARNING
