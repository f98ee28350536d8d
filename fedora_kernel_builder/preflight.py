"""System checks run before building."""

from __future__ import annotations

import getpass
import logging
import shutil
from pathlib import Path

from fedora_kernel_builder.decisions import Decider
from fedora_kernel_builder.errors import ConfigurationInvalid, OperatorCancelled, ToolMissing
from fedora_kernel_builder.tools.runner import CommandRunner

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ["git", "fedpkg", "rpmbuild", "dnf"]
OPTIONAL_TOOLS = ["pesign", "mokutil", "sbverify", "certutil"]

PESIGN_USERS_FILE = Path("/etc/pesign/users")
PESIGN_AUTHORIZE = "/usr/libexec/pesign/pesign-authorize"

GIB = 1024**3


def check_fedora(release_file: Path) -> None:
    """Raise ConfigurationInvalid unless running on Fedora."""
    if not release_file.is_file():
        raise ConfigurationInvalid(
            "This tool must run on Fedora", hint=f"{release_file} not found"
        )
    logger.info("%s", release_file.read_text().strip())


def detect_fedora_release(runner: CommandRunner, configured: str | None = None) -> str:
    """Return the dist-git branch name (``f43``) for this system."""
    if configured:
        logger.info("Using configured Fedora release: %s", configured)
        return configured
    result = runner.run(["rpm", "-E", "%fedora"])
    version = result.output.strip()
    if not result.ok or not version.isdigit():
        raise ConfigurationInvalid(
            "Failed to detect Fedora release", hint="Set fedora_release (e.g. f43)"
        )
    logger.info("Auto-detected Fedora release: f%s", version)
    return f"f{version}"


def free_space_gb(path: Path) -> int:
    """Free space in GiB on the filesystem holding ``path`` (or its nearest parent)."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    return shutil.disk_usage(existing).free // GIB


def check_disk_space(work_dir: Path, required_gb: int, decider: Decider) -> int:
    """Warn and ask to continue when free space is below ``required_gb``.

    Raises:
        OperatorCancelled: If the operator declines to continue.
    """
    available = free_space_gb(work_dir)
    if available < required_gb:
        logger.warning(
            "Low disk space: %dGB available, %dGB recommended", available, required_gb
        )
        if not decider.confirm("Continue anyway?", default=False):
            raise OperatorCancelled("Cancelled because of low disk space")
    else:
        logger.info("Disk space OK: %dGB available", available)
    return available


def check_required_tools(runner: CommandRunner, tools: list[str] | None = None) -> None:
    """Raise ToolMissing for the first required tool not on PATH."""
    for tool in tools or REQUIRED_TOOLS:
        if not runner.has(tool):
            raise ToolMissing(tool, hint="Run setup to install build dependencies")
    logger.info("All required tools present")


def tool_report(runner: CommandRunner) -> dict[str, bool]:
    """Presence of every required and optional tool."""
    return {tool: runner.has(tool) for tool in REQUIRED_TOOLS + OPTIONAL_TOOLS}


def setup_pesign_user(runner: CommandRunner, users_file: Path = PESIGN_USERS_FILE) -> bool:
    """Authorize the current user for pesign. Failures are only warnings."""
    user = getpass.getuser()
    listed = users_file.is_file() and user in users_file.read_text().split()
    if not listed:
        logger.info("Adding %s to pesign users...", user)
        result = runner.run(["tee", "-a", str(users_file)], sudo=True, stdin_text=f"{user}\n")
        if not result.ok:
            logger.warning("Could not add %s to %s", user, users_file)
    result = runner.run([PESIGN_AUTHORIZE], sudo=True)
    if result.ok:
        logger.info("Pesign configured for user %s", user)
    else:
        logger.warning("Pesign authorization may have issues (often safe to ignore)")
    return result.ok


__all__ = [
    "OPTIONAL_TOOLS",
    "REQUIRED_TOOLS",
    "check_disk_space",
    "check_fedora",
    "check_required_tools",
    "detect_fedora_release",
    "free_space_gb",
    "setup_pesign_user",
    "tool_report",
]
