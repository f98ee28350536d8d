"""dnf / rpm package operations."""

from __future__ import annotations

import logging
from pathlib import Path

from fedora_kernel_builder.errors import InstallFailed
from fedora_kernel_builder.tools.runner import CommandRunner

logger = logging.getLogger(__name__)

BUILD_DEPENDENCIES = [
    "fedpkg",
    "fedora-packager",
    "rpm-build",
    "koji",
    "git",
    "wget",
    "curl",
    "pesign",
    "sbsigntools",
    "mokutil",
    "openssl",
    "nss-tools",
    "grubby",
    "dracut",
    "ccache",
]

# Packages renamed across Fedora releases
PACKAGE_ALTERNATIVES = {"wget": "wget2-wget"}

RPM_MACRO_PACKAGES = [
    "python-rpm-macros",
    "python3-rpm-macros",
    "python3-devel",
    "rpm-build",
]


class PackageInstaller:
    """Query and install system packages.

    Args:
        runner: Command runner.
    """

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def is_installed(self, package: str) -> bool:
        return self.runner.run(["rpm", "-q", package]).ok

    def missing(self, packages: list[str]) -> list[str]:
        """Packages not installed under their name or a known alternative."""
        missing = []
        for package in packages:
            if self.is_installed(package):
                continue
            alternative = PACKAGE_ALTERNATIVES.get(package)
            if alternative and self.is_installed(alternative):
                logger.debug("%s provided by %s", package, alternative)
                continue
            missing.append(package)
        return missing

    def install(self, packages: list[str] | list[Path]) -> None:
        """Install packages or local RPM files with dnf.

        Raises:
            InstallFailed: If dnf fails.
        """
        if not packages:
            return
        names = [str(p) for p in packages]
        logger.info("Installing: %s", " ".join(Path(n).name for n in names))
        result = self.runner.run(["dnf", "install", "-y", *names], sudo=True)
        if not result.ok:
            raise InstallFailed(
                f"dnf install failed (exit {result.returncode})",
                hint=result.tail(10),
            )

    def ensure(self, packages: list[str]) -> list[str]:
        """Install whatever is missing. Returns the packages installed."""
        missing = self.missing(packages)
        logger.info(
            "Packages: %d installed, %d missing",
            len(packages) - len(missing),
            len(missing),
        )
        self.install(missing)
        return missing

    def upgrade(self, packages: list[str]) -> bool:
        """Upgrade packages to the latest available version."""
        result = self.runner.run(["dnf", "upgrade", "-y", *packages], sudo=True)
        if not result.ok:
            logger.warning("Could not upgrade %s", " ".join(packages))
        return result.ok

    def builddep(self, spec_path: Path) -> bool:
        """Install build dependencies of a spec file."""
        result = self.runner.run(
            ["dnf", "builddep", "-y", spec_path.name], cwd=spec_path.parent, sudo=True
        )
        if not result.ok:
            logger.warning("Failed to install some build dependencies (may already be installed)")
        return result.ok

    def set_default_kernel(self, vmlinuz: Path) -> bool:
        result = self.runner.run(["grubby", f"--set-default={vmlinuz}"], sudo=True)
        if result.ok:
            logger.info("Default kernel set to %s", vmlinuz)
        else:
            logger.warning("grubby failed to set default kernel: %s", result.tail(3))
        return result.ok


__all__ = [
    "BUILD_DEPENDENCIES",
    "PACKAGE_ALTERNATIVES",
    "RPM_MACRO_PACKAGES",
    "PackageInstaller",
]
