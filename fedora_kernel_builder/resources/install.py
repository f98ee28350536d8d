"""Install the firmware blob and UCM2 routing configs onto the system."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from fedora_kernel_builder.errors import InstallFailed
from fedora_kernel_builder.resources.cache import LocalResourceSet
from fedora_kernel_builder.tools.runner import CommandRunner

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024
BACKUP_SUFFIX = ".orig"


def compute_file_hash(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute the SHA-256 of a file."""
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


@dataclass
class InstallReport:
    """What an install pass changed."""

    installed: list[Path] = field(default_factory=list)
    unchanged: list[Path] = field(default_factory=list)
    backed_up: list[Path] = field(default_factory=list)


class ResourceInstaller:
    """Copy resources into system directories.

    Copies go straight through the filesystem when the destination is
    writable and through ``sudo install`` otherwise.

    Args:
        runner: Command runner for privileged copies.
        firmware_dir: Firmware destination (``/lib/firmware``).
        ucm2_dir: UCM2 destination (``/usr/share/alsa/ucm2/HDA``).
    """

    def __init__(self, runner: CommandRunner, firmware_dir: Path, ucm2_dir: Path) -> None:
        self.runner = runner
        self.firmware_dir = firmware_dir
        self.ucm2_dir = ucm2_dir

    def install_firmware(self, resources: LocalResourceSet) -> InstallReport:
        """Install firmware blobs, skipping files whose content is unchanged.

        Raises:
            InstallFailed: If a copy fails.
        """
        report = InstallReport()
        for source in resources.firmware:
            dest = self.firmware_dir / source.name
            if dest.is_file() and compute_file_hash(dest) == compute_file_hash(source):
                logger.info("Firmware %s already installed and up to date", source.name)
                report.unchanged.append(dest)
                continue
            self._copy(source, dest)
            logger.info("Firmware installed: %s", dest)
            report.installed.append(dest)
        return report

    def install_ucm2(self, resources: LocalResourceSet) -> InstallReport:
        """Install UCM2 configs, backing up each original once.

        Raises:
            InstallFailed: If the destination is missing or a copy fails.
        """
        if not self.ucm2_dir.is_dir():
            raise InstallFailed(
                f"UCM2 directory not found: {self.ucm2_dir}",
                hint="Is alsa-ucm installed?",
            )
        report = InstallReport()
        for source in resources.routing_configs:
            dest = self.ucm2_dir / source.name
            backup = dest.with_name(dest.name + BACKUP_SUFFIX)
            if dest.is_file() and not backup.exists():
                self._copy(dest, backup)
                report.backed_up.append(backup)
            if dest.is_file() and compute_file_hash(dest) == compute_file_hash(source):
                report.unchanged.append(dest)
                continue
            self._copy(source, dest)
            logger.info("Installed UCM2 config: %s", source.name)
            report.installed.append(dest)
        return report

    def restore_ucm2(self) -> list[Path]:
        """Move ``.orig`` backups back in place. Returns restored paths."""
        restored: list[Path] = []
        if not self.ucm2_dir.is_dir():
            return restored
        for backup in sorted(self.ucm2_dir.glob(f"*.conf{BACKUP_SUFFIX}")):
            dest = backup.with_name(backup.name[: -len(BACKUP_SUFFIX)])
            if os.access(self.ucm2_dir, os.W_OK):
                os.replace(backup, dest)
            else:
                result = self.runner.run(["mv", "-f", str(backup), str(dest)], sudo=True)
                if not result.ok:
                    raise InstallFailed(f"Failed to restore {dest}: {result.tail(3)}")
            logger.info("Restored: %s", dest.name)
            restored.append(dest)
        return restored

    def firmware_installed(self, resources: LocalResourceSet) -> bool:
        return all((self.firmware_dir / f.name).is_file() for f in resources.firmware)

    def ucm2_customized(self) -> bool:
        return any(self.ucm2_dir.glob(f"*.conf{BACKUP_SUFFIX}"))

    def _copy(self, source: Path, dest: Path) -> None:
        if os.access(dest.parent, os.W_OK):
            try:
                shutil.copyfile(source, dest)
                dest.chmod(0o644)
            except OSError as e:
                raise InstallFailed(f"Failed to copy {source} to {dest}: {e}") from e
            return
        result = self.runner.run(
            ["install", "-m", "0644", str(source), str(dest)], sudo=True
        )
        if not result.ok:
            raise InstallFailed(f"Failed to copy {source} to {dest}: {result.tail(3)}")


__all__ = [
    "InstallReport",
    "ResourceInstaller",
    "compute_file_hash",
]
