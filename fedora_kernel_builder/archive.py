"""Archive built kernel RPMs and clean up the build tree.

Archives are ``kernel-<release>-rpms.tar.gz`` files whose members live
under ``archive/``, so extracting one yields a directory ready for
``dnf install archive/*.rpm``.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path

from fedora_kernel_builder.decisions import Decider
from fedora_kernel_builder.errors import ArchiveError
from fedora_kernel_builder.types import BuildArtifact

logger = logging.getLogger(__name__)

ARCHIVE_MEMBER_DIR = "archive"


def archive_name(kernel_release: str) -> str:
    return f"kernel-{kernel_release}-rpms.tar.gz"


@dataclass
class ArchiveInfo:
    """An RPM archive on disk."""

    path: Path
    size_bytes: int

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class CleanupOutcome:
    """Result of an archive-and-clean pass."""

    archive_path: Path | None
    removed: bool


class Archiver:
    """Create, list and restore RPM archives; remove the build tree.

    Args:
        archive_dir: Directory holding archives.
        decider: Asked before anything is deleted.
    """

    def __init__(self, archive_dir: Path, decider: Decider) -> None:
        self.archive_dir = archive_dir
        self.decider = decider

    def archive(self, artifact: BuildArtifact) -> Path:
        """Write the artifact's RPMs to a tar.gz archive.

        Raises:
            ArchiveError: If there is nothing to archive or writing fails.
        """
        packages = [p for p in artifact.packages if p.is_file()]
        if not packages:
            raise ArchiveError(f"No RPMs to archive in {artifact.rpm_dir}")

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        path = self.archive_dir / archive_name(artifact.kernel_release)
        tmp_path = path.with_name(path.name + ".part")
        try:
            with tarfile.open(tmp_path, "w:gz") as tar:
                for package in packages:
                    tar.add(package, arcname=f"{ARCHIVE_MEMBER_DIR}/{package.name}")
                    logger.info("  + %s", package.name)
            tmp_path.replace(path)
        except (OSError, tarfile.TarError) as e:
            tmp_path.unlink(missing_ok=True)
            raise ArchiveError(f"Failed to create archive {path}: {e}") from e

        logger.info(
            "Archive created: %s (%d RPMs, %.1f MiB)",
            path,
            len(packages),
            path.stat().st_size / (1024 * 1024),
        )
        return path

    def remove_build_tree(self, kernel_dir: Path) -> bool:
        """Delete the kernel checkout after confirmation.

        Returns:
            Whether the tree was removed.
        """
        if not kernel_dir.exists():
            logger.info("Directory not found, skipping: %s", kernel_dir)
            return False
        logger.warning("This will permanently delete %s", kernel_dir)
        if not self.decider.confirm(f"Remove {kernel_dir}?", default=False):
            logger.info("Cleanup cancelled by user")
            return False
        shutil.rmtree(kernel_dir)
        logger.info("Removed: %s", kernel_dir)
        return True

    def archive_and_clean(
        self,
        artifact: BuildArtifact,
        kernel_dir: Path,
        archive_rpms: bool = True,
    ) -> CleanupOutcome:
        """Archive RPMs, then remove the build tree.

        The tree is preserved when archiving fails.
        """
        archive_path: Path | None = None
        if archive_rpms:
            try:
                archive_path = self.archive(artifact)
            except ArchiveError as e:
                logger.warning("%s; skipping cleanup, build directory preserved", e)
                return CleanupOutcome(archive_path=None, removed=False)
        else:
            logger.warning("Build directory will be removed without archiving RPMs!")
        removed = self.remove_build_tree(kernel_dir)
        return CleanupOutcome(archive_path=archive_path, removed=removed)

    def list_archives(self) -> list[ArchiveInfo]:
        if not self.archive_dir.is_dir():
            return []
        return [
            ArchiveInfo(path=p, size_bytes=p.stat().st_size)
            for p in sorted(self.archive_dir.glob("kernel-*-rpms.tar.gz"))
        ]

    def restore(self, name: str, dest_dir: Path) -> Path:
        """Extract an archive into ``dest_dir``.

        Returns:
            Directory containing the extracted RPMs.

        Raises:
            ArchiveError: If the archive is missing or unreadable.
        """
        path = self.archive_dir / name
        if not path.is_file():
            available = ", ".join(a.name for a in self.list_archives()) or "none"
            raise ArchiveError(f"Archive not found: {path}", hint=f"Available: {available}")
        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(path, "r:gz") as tar:
                tar.extractall(dest_dir, filter="data")
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(f"Failed to extract {path}: {e}") from e
        extracted = dest_dir / ARCHIVE_MEMBER_DIR
        logger.info("Archive extracted to %s", extracted)
        return extracted


__all__ = [
    "ARCHIVE_MEMBER_DIR",
    "ArchiveInfo",
    "Archiver",
    "CleanupOutcome",
    "archive_name",
]
