"""Local mirror of the audio fix resource repository.

The upstream repository carries three artifact categories:
- fix/patches/*.patch       kernel patches, one per kernel series
- fix/firmware/*            the AW88399 amplifier firmware blob
- fix/ucm2/*.conf           ALSA UCM2 routing configs

The mirror is fast-forwarded when possible; on divergence or any pull
failure it is discarded and cloned fresh rather than merged.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from fedora_kernel_builder.errors import IncompleteResourceBundle, ResourceUnavailable
from fedora_kernel_builder.tools.runner import CommandRunner

logger = logging.getLogger(__name__)

PATCHES_SUBDIR = Path("fix") / "patches"
FIRMWARE_SUBDIR = Path("fix") / "firmware"
UCM2_SUBDIR = Path("fix") / "ucm2"


@dataclass
class LocalResourceSet:
    """Verified contents of the resource mirror.

    Attributes:
        root: Mirror checkout directory.
        patches: Available kernel patches.
        firmware: Firmware blobs.
        routing_configs: UCM2 routing config files.
        commit: Mirror HEAD commit, if known.
    """

    root: Path
    patches: list[Path] = field(default_factory=list)
    firmware: list[Path] = field(default_factory=list)
    routing_configs: list[Path] = field(default_factory=list)
    commit: str | None = None


def repo_dir_name(url: str) -> str:
    """Derive the checkout directory name from a repository URL."""
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or "resources"


class ResourceCache:
    """Fetch and verify the resource repository.

    Args:
        runner: Command runner used for git.
        cache_dir: Directory holding the mirror.
        repo_url: Upstream repository URL.
    """

    def __init__(self, runner: CommandRunner, cache_dir: Path, repo_url: str) -> None:
        self.runner = runner
        self.cache_dir = cache_dir
        self.repo_url = repo_url
        self.repo_dir = cache_dir / repo_dir_name(repo_url)

    def ensure(self) -> LocalResourceSet:
        """Bring the mirror up to date and verify it.

        Returns:
            LocalResourceSet describing the verified mirror.

        Raises:
            ResourceUnavailable: If the repository cannot be cloned.
            IncompleteResourceBundle: If an artifact category is empty.
        """
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        if (self.repo_dir / ".git").is_dir():
            logger.info("Updating resource repository %s", self.repo_dir)
            result = self.runner.run(["git", "-C", str(self.repo_dir), "pull", "--ff-only"])
            if result.ok:
                logger.info("Resource repository updated")
                return self.current()
            logger.warning("Pull failed, discarding mirror and cloning fresh")
            shutil.rmtree(self.repo_dir)
        elif self.repo_dir.exists():
            logger.warning("%s is not a git checkout, replacing it", self.repo_dir)
            shutil.rmtree(self.repo_dir)

        logger.info("Cloning resource repository %s", self.repo_url)
        result = self.runner.run(
            ["git", "clone", "--depth", "1", self.repo_url, str(self.repo_dir)]
        )
        if not result.ok:
            raise ResourceUnavailable(
                f"Failed to clone {self.repo_url}: {result.tail(5)}",
                hint="Check network access and the AUDIO_FIX_REPO setting",
            )
        return self.current()

    def current(self) -> LocalResourceSet:
        """Verify the existing mirror without fetching.

        Raises:
            IncompleteResourceBundle: If the mirror is absent or incomplete.
        """
        resources = LocalResourceSet(
            root=self.repo_dir,
            patches=_glob(self.repo_dir / PATCHES_SUBDIR, "*.patch"),
            firmware=_glob(self.repo_dir / FIRMWARE_SUBDIR, "*"),
            routing_configs=_glob(self.repo_dir / UCM2_SUBDIR, "*.conf"),
        )
        missing = []
        if not resources.patches:
            missing.append(f"{PATCHES_SUBDIR}/*.patch")
        if not resources.firmware:
            missing.append(f"{FIRMWARE_SUBDIR}/*")
        if not resources.routing_configs:
            missing.append(f"{UCM2_SUBDIR}/*.conf")
        if missing:
            raise IncompleteResourceBundle(missing)

        resources.commit = self._head_commit()
        logger.info(
            "Resources: %d patches, %d firmware files, %d UCM2 configs (commit %s)",
            len(resources.patches),
            len(resources.firmware),
            len(resources.routing_configs),
            resources.commit or "unknown",
        )
        return resources

    def _head_commit(self) -> str | None:
        result = self.runner.run(
            ["git", "-C", str(self.repo_dir), "rev-parse", "--short", "HEAD"]
        )
        if not result.ok:
            return None
        return result.output.strip() or None


def _glob(directory: Path, pattern: str) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


__all__ = [
    "FIRMWARE_SUBDIR",
    "PATCHES_SUBDIR",
    "UCM2_SUBDIR",
    "LocalResourceSet",
    "ResourceCache",
    "repo_dir_name",
]
