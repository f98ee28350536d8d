"""Kernel version enumeration and patch pairing.

Versions come from tags mentioned in the dist-git history
(``git log --oneline --all``); patches come from the resource mirror.
Everything here is pure: callers feed in history lines and patch paths.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path

from fedora_kernel_builder.errors import NoPatchAvailable, NoVersionsFound
from fedora_kernel_builder.types import VersionPatchPairing

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"(?<![\w.])kernel-(\d+\.\d+\.\d+(?:-\d+)?)")
_PATCH_VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)\.patch$")


def version_key(version: str) -> tuple[int, ...]:
    """Sort key for dotted/dashed numeric versions (6.18.7-200)."""
    return tuple(int(part) for part in re.split(r"[.-]", version) if part.isdigit())


def base_version(version: str) -> str:
    """Strip the package release: 6.18.7-200 -> 6.18.7."""
    return version.split("-", 1)[0]


def series_of(version: str) -> str:
    """Major.minor series of a version: 6.18.7-200 -> 6.18."""
    return ".".join(base_version(version).split(".")[:2])


def patch_version(patch: Path) -> str | None:
    """Kernel version a patch file is named for, if any."""
    match = _PATCH_VERSION_RE.search(patch.name)
    return match.group(1) if match else None


def validate_patch(patch: Path) -> None:
    """Check that a patch file looks like a unified diff.

    Raises:
        NoPatchAvailable: If the file is missing, empty or has no diff header.
    """
    try:
        text = patch.read_text(errors="replace")
    except OSError as e:
        raise NoPatchAvailable(f"Cannot read patch {patch}: {e}") from e
    if not text.strip():
        raise NoPatchAvailable(f"Patch file is empty: {patch.name}")
    if not any(line.startswith("diff ") for line in text.splitlines()):
        raise NoPatchAvailable(f"Patch file has no diff headers: {patch.name}")


class VersionPatchResolver:
    """Enumerate kernel versions and pair them with patches.

    Args:
        history_lines: Output lines of ``git log --oneline --all``.
        patches: Available patch files.
        max_per_series: Versions kept per major.minor series.
    """

    def __init__(
        self,
        history_lines: Iterable[str],
        patches: Iterable[Path],
        max_per_series: int = 5,
    ) -> None:
        self.history_lines = [line for line in history_lines if line.strip()]
        self.patches = list(patches)
        self.max_per_series = max_per_series

    def all_versions(self) -> list[str]:
        """Distinct versions in history, newest first."""
        found = {m.group(1) for line in self.history_lines for m in _TAG_RE.finditer(line)}
        return sorted(found, key=version_key, reverse=True)

    def list_versions(self) -> dict[str, list[str]]:
        """Group versions by series, newest series first.

        Returns:
            Mapping of series (``6.18``) to at most ``max_per_series``
            versions, newest first.

        Raises:
            NoVersionsFound: If history mentions no kernel versions.
        """
        versions = self.all_versions()
        if not versions:
            raise NoVersionsFound(
                "No kernel versions found in source history",
                hint="Make sure the kernel dist-git clone fetched all branches",
            )
        groups: dict[str, list[str]] = {}
        for version in versions:
            bucket = groups.setdefault(series_of(version), [])
            if len(bucket) < self.max_per_series:
                bucket.append(version)
        logger.debug("Found %d versions in %d series", len(versions), len(groups))
        return groups

    def candidate_versions(self) -> list[str]:
        """Flattened ``list_versions`` in display order."""
        return [v for group in self.list_versions().values() for v in group]

    def find_commit(self, version: str) -> str:
        """Return the first history commit mentioning ``kernel-<version>``.

        Raises:
            NoVersionsFound: If no commit mentions the version.
        """
        pattern = re.compile(rf"(?<![\w.])kernel-{re.escape(version)}(?!\d|\.\d)")
        for line in self.history_lines:
            if pattern.search(line):
                return line.split()[0]
        raise NoVersionsFound(f"Commit not found for kernel-{version}")

    def find_patch(self, version: str) -> Path:
        """Select the patch serving ``version``.

        Order: exact full version, then major.minor, then the latest patch
        of the same series.

        Raises:
            NoPatchAvailable: If nothing in the series matches.
        """
        full = base_version(version)
        series = series_of(version)
        named = [(p, patch_version(p)) for p in self.patches]

        for wanted in (full, series):
            for patch, pv in named:
                if pv == wanted:
                    logger.debug("Patch %s matches %s", patch.name, wanted)
                    return patch

        same_series = [(p, pv) for p, pv in named if pv and pv.startswith(series + ".")]
        if same_series:
            patch, _ = max(same_series, key=lambda item: version_key(item[1]))
            logger.info("Using series fallback patch %s for %s", patch.name, version)
            return patch

        available = ", ".join(sorted(p.name for p in self.patches)) or "none"
        raise NoPatchAvailable(
            f"No patch available for kernel {version} (series {series})",
            hint=f"Available patches: {available}",
        )

    def pair(self, version: str) -> VersionPatchPairing:
        """Resolve commit and patch for a chosen version."""
        if not self.history_lines:
            raise NoVersionsFound("Source history is empty")
        patch = self.find_patch(version)
        commit = self.find_commit(version)
        return VersionPatchPairing(
            kernel_version=version, source_commit=commit, patch_path=patch
        )


__all__ = [
    "VersionPatchResolver",
    "base_version",
    "patch_version",
    "series_of",
    "validate_patch",
    "version_key",
]
