"""Kernel dist-git checkout and fedpkg build steps.

This module handles:
- Cloning / updating the Fedora ``kernel`` dist-git repository
- Creating the per-version build branch
- Staging the audio patch and downloading source tarballs
- ``fedpkg prep`` (with detection of the known RPM macro bug)
- ``fedpkg local`` and discovery of the resulting RPMs
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from fedora_kernel_builder.errors import BuildFailed, ResourceUnavailable
from fedora_kernel_builder.resolver import validate_patch, version_key
from fedora_kernel_builder.resources.install import compute_file_hash
from fedora_kernel_builder.specfile import BACKUP_SUFFIX
from fedora_kernel_builder.tools.runner import CommandRunner
from fedora_kernel_builder.types import BuildArtifact

logger = logging.getLogger(__name__)

# Output of `fedpkg prep` when python-rpm-macros is too old
TRANSIENT_PREP_MARKER = "fg: no job control"

KERNEL_PACKAGES = [
    "kernel",
    "kernel-core",
    "kernel-modules",
    "kernel-modules-core",
    "kernel-modules-extra",
    "kernel-devel",
]

BUILD_LOG_TAIL = 200


def build_branch_name(version: str, build_id: str) -> str:
    """Name of the local branch a version is built on."""
    return f"build-{version}-{build_id.lstrip('.') or 'custom'}"


class KernelSourceTree:
    """The Fedora kernel dist-git working tree.

    Args:
        runner: Command runner.
        kernel_dir: Checkout directory (``WORK_DIR/kernel``).
    """

    def __init__(self, runner: CommandRunner, kernel_dir: Path) -> None:
        self.runner = runner
        self.kernel_dir = kernel_dir

    def _git(self, *args: str) -> list[str]:
        return ["git", "-C", str(self.kernel_dir), *args]

    def exists(self) -> bool:
        return (self.kernel_dir / ".git").is_dir()

    def ensure_clone(self) -> None:
        """Clone the repository, or fetch updates for an existing clone.

        Raises:
            ResourceUnavailable: If the clone fails.
        """
        if self.exists():
            logger.info("Kernel directory exists, fetching updates...")
            if not self.runner.run(self._git("fetch", "--all")).ok:
                logger.warning("Failed to fetch kernel repository updates")
            return

        logger.info("Cloning Fedora kernel repository (this may take a while)...")
        self.kernel_dir.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.run(
            ["fedpkg", "clone", "-a", self.kernel_dir.name], cwd=self.kernel_dir.parent
        )
        if not result.ok:
            raise ResourceUnavailable(
                f"Failed to clone kernel repository: {result.tail(5)}"
            )

    def history(self) -> list[str]:
        """``git log --oneline --all`` lines."""
        result = self.runner.run(self._git("log", "--oneline", "--all"))
        if not result.ok:
            raise BuildFailed("Failed to read kernel repository history", diagnostic=result.tail())
        return result.output.splitlines()

    def current_branch(self) -> str | None:
        if not self.exists():
            return None
        result = self.runner.run(self._git("rev-parse", "--abbrev-ref", "HEAD"))
        return result.output.strip() if result.ok else None

    def prepare_build_branch(self, branch: str, commit: str) -> bool:
        """Switch to a fresh build branch at ``commit``.

        Staying on an existing build branch keeps earlier edits so a
        resumed run does not redo them. Switching discards edits from a
        previous build.

        Returns:
            True if the branch was (re)created.
        """
        if self.current_branch() == branch:
            logger.info("Already on build branch %s", branch)
            return False

        # Edits from another build would otherwise follow the checkout
        self.runner.run(self._git("reset", "--hard"))
        (self.kernel_dir / f"kernel.spec{BACKUP_SUFFIX}").unlink(missing_ok=True)

        result = self.runner.run(self._git("checkout", "-B", branch, commit))
        if not result.ok:
            raise BuildFailed(
                f"Failed to create build branch {branch}", diagnostic=result.tail()
            )
        logger.info("Build branch created: %s", branch)
        return True

    def stage_patch(self, patch: Path) -> Path:
        """Copy the patch next to kernel.spec, validating it first."""
        validate_patch(patch)
        dest = self.kernel_dir / patch.name
        if dest.is_file() and compute_file_hash(dest) == compute_file_hash(patch):
            logger.debug("Patch already staged: %s", dest.name)
            return dest
        shutil.copyfile(patch, dest)
        logger.info("Patch copied: %s", dest.name)
        return dest

    def has_sources(self) -> bool:
        return any(self.kernel_dir.glob("*.tar.xz"))

    def fetch_sources(self) -> None:
        """Download source tarballs listed in the ``sources`` file."""
        result = self.runner.run(["fedpkg", "sources"], cwd=self.kernel_dir)
        if not result.ok:
            raise BuildFailed("Failed to download sources", diagnostic=result.tail())
        if not self.has_sources():
            raise BuildFailed("Source tarball not found after fedpkg sources")


class BuildInvoker:
    """Run fedpkg prep/local for a Fedora release.

    Args:
        runner: Command runner.
        kernel_dir: Kernel dist-git checkout.
        rpm_dir: Where ``fedpkg local`` writes binary RPMs.
    """

    def __init__(self, runner: CommandRunner, kernel_dir: Path, rpm_dir: Path) -> None:
        self.runner = runner
        self.kernel_dir = kernel_dir
        self.rpm_dir = rpm_dir

    def prep(self, release: str) -> None:
        """Run ``fedpkg prep`` to validate the patched spec and configs.

        Raises:
            BuildFailed: With ``transient=True`` when the RPM macro bug shows up.
        """
        for stale in self.kernel_dir.glob("kernel-*-build"):
            if stale.is_dir():
                shutil.rmtree(stale)

        result = self.runner.run(
            ["fedpkg", "--release", release, "prep"],
            cwd=self.kernel_dir,
            keep_lines=BUILD_LOG_TAIL,
        )
        if result.ok:
            return
        transient = TRANSIENT_PREP_MARKER in result.output
        if transient:
            logger.warning("Detected '%s' error (known RPM macro bug)", TRANSIENT_PREP_MARKER)
        raise BuildFailed(
            f"fedpkg prep failed (exit {result.returncode})",
            diagnostic=result.tail(),
            transient=transient,
            hint="Check the patch and config changes in the build log",
        )

    def clear_rpms(self) -> int:
        """Remove binary RPMs left in ``rpm_dir`` by an earlier build."""
        if not self.rpm_dir.is_dir():
            return 0
        stale = list(self.rpm_dir.glob("*.rpm"))
        for rpm in stale:
            rpm.unlink()
        if stale:
            logger.info("Removed %d RPM(s) left by a previous build", len(stale))
        return len(stale)

    def build(
        self,
        release: str,
        without: list[str],
        kernel_version: str | None = None,
        build_id: str | None = None,
    ) -> BuildArtifact:
        """Run ``fedpkg local`` and return the built RPMs.

        Raises:
            BuildFailed: If the build fails or produces no kernel RPM.
        """
        cmd = ["fedpkg", "--release", release, "local"]
        for feature in without:
            cmd.extend(["--without", feature])
        logger.info("Build options: %s", " ".join(cmd[4:]) or "(none)")
        logger.info("This will take 1-5 hours depending on your machine...")

        self.clear_rpms()
        result = self.runner.run(cmd, cwd=self.kernel_dir, keep_lines=BUILD_LOG_TAIL)
        if not result.ok:
            raise BuildFailed(
                f"Kernel build failed (exit {result.returncode})",
                diagnostic=result.tail(),
            )
        logger.info("Kernel build completed in %d minutes", int(result.duration // 60))
        return self.find_artifact(kernel_version, build_id)

    def find_artifact(
        self, kernel_version: str | None = None, build_id: str | None = None
    ) -> BuildArtifact:
        """Locate the kernel RPM set in ``rpm_dir``.

        When ``kernel_version`` or ``build_id`` is given only matching RPMs
        count. The newest release wins by numeric version order.

        Raises:
            BuildFailed: If no matching kernel RPM exists.
        """
        releases = []
        if self.rpm_dir.is_dir():
            for rpm in self.rpm_dir.glob("kernel-[0-9]*.rpm"):
                release = rpm.name[len("kernel-") : -len(".rpm")]
                if kernel_version and not release.startswith(f"{kernel_version}-"):
                    continue
                if build_id and f"{build_id}." not in release:
                    continue
                releases.append(release)
        if not releases:
            wanted = " ".join(filter(None, [kernel_version, build_id]))
            raise BuildFailed(
                f"No kernel RPM{' for ' + wanted if wanted else ''} found in {self.rpm_dir}"
            )
        release = max(releases, key=lambda r: (version_key(r), r))
        packages = [
            self.rpm_dir / f"{name}-{release}.rpm"
            for name in KERNEL_PACKAGES
            if (self.rpm_dir / f"{name}-{release}.rpm").is_file()
        ]
        return BuildArtifact(rpm_dir=self.rpm_dir, kernel_release=release, packages=packages)


__all__ = [
    "BUILD_LOG_TAIL",
    "KERNEL_PACKAGES",
    "TRANSIENT_PREP_MARKER",
    "BuildInvoker",
    "KernelSourceTree",
    "build_branch_name",
]
