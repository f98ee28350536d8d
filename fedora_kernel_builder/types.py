"""Shared type definitions for fedora_kernel_builder.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Phase(str, Enum):
    """Workflow phases, in execution order."""

    SETUP = "setup"
    VERSION_SELECT = "version_select"
    PATCH_SELECT = "patch_select"
    SOURCE_PREPARE = "source_prepare"
    SPEC_MUTATE = "spec_mutate"
    CONFIG_MUTATE = "config_mutate"
    BUILD = "build"
    INSTALL = "install"
    SIGN = "sign"
    ARCHIVE = "archive"

    @classmethod
    def ordered(cls) -> list[Phase]:
        return list(cls)

    @property
    def index(self) -> int:
        return Phase.ordered().index(self)

    def next(self) -> Phase | None:
        """Return the phase after this one, or None for the last phase."""
        phases = Phase.ordered()
        position = phases.index(self)
        if position + 1 < len(phases):
            return phases[position + 1]
        return None

    def previous(self) -> Phase | None:
        """Return the phase before this one, or None for the first phase."""
        position = Phase.ordered().index(self)
        return Phase.ordered()[position - 1] if position > 0 else None


class OptionState(str, Enum):
    """Desired state of a managed kernel config option."""

    ENABLED = "enabled"
    DISABLED = "disabled"


class OutcomeStatus(str, Enum):
    """Terminal status of a workflow invocation."""

    COMPLETED = "completed"
    SUSPENDED = "suspended"


class RunStatus(str, Enum):
    """Status recorded in the build history."""

    SUCCEEDED = "succeeded"
    SUSPENDED = "suspended"
    FAILED = "failed"


@dataclass(frozen=True)
class VersionPatchPairing:
    """A kernel version paired with the commit and patch that serve it."""

    kernel_version: str
    source_commit: str
    patch_path: Path

    @property
    def patch_name(self) -> str:
        return self.patch_path.name


@dataclass(frozen=True)
class ConfigMatrixEntry:
    """Desired state of one managed option in one config file."""

    architecture: str
    option_name: str
    state: OptionState

    def render(self, value: str = "m") -> str:
        """Render the entry as a config line."""
        if self.state is OptionState.ENABLED:
            return f"{self.option_name}={value}"
        return f"# {self.option_name} is not set"


@dataclass
class BuildArtifact:
    """RPM output of a kernel build.

    Attributes:
        rpm_dir: Directory holding the built RPMs.
        kernel_release: Installed kernel release (``uname -r`` form).
        packages: RPM files belonging to this build.
        vmlinuz: Installed kernel image, set once the Install phase ran.
    """

    rpm_dir: Path
    kernel_release: str
    packages: list[Path] = field(default_factory=list)
    vmlinuz: Path | None = None


@dataclass
class WorkflowOutcome:
    """Result of a workflow invocation."""

    status: OutcomeStatus
    message: str
    kernel_version: str | None = None
    artifact: BuildArtifact | None = None
    signed: bool = False
    archive_path: Path | None = None
    executed: list[Phase] = field(default_factory=list)

    @property
    def suspended(self) -> bool:
        return self.status is OutcomeStatus.SUSPENDED


__all__ = [
    "BuildArtifact",
    "ConfigMatrixEntry",
    "OptionState",
    "OutcomeStatus",
    "Phase",
    "RunStatus",
    "VersionPatchPairing",
    "WorkflowOutcome",
]
