"""Persisted workflow state.

WorkflowState is the only entity that outlives a process: it records the
last completed phase so a run interrupted by a kill or a reboot can pick
up at the next checkpoint. It is written atomically at phase boundaries
and removed on success or explicit abort.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fedora_kernel_builder.errors import ConfigurationInvalid
from fedora_kernel_builder.types import Phase

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowState(BaseModel):
    """Checkpoint of a workflow run.

    Attributes:
        schema_version: Document format version.
        phase: Last completed phase, or None before Setup completes.
        kernel_version: Selected kernel version, once known.
        timestamp: When the checkpoint was written.
        pending_enrollment: A key is queued for firmware enrollment.
        key_dir: Directory of the key material chosen for signing.
        signing_skipped: Operator chose to build without signing.
        signed: The installed kernel image carries our signature.
        patch_path: Patch selected for the kernel version.
        source_commit: Dist-git commit for the kernel version.
        kernel_release: Release string of the built kernel.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    phase: Phase | None = None
    kernel_version: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    pending_enrollment: bool = False
    key_dir: str | None = None
    signing_skipped: bool = False
    signed: bool = False
    patch_path: str | None = None
    source_commit: str | None = None
    kernel_release: str | None = None

    def advance(self, phase: Phase, **changes: object) -> WorkflowState:
        """Return a copy marking ``phase`` as completed."""
        return self.model_copy(update={"phase": phase, "timestamp": _now(), **changes})

    def next_phase(self) -> Phase | None:
        """Phase to run next; None when every phase is complete."""
        if self.phase is None:
            return Phase.SETUP
        return self.phase.next()


class StateStore:
    """Atomic JSON persistence for WorkflowState.

    Args:
        path: State file location.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> WorkflowState | None:
        """Load the persisted state.

        Returns:
            WorkflowState, or None if nothing is persisted.

        Raises:
            ConfigurationInvalid: If the file is corrupt or from a newer version.
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationInvalid(
                f"Cannot read workflow state {self.path}: {e}",
                hint="Run 'kernel-builder abort' to discard it",
            ) from e

        version = data.get("schema_version", SCHEMA_VERSION) if isinstance(data, dict) else None
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise ConfigurationInvalid(
                f"Workflow state {self.path} has unsupported schema version {version!r}",
                hint="Run 'kernel-builder abort' to discard it",
            )
        try:
            return WorkflowState.model_validate(data)
        except ValidationError as e:
            raise ConfigurationInvalid(
                f"Invalid workflow state {self.path}: {e}",
                hint="Run 'kernel-builder abort' to discard it",
            ) from e

    def save(self, state: WorkflowState) -> None:
        """Persist state atomically (temp file, fsync, rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(
            "Saved workflow state: phase=%s version=%s",
            state.phase.value if state.phase else None,
            state.kernel_version,
        )

    def clear(self) -> bool:
        """Remove persisted state. Returns True if a file was removed."""
        if self.path.exists():
            self.path.unlink()
            logger.debug("Cleared workflow state %s", self.path)
            return True
        return False


__all__ = ["SCHEMA_VERSION", "StateStore", "WorkflowState"]
