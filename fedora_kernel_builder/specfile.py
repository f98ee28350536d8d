"""Idempotent, reversible edits to the kernel.spec build recipe.

Three edits are applied:
- a ``PatchN: <name>`` declaration after the highest-numbered declaration
- an ``ApplyOptionalPatch <name>`` activation after the last activation
- an active ``%define buildid <id>`` directive

Applying twice with the same inputs leaves the document unchanged, and a
pristine ``kernel.spec.orig`` backup is taken before the first edit.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from fedora_kernel_builder.errors import AnchorNotFound

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".orig"

_DECLARATION_RE = re.compile(r"^Patch(\d+):\s*(\S+)")
_ACTIVATION_RE = re.compile(r"^\s*ApplyOptionalPatch\s+(\S+)")
_ACTIVE_BUILDID_RE = re.compile(r"^%define\s+buildid\s+(\S+)")
_COMMENTED_BUILDID_RE = re.compile(r"^#\s*define\s+buildid\b")


@dataclass
class SpecDocument:
    """Ordered-line model of a spec file."""

    lines: list[str]
    trailing_newline: bool = True

    @classmethod
    def parse(cls, text: str) -> SpecDocument:
        return cls(lines=text.splitlines(), trailing_newline=text.endswith("\n"))

    def render(self) -> str:
        text = "\n".join(self.lines)
        return text + "\n" if self.trailing_newline and self.lines else text

    def declarations(self) -> list[tuple[int, int, str]]:
        """(line index, patch number, patch name) for each declaration."""
        found = []
        for index, line in enumerate(self.lines):
            match = _DECLARATION_RE.match(line)
            if match:
                found.append((index, int(match.group(1)), match.group(2)))
        return found

    def activations(self) -> list[tuple[int, str]]:
        """(line index, patch name) for each activation entry.

        The ``ApplyOptionalPatch()`` macro definition does not match.
        """
        found = []
        for index, line in enumerate(self.lines):
            match = _ACTIVATION_RE.match(line)
            if match:
                found.append((index, match.group(1)))
        return found

    def build_id(self) -> str | None:
        """Active build identifier, if any."""
        for line in self.lines:
            match = _ACTIVE_BUILDID_RE.match(line)
            if match:
                return match.group(1)
        return None

    def declare_patch(self, patch_name: str) -> bool:
        """Add a declaration; returns False if already declared."""
        declarations = self.declarations()
        if any(name == patch_name for _, _, name in declarations):
            return False
        if not declarations:
            raise AnchorNotFound(
                "No PatchNNN: declaration found in kernel.spec",
                hint="Expected a line such as 'Patch999999: linux-kernel-test.patch'",
            )
        index, number, _ = max(declarations, key=lambda d: d[1])
        self.lines.insert(index + 1, f"Patch{number + 1}: {patch_name}")
        return True

    def activate_patch(self, patch_name: str) -> bool:
        """Add an activation entry; returns False if already active."""
        activations = self.activations()
        if any(name == patch_name for _, name in activations):
            return False
        if not activations:
            raise AnchorNotFound(
                "No ApplyOptionalPatch entry found in kernel.spec",
                hint="Expected a line such as 'ApplyOptionalPatch linux-kernel-test.patch'",
            )
        index, _ = activations[-1]
        self.lines.insert(index + 1, f"ApplyOptionalPatch {patch_name}")
        return True

    def set_build_id(self, build_id: str) -> bool:
        """Make ``%define buildid <id>`` the active directive."""
        directive = f"%define buildid {build_id}"
        for index, line in enumerate(self.lines):
            match = _ACTIVE_BUILDID_RE.match(line)
            if match:
                if match.group(1) == build_id:
                    return False
                self.lines[index] = directive
                return True
        for index, line in enumerate(self.lines):
            if _COMMENTED_BUILDID_RE.match(line):
                self.lines[index] = directive
                return True
        logger.warning("No buildid directive found, adding one at the top of kernel.spec")
        self.lines.insert(0, directive)
        return True


@dataclass
class SpecEditResult:
    """Outcome of SpecMutator.apply."""

    path: Path
    changes: list[str] = field(default_factory=list)
    backup_created: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)


@dataclass
class SpecSummary:
    """Tail of the declaration and activation sections plus the build id."""

    declarations: list[str]
    activations: list[str]
    build_id: str | None


class SpecMutator:
    """Apply and revert the patch edits on a kernel.spec file.

    Args:
        path: Path to kernel.spec.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.backup_path = path.with_name(path.name + BACKUP_SUFFIX)

    def _load(self) -> SpecDocument:
        if not self.path.is_file():
            raise AnchorNotFound(f"kernel.spec not found: {self.path}")
        return SpecDocument.parse(self.path.read_text())

    def _edit(self, doc: SpecDocument, patch_name: str, build_id: str) -> list[str]:
        changes = []
        if doc.declare_patch(patch_name):
            changes.append(f"declared {patch_name}")
        if doc.activate_patch(patch_name):
            changes.append(f"activated {patch_name}")
        if doc.set_build_id(build_id):
            changes.append(f"buildid {build_id}")
        return changes

    def apply(self, patch_name: str, build_id: str) -> SpecEditResult:
        """Apply all three edits.

        The file is only written, and the backup only taken, when at least
        one edit is needed.

        Raises:
            AnchorNotFound: If the file or a required anchor is missing.
        """
        doc = self._load()
        result = SpecEditResult(path=self.path)
        result.changes = self._edit(doc, patch_name, build_id)
        if not result.changed:
            logger.info("kernel.spec already carries %s with buildid %s", patch_name, build_id)
            return result

        if not self.backup_path.exists():
            shutil.copy2(self.path, self.backup_path)
            result.backup_created = True
            logger.debug("Backup created: %s", self.backup_path)
        self.path.write_text(doc.render())
        for change in result.changes:
            logger.info("kernel.spec: %s", change)
        return result

    def is_applied(self, patch_name: str, build_id: str) -> bool:
        """Whether ``apply`` would make no change."""
        try:
            doc = self._load()
            return not self._edit(doc, patch_name, build_id)
        except AnchorNotFound:
            return False

    def restore(self) -> bool:
        """Move the pristine backup back in place. Returns False if none exists."""
        if not self.backup_path.exists():
            logger.warning("No backup found for %s", self.path)
            return False
        shutil.move(str(self.backup_path), str(self.path))
        logger.info("kernel.spec restored from backup")
        return True

    def summary(self, count: int = 3) -> SpecSummary:
        doc = self._load()
        return SpecSummary(
            declarations=[doc.lines[i] for i, _, _ in doc.declarations()[-count:]],
            activations=[doc.lines[i].strip() for i, _ in doc.activations()[-count:]],
            build_id=doc.build_id(),
        )


__all__ = ["SpecDocument", "SpecEditResult", "SpecMutator", "SpecSummary"]
