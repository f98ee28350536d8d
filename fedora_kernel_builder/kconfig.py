"""Toggle the managed audio options across the kernel config matrix.

The Fedora kernel dist-git carries one ``kernel-<arch>[-variant]-<flavor>.config``
file per architecture and variant. Every managed option must end up declared
exactly once per file: ``OPTION=m`` on enabled architectures and
``# OPTION is not set`` everywhere else. The kernel's config processing
rejects duplicates, so a violation is fatal.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from fedora_kernel_builder.errors import DuplicateOrConflictingOption
from fedora_kernel_builder.types import ConfigMatrixEntry, OptionState

logger = logging.getLogger(__name__)

CONFIG_GLOB = "kernel-*.config"


def config_architecture(path: Path) -> str:
    """Architecture encoded in a config file name.

    ``kernel-x86_64-debug-fedora.config`` -> ``x86_64``
    """
    stem = path.name
    if stem.endswith(".config"):
        stem = stem[: -len(".config")]
    if stem.startswith("kernel-"):
        stem = stem[len("kernel-") :]
    return stem.split("-", 1)[0]


@dataclass
class ConfigMatrixResult:
    """Outcome of a mutation pass.

    Attributes:
        files: Every config file processed.
        changed: Files whose content was rewritten.
        entries: Desired state for every (file architecture, option) pair.
    """

    files: list[Path] = field(default_factory=list)
    changed: list[Path] = field(default_factory=list)
    entries: list[ConfigMatrixEntry] = field(default_factory=list)


class ConfigMatrixMutator:
    """Rewrite managed options in every kernel config file.

    Args:
        options: Managed option names.
        enable_architectures: Architectures that get the options enabled.
        value: Value written for enabled options.
        block_comment: Header line written above the managed block.
    """

    def __init__(
        self,
        options: list[str],
        enable_architectures: list[str],
        value: str = "m",
        block_comment: str = "# Audio fix for Awinic AW88399",
    ) -> None:
        self.options = list(options)
        self.enable_architectures = set(enable_architectures)
        self.value = value
        self.block_comment = block_comment
        names = "|".join(re.escape(o) for o in self.options)
        self._managed_re = re.compile(rf"^\s*(?:#\s*)?({names})(?:=|\s+is not set\b)")

    def config_files(self, kernel_dir: Path) -> list[Path]:
        return sorted(p for p in kernel_dir.glob(CONFIG_GLOB) if p.is_file())

    def entries_for(self, path: Path) -> list[ConfigMatrixEntry]:
        """Desired entries for one config file."""
        arch = config_architecture(path)
        state = (
            OptionState.ENABLED
            if arch in self.enable_architectures
            else OptionState.DISABLED
        )
        return [ConfigMatrixEntry(arch, option, state) for option in self.options]

    def render_file(self, path: Path, text: str) -> str:
        """Return ``text`` with the managed block rewritten."""
        kept = [
            line
            for line in text.splitlines()
            if not self._managed_re.match(line) and line.strip() != self.block_comment
        ]
        while kept and not kept[-1].strip():
            kept.pop()
        block = [self.block_comment] + [
            entry.render(self.value) for entry in self.entries_for(path)
        ]
        lines = kept + [""] + block if kept else block
        return "\n".join(lines) + "\n"

    def apply(self, kernel_dir: Path) -> ConfigMatrixResult:
        """Mutate and verify every config file under ``kernel_dir``.

        Raises:
            DuplicateOrConflictingOption: If verification fails afterwards,
                or no config files exist.
        """
        result = ConfigMatrixResult(files=self.config_files(kernel_dir))
        if not result.files:
            raise DuplicateOrConflictingOption(
                f"No {CONFIG_GLOB} files found in {kernel_dir}"
            )
        for path in result.files:
            text = path.read_text()
            new_text = self.render_file(path, text)
            result.entries.extend(self.entries_for(path))
            if new_text != text:
                path.write_text(new_text)
                result.changed.append(path)
        logger.info(
            "Config matrix: %d files, %d rewritten", len(result.files), len(result.changed)
        )
        self.verify(kernel_dir)
        return result

    def problems(self, kernel_dir: Path) -> list[str]:
        """List every duplicate, missing or wrong-form managed option."""
        found: list[str] = []
        files = self.config_files(kernel_dir)
        if not files:
            return [f"no {CONFIG_GLOB} files in {kernel_dir}"]
        for path in files:
            lines = path.read_text().splitlines()
            for entry in self.entries_for(path):
                expected = entry.render(self.value)
                mentions = [
                    line
                    for line in lines
                    if (m := self._managed_re.match(line)) and m.group(1) == entry.option_name
                ]
                if len(mentions) != 1:
                    found.append(
                        f"{path.name}: {entry.option_name} declared {len(mentions)} times"
                    )
                elif mentions[0].strip() != expected:
                    found.append(
                        f"{path.name}: {entry.option_name} is {mentions[0].strip()!r}, "
                        f"expected {expected!r}"
                    )
        return found

    def verify(self, kernel_dir: Path) -> None:
        """Raise if any file violates the one-declaration rule."""
        problems = self.problems(kernel_dir)
        if problems:
            raise DuplicateOrConflictingOption(
                f"Config matrix verification failed: {'; '.join(problems[:5])}"
                + (f" (+{len(problems) - 5} more)" if len(problems) > 5 else "")
            )

    def is_consistent(self, kernel_dir: Path) -> bool:
        return not self.problems(kernel_dir)


__all__ = [
    "CONFIG_GLOB",
    "ConfigMatrixMutator",
    "ConfigMatrixResult",
    "config_architecture",
]
