"""Shared fixtures: a scripted command runner and a simulated Fedora host."""

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from fedora_kernel_builder.config import WorkflowConfig
from fedora_kernel_builder.decisions import Choice
from fedora_kernel_builder.errors import ToolMissing
from fedora_kernel_builder.tools.runner import CommandResult, CommandRunner

SPEC_TEXT = """\
# define buildid .local
%define specrpmversion 6.18.7
Name: kernel
Summary: The Linux kernel

Source0: linux-6.18.7.tar.xz

Patch1: patch-6.18-redhat.patch
Patch999999: linux-kernel-test.patch

%prep
ApplyOptionalPatch()
{
  local patch=$1
  shift
}

ApplyOptionalPatch patch-6.18-redhat.patch
ApplyOptionalPatch linux-kernel-test.patch

%build
"""

CONFIG_FILES = [
    "kernel-x86_64-fedora.config",
    "kernel-x86_64-debug-fedora.config",
    "kernel-x86_64-rhel.config",
    "kernel-aarch64-fedora.config",
    "kernel-aarch64-debug-fedora.config",
    "kernel-ppc64le-fedora.config",
    "kernel-s390x-fedora.config",
    "kernel-riscv64-fedora.config",
]

CONFIG_TEXT = """\
# Automatically generated file; DO NOT EDIT.
CONFIG_SND=m
CONFIG_SND_HDA_SCODEC_AW88399=y
# CONFIG_SND_SOC_SOF_INTEL_MTL is not set
CONFIG_SND_HDA_INTEL=m
"""

PATCH_TEXT = """\
From 0000000000000000000000000000000000000000 Mon Sep 17 00:00:00 2001
Subject: [PATCH] ALSA: hda: add AW88399 amplifier support

diff --git a/sound/pci/hda/patch_realtek.c b/sound/pci/hda/patch_realtek.c
--- a/sound/pci/hda/patch_realtek.c
+++ b/sound/pci/hda/patch_realtek.c
@@ -1,3 +1,4 @@
+/* aw88399 */
"""

HISTORY = [
    "a1b2c3d kernel-6.18.7",
    "b2c3d4e kernel-6.18.3",
    "c3d4e5f kernel-6.17.12",
    "d4e5f6a Merge branch 'rawhide'",
]

KERNEL_RELEASE = "6.18.7-200.audio.fc43.x86_64"

RESOURCE_REPO = "16iax10h-linux-sound-saga"


def write_kernel_tree(kernel_dir: Path) -> None:
    """Write a pristine kernel dist-git tree."""
    (kernel_dir / ".git").mkdir(parents=True, exist_ok=True)
    (kernel_dir / "kernel.spec").write_text(SPEC_TEXT)
    for name in CONFIG_FILES:
        (kernel_dir / name).write_text(CONFIG_TEXT)


def write_resource_repo(repo_dir: Path, patches: tuple[str, ...] = ("16iax10h-audio-6.18.patch",)) -> None:
    """Write a resource repository checkout."""
    (repo_dir / ".git").mkdir(parents=True, exist_ok=True)
    patch_dir = repo_dir / "fix" / "patches"
    patch_dir.mkdir(parents=True, exist_ok=True)
    for name in patches:
        (patch_dir / name).write_text(PATCH_TEXT)
    firmware = repo_dir / "fix" / "firmware"
    firmware.mkdir(parents=True, exist_ok=True)
    (firmware / "aw88399_acf.bin").write_bytes(b"\x01\x02firmware")
    ucm2 = repo_dir / "fix" / "ucm2"
    ucm2.mkdir(parents=True, exist_ok=True)
    (ucm2 / "HiFi-analog.conf").write_text("SectionVerb { # patched }\n")
    (ucm2 / "HiFi-mic.conf").write_text("SectionDevice { # patched }\n")


Handler = Callable[[list[str], Path | None], "tuple[int, str] | None"]


@dataclass
class Call:
    """One recorded command."""

    args: list[str]
    cwd: Path | None = None
    sudo: bool = False
    interactive: bool = False
    stdin_text: str | None = None

    @property
    def line(self) -> str:
        return " ".join(self.args)


class FakeRunner(CommandRunner):
    """CommandRunner that records commands and answers from handlers.

    Handlers are matched on the longest argv prefix, after dropping a
    ``sudo`` prefix and git's ``-C <dir>``. Tools listed in ``missing``
    raise ToolMissing like the real runner. Unmatched commands succeed
    with no output.
    """

    def __init__(self, missing: tuple[str, ...] = ()) -> None:
        super().__init__(log_path=None, use_sudo=True)
        self.calls: list[Call] = []
        self.handlers: dict[tuple[str, ...], Handler] = {}
        self.missing = set(missing)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        output: str = "",
        handler: Handler | None = None,
    ) -> None:
        if handler is None:
            self.handlers[prefix] = lambda args, cwd: (returncode, output)
        else:
            self.handlers[prefix] = handler

    def which(self, tool: str) -> str | None:
        return None if tool in self.missing else f"/usr/bin/{tool}"

    def run(
        self,
        args: list[str],
        cwd: Path | None = None,
        sudo: bool = False,
        interactive: bool = False,
        keep_lines: int | None = None,
        stdin_text: str | None = None,
    ) -> CommandResult:
        normalized = list(args)
        if normalized[:1] == ["git"] and normalized[1:2] == ["-C"]:
            normalized = ["git", *normalized[3:]]
        if normalized[0] in self.missing:
            raise ToolMissing(normalized[0])
        self.calls.append(Call(normalized, cwd, sudo, interactive, stdin_text))

        matches = [p for p in self.handlers if tuple(normalized[: len(p)]) == p]
        returncode, output = 0, ""
        if matches:
            answer = self.handlers[max(matches, key=len)](normalized, cwd)
            if answer is not None:
                returncode, output = answer
        full = ["sudo", *args] if sudo else list(args)
        return CommandResult(args=full, returncode=returncode, output=output)

    def ran(self, *prefix: str) -> bool:
        return self.count(*prefix) > 0

    def count(self, *prefix: str) -> int:
        return sum(1 for c in self.calls if tuple(c.args[: len(prefix)]) == prefix)

    def lines(self) -> list[str]:
        return [c.line for c in self.calls]


class ScriptedDecider:
    """Decider answering from queues, falling back to defaults."""

    def __init__(
        self,
        choices: list[str] | None = None,
        paths: list[Path] | None = None,
        confirms: list[bool] | None = None,
    ) -> None:
        self.choices = list(choices or [])
        self.paths = list(paths or [])
        self.confirms = list(confirms or [])
        self.prompts: list[str] = []
        self.offered: list[list[str]] = []

    def choose(self, prompt: str, choices: list[Choice], default: str | None = None) -> str:
        self.prompts.append(prompt)
        keys = [c.key for c in choices]
        self.offered.append(keys)
        if self.choices:
            answer = self.choices.pop(0)
            assert answer in keys, f"{answer!r} not offered in {keys}"
            return answer
        assert default is not None, f"No scripted answer for: {prompt}"
        return default

    def ask_path(self, prompt: str) -> Path:
        self.prompts.append(prompt)
        return self.paths.pop(0)

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.prompts.append(prompt)
        return self.confirms.pop(0) if self.confirms else default


@dataclass
class FakeFedora:
    """Simulated Fedora host wired into a FakeRunner.

    Commands have the file-system effects the workflow checks for: clones
    create trees, ``fedpkg local`` creates RPMs, ``dnf install`` creates the
    kernel image, and so on.
    """

    runner: FakeRunner
    config: WorkflowConfig
    history: list[str] = field(default_factory=lambda: list(HISTORY))
    release: str = KERNEL_RELEASE
    branch: str = "rawhide"
    prep_results: list[tuple[int, str]] = field(default_factory=list)
    build_result: tuple[int, str] = (0, "")
    upgrade_result: int = 0

    def __post_init__(self) -> None:
        r = self.runner
        r.on("git", "clone", handler=self._clone_resources)
        r.on("git", "rev-parse", "--short", "HEAD", output="abc1234\n")
        r.on("git", "rev-parse", "--abbrev-ref", "HEAD", handler=lambda a, c: (0, self.branch + "\n"))
        r.on("git", "checkout", handler=self._checkout)
        r.on("git", "reset", "--hard", handler=self._reset)
        r.on("git", "log", handler=lambda a, c: (0, "\n".join(self.history) + "\n"))
        r.on("fedpkg", "clone", handler=self._clone_kernel)
        r.on("fedpkg", "sources", handler=self._sources)
        r.on("fedpkg", "--release", handler=self._fedpkg)
        r.on("rpm", "-E", output="43\n")
        r.on("dnf", "install", handler=self._dnf_install)
        r.on("dnf", "upgrade", handler=lambda a, c: (self.upgrade_result, ""))
        self.config.ucm2_dir.mkdir(parents=True, exist_ok=True)
        self.config.firmware_dir.mkdir(parents=True, exist_ok=True)
        self.config.boot_dir.mkdir(parents=True, exist_ok=True)
        self.config.modules_dir.mkdir(parents=True, exist_ok=True)
        self.config.fedora_release_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.fedora_release_file.write_text("Fedora release 43 (Forty Three)\n")

    @property
    def kernel_dir(self) -> Path:
        return self.config.kernel_dir

    @property
    def vmlinuz(self) -> Path:
        return self.config.boot_dir / f"vmlinuz-{self.release}"

    def _clone_resources(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        write_resource_repo(Path(args[-1]))
        return 0, ""

    def _clone_kernel(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        assert cwd is not None
        write_kernel_tree(cwd / args[-1])
        return 0, ""

    def _checkout(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        self.branch = args[3] if args[2] == "-B" else args[2]
        return 0, ""

    def _reset(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        write_kernel_tree(self.kernel_dir)
        return 0, ""

    def _sources(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        (self.kernel_dir / "linux-6.18.7.tar.xz").write_bytes(b"tarball")
        return 0, ""

    def _fedpkg(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        if args[3] == "prep":
            return self.prep_results.pop(0) if self.prep_results else (0, "")
        if self.build_result[0] != 0:
            return self.build_result
        rpm_dir = self.config.rpm_dir
        rpm_dir.mkdir(parents=True, exist_ok=True)
        for name in (
            "kernel",
            "kernel-core",
            "kernel-modules",
            "kernel-modules-core",
            "kernel-modules-extra",
            "kernel-devel",
        ):
            (rpm_dir / f"{name}-{self.release}.rpm").write_bytes(b"rpm")
        return 0, ""

    def _dnf_install(self, args: list[str], cwd: Path | None) -> tuple[int, str]:
        if any(a.endswith(f"kernel-core-{self.release}.rpm") for a in args):
            self.vmlinuz.write_bytes(b"MZ kernel image")
            (self.config.modules_dir / self.release).mkdir(parents=True, exist_ok=True)
        return 0, ""


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def config(tmp_path: Path) -> WorkflowConfig:
    """Configuration with every path under tmp_path."""
    root = tmp_path / "root"
    return WorkflowConfig(
        work_dir=tmp_path / "work",
        state_file=tmp_path / "state" / "workflow-state.json",
        db_url="sqlite://",
        boot_dir=root / "boot",
        modules_dir=root / "lib" / "modules",
        firmware_dir=root / "lib" / "firmware",
        ucm2_dir=root / "usr" / "share" / "alsa" / "ucm2" / "HDA",
        grub_config=root / "boot" / "grub2" / "grub.cfg",
        efi_dir=root / "sys" / "firmware" / "efi",
        fedora_release_file=root / "etc" / "fedora-release",
        mok_key_dir=tmp_path / "mok",
        pesign_db=root / "etc" / "pki" / "pesign",
        fedora_release="f43",
        build_id=".audio",
        min_free_space_gb=0,
        enable_signing=False,
    )


@pytest.fixture
def fedora(fake_runner: FakeRunner, config: WorkflowConfig) -> FakeFedora:
    return FakeFedora(fake_runner, config)


@pytest.fixture
def kernel_dir(tmp_path: Path) -> Path:
    path = tmp_path / "kernel"
    write_kernel_tree(path)
    return path


@pytest.fixture
def resource_repo(tmp_path: Path) -> Path:
    path = tmp_path / "resources" / RESOURCE_REPO
    write_resource_repo(path)
    return path


@pytest.fixture(autouse=True)
def reset_package_logger() -> Iterator[None]:
    """Drop handlers the CLI attaches so they do not leak between tests."""
    pkg_logger = logging.getLogger("fedora_kernel_builder")
    handlers, level = list(pkg_logger.handlers), pkg_logger.level
    yield
    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)
