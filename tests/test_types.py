"""Tests for shared types module."""

from pathlib import Path

from fedora_kernel_builder.types import (
    ConfigMatrixEntry,
    OptionState,
    OutcomeStatus,
    Phase,
    VersionPatchPairing,
    WorkflowOutcome,
)


class TestPhase:
    """Test phase ordering."""

    def test_order(self) -> None:
        assert [p.value for p in Phase.ordered()] == [
            "setup",
            "version_select",
            "patch_select",
            "source_prepare",
            "spec_mutate",
            "config_mutate",
            "build",
            "install",
            "sign",
            "archive",
        ]

    def test_next_and_previous(self) -> None:
        assert Phase.SETUP.next() is Phase.VERSION_SELECT
        assert Phase.ARCHIVE.next() is None
        assert Phase.BUILD.previous() is Phase.CONFIG_MUTATE
        assert Phase.SETUP.previous() is None
        assert Phase.SIGN.index == 8


class TestConfigMatrixEntry:
    """Test config line rendering."""

    def test_enabled(self) -> None:
        entry = ConfigMatrixEntry("x86_64", "CONFIG_SND_HDA_SCODEC_AW88399", OptionState.ENABLED)
        assert entry.render() == "CONFIG_SND_HDA_SCODEC_AW88399=m"
        assert entry.render("y") == "CONFIG_SND_HDA_SCODEC_AW88399=y"

    def test_disabled(self) -> None:
        entry = ConfigMatrixEntry("aarch64", "CONFIG_SND_HDA_SCODEC_AW88399", OptionState.DISABLED)
        assert entry.render() == "# CONFIG_SND_HDA_SCODEC_AW88399 is not set"


def test_pairing_patch_name() -> None:
    pairing = VersionPatchPairing("6.18.7", "a1b2c3d", Path("/r/fix/patches/audio-6.18.patch"))
    assert pairing.patch_name == "audio-6.18.patch"


def test_outcome_suspended() -> None:
    assert WorkflowOutcome(OutcomeStatus.SUSPENDED, "reboot").suspended
    assert not WorkflowOutcome(OutcomeStatus.COMPLETED, "done").suspended
