"""Tests for kernel.spec editing."""

from pathlib import Path

import pytest

from conftest import SPEC_TEXT
from fedora_kernel_builder.errors import AnchorNotFound
from fedora_kernel_builder.specfile import SpecDocument, SpecMutator

PATCH = "16iax10h-audio-6.18.patch"


class TestSpecDocument:
    """Tests for the line model."""

    def test_parse_render_round_trip(self) -> None:
        assert SpecDocument.parse(SPEC_TEXT).render() == SPEC_TEXT

    def test_missing_trailing_newline_preserved(self) -> None:
        text = "Patch1: a.patch\nApplyOptionalPatch a.patch"
        assert SpecDocument.parse(text).render() == text

    def test_declarations_and_activations(self) -> None:
        doc = SpecDocument.parse(SPEC_TEXT)

        assert [(n, name) for _, n, name in doc.declarations()] == [
            (1, "patch-6.18-redhat.patch"),
            (999999, "linux-kernel-test.patch"),
        ]
        # The ApplyOptionalPatch() macro definition is not an activation
        assert [name for _, name in doc.activations()] == [
            "patch-6.18-redhat.patch",
            "linux-kernel-test.patch",
        ]
        assert doc.build_id() is None

    def test_declare_uses_next_number_after_highest(self) -> None:
        doc = SpecDocument.parse(SPEC_TEXT)

        assert doc.declare_patch(PATCH) is True
        index = doc.lines.index("Patch999999: linux-kernel-test.patch")
        assert doc.lines[index + 1] == f"Patch1000000: {PATCH}"

    def test_declare_is_idempotent(self) -> None:
        doc = SpecDocument.parse(SPEC_TEXT)
        doc.declare_patch(PATCH)
        assert doc.declare_patch(PATCH) is False

    def test_activate_after_last_activation(self) -> None:
        doc = SpecDocument.parse(SPEC_TEXT)

        assert doc.activate_patch(PATCH) is True
        index = doc.lines.index("ApplyOptionalPatch linux-kernel-test.patch")
        assert doc.lines[index + 1] == f"ApplyOptionalPatch {PATCH}"

    def test_missing_declaration_anchor(self) -> None:
        doc = SpecDocument.parse("Name: kernel\nApplyOptionalPatch a.patch\n")
        with pytest.raises(AnchorNotFound):
            doc.declare_patch(PATCH)

    def test_missing_activation_anchor(self) -> None:
        doc = SpecDocument.parse("Name: kernel\nPatch1: a.patch\n")
        with pytest.raises(AnchorNotFound):
            doc.activate_patch(PATCH)

    def test_build_id_replaces_commented_default(self) -> None:
        doc = SpecDocument.parse(SPEC_TEXT)

        assert doc.set_build_id(".audio") is True
        assert doc.lines[0] == "%define buildid .audio"
        assert doc.build_id() == ".audio"
        assert doc.set_build_id(".audio") is False

    def test_build_id_replaces_stale_active_directive(self) -> None:
        doc = SpecDocument.parse("%define buildid .old\nName: kernel\n")

        assert doc.set_build_id(".audio") is True
        assert doc.lines == ["%define buildid .audio", "Name: kernel"]

    def test_build_id_prepended_when_absent(self) -> None:
        doc = SpecDocument.parse("Name: kernel\n")
        doc.set_build_id(".audio")
        assert doc.lines[0] == "%define buildid .audio"


class TestSpecMutator:
    """Tests for SpecMutator."""

    def test_apply_adds_one_declaration_and_one_activation(self, kernel_dir: Path) -> None:
        spec = kernel_dir / "kernel.spec"
        result = SpecMutator(spec).apply(PATCH, ".audio")

        text = spec.read_text()
        assert result.changed
        assert result.backup_created
        assert text.count(f"Patch1000000: {PATCH}") == 1
        assert text.count(f"ApplyOptionalPatch {PATCH}") == 1
        assert "%define buildid .audio" in text
        assert "# define buildid .local" not in text
        assert (kernel_dir / "kernel.spec.orig").read_text() == SPEC_TEXT

    def test_apply_twice_is_idempotent(self, kernel_dir: Path) -> None:
        spec = kernel_dir / "kernel.spec"
        mutator = SpecMutator(spec)
        mutator.apply(PATCH, ".audio")
        once = spec.read_text()

        second = mutator.apply(PATCH, ".audio")

        assert not second.changed
        assert not second.backup_created
        assert spec.read_text() == once
        assert mutator.is_applied(PATCH, ".audio")

    def test_backup_taken_only_once(self, kernel_dir: Path) -> None:
        spec = kernel_dir / "kernel.spec"
        mutator = SpecMutator(spec)
        mutator.apply(PATCH, ".audio")
        mutator.apply(PATCH, ".other")

        assert (kernel_dir / "kernel.spec.orig").read_text() == SPEC_TEXT
        assert "%define buildid .other" in spec.read_text()

    def test_is_applied_false_before_apply(self, kernel_dir: Path) -> None:
        assert SpecMutator(kernel_dir / "kernel.spec").is_applied(PATCH, ".audio") is False

    def test_missing_spec(self, tmp_path: Path) -> None:
        mutator = SpecMutator(tmp_path / "kernel.spec")
        with pytest.raises(AnchorNotFound):
            mutator.apply(PATCH, ".audio")
        assert mutator.is_applied(PATCH, ".audio") is False

    def test_failed_edit_leaves_file_untouched(self, tmp_path: Path) -> None:
        spec = tmp_path / "kernel.spec"
        spec.write_text("Name: kernel\nPatch1: a.patch\n")

        with pytest.raises(AnchorNotFound):
            SpecMutator(spec).apply(PATCH, ".audio")
        assert spec.read_text() == "Name: kernel\nPatch1: a.patch\n"
        assert not (tmp_path / "kernel.spec.orig").exists()

    def test_restore(self, kernel_dir: Path) -> None:
        spec = kernel_dir / "kernel.spec"
        mutator = SpecMutator(spec)
        mutator.apply(PATCH, ".audio")

        assert mutator.restore() is True
        assert spec.read_text() == SPEC_TEXT
        assert mutator.restore() is False

    def test_summary(self, kernel_dir: Path) -> None:
        mutator = SpecMutator(kernel_dir / "kernel.spec")
        mutator.apply(PATCH, ".audio")

        summary = mutator.summary(count=2)
        assert summary.declarations[-1] == f"Patch1000000: {PATCH}"
        assert summary.activations[-1] == f"ApplyOptionalPatch {PATCH}"
        assert summary.build_id == ".audio"
