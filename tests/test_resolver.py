"""Tests for version enumeration and patch pairing."""

from pathlib import Path

import pytest

from fedora_kernel_builder.errors import NoPatchAvailable, NoVersionsFound
from fedora_kernel_builder.resolver import (
    VersionPatchResolver,
    base_version,
    patch_version,
    series_of,
    validate_patch,
    version_key,
)


def _patches(tmp_path: Path, *names: str) -> list[Path]:
    paths = []
    for name in names:
        path = tmp_path / name
        path.write_text("diff --git a/x b/x\n")
        paths.append(path)
    return paths


class TestVersionHelpers:
    """Tests for version string helpers."""

    def test_version_key_orders_numerically(self) -> None:
        versions = ["6.9.1", "6.18.3", "6.18.12", "6.18.7-200"]
        assert sorted(versions, key=version_key) == ["6.9.1", "6.18.3", "6.18.7-200", "6.18.12"]

    def test_base_version_and_series(self) -> None:
        assert base_version("6.18.7-200") == "6.18.7"
        assert series_of("6.18.7-200") == "6.18"
        assert series_of("6.18") == "6.18"

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("16iax10h-audio-6.18.patch", "6.18"),
            ("audio-fix-6.18.7.patch", "6.18.7"),
            ("README.patch", None),
        ],
    )
    def test_patch_version(self, name: str, expected: str | None) -> None:
        assert patch_version(Path(name)) == expected


class TestValidatePatch:
    """Tests for validate_patch."""

    def test_valid_patch(self, tmp_path: Path) -> None:
        (patch,) = _patches(tmp_path, "fix-6.18.patch")
        validate_patch(patch)

    def test_empty_patch(self, tmp_path: Path) -> None:
        patch = tmp_path / "fix-6.18.patch"
        patch.write_text("  \n")
        with pytest.raises(NoPatchAvailable, match="empty"):
            validate_patch(patch)

    def test_patch_without_diff_header(self, tmp_path: Path) -> None:
        patch = tmp_path / "fix-6.18.patch"
        patch.write_text("<html>404 Not Found</html>\n")
        with pytest.raises(NoPatchAvailable, match="no diff headers"):
            validate_patch(patch)

    def test_missing_patch(self, tmp_path: Path) -> None:
        with pytest.raises(NoPatchAvailable):
            validate_patch(tmp_path / "absent.patch")


class TestListVersions:
    """Tests for version enumeration from history."""

    def test_groups_by_series_newest_first(self) -> None:
        history = [
            "aaa1111 kernel-6.17.12-300",
            "bbb2222 kernel-6.18.3",
            "ccc3333 kernel-6.18.7",
            "ddd4444 Build kernel-6.18.7 for f43",
        ]
        resolver = VersionPatchResolver(history, [])

        groups = resolver.list_versions()
        assert list(groups) == ["6.18", "6.17"]
        assert groups["6.18"] == ["6.18.7", "6.18.3"]
        assert groups["6.17"] == ["6.17.12-300"]
        assert resolver.candidate_versions() == ["6.18.7", "6.18.3", "6.17.12-300"]

    def test_caps_versions_per_series(self) -> None:
        history = [f"c{i:06d} kernel-6.18.{i}" for i in range(1, 10)]
        resolver = VersionPatchResolver(history, [], max_per_series=3)

        assert resolver.list_versions() == {"6.18": ["6.18.9", "6.18.8", "6.18.7"]}

    def test_ignores_non_kernel_tags(self) -> None:
        history = ["aaa1111 kernel-headers-6.18.7", "bbb2222 Rebase to kernel-6.18.3"]
        resolver = VersionPatchResolver(history, [])
        assert resolver.all_versions() == ["6.18.3"]

    def test_no_versions(self) -> None:
        resolver = VersionPatchResolver(["aaa1111 Initial import"], [])
        with pytest.raises(NoVersionsFound):
            resolver.list_versions()


class TestPairing:
    """Tests for commit and patch pairing."""

    def test_major_minor_fallback(self, tmp_path: Path) -> None:
        """A kernel with only a series patch pairs with that patch."""
        patches = _patches(tmp_path, "16iax10h-audio-6.18.patch")
        history = ["a1b2c3d kernel-6.18.7", "b2c3d4e kernel-6.18.3"]
        resolver = VersionPatchResolver(history, patches)

        pairing = resolver.pair("6.18.7")
        assert pairing.kernel_version == "6.18.7"
        assert pairing.source_commit == "a1b2c3d"
        assert pairing.patch_path == patches[0]
        assert pairing.patch_name == "16iax10h-audio-6.18.patch"

    def test_exact_version_preferred(self, tmp_path: Path) -> None:
        patches = _patches(tmp_path, "audio-6.18.patch", "audio-6.18.7.patch")
        resolver = VersionPatchResolver(["a1b2c3d kernel-6.18.7"], patches)

        assert resolver.find_patch("6.18.7-200").name == "audio-6.18.7.patch"

    def test_latest_in_series_fallback(self, tmp_path: Path) -> None:
        patches = _patches(tmp_path, "audio-6.18.2.patch", "audio-6.18.10.patch")
        resolver = VersionPatchResolver(["a1b2c3d kernel-6.18.7"], patches)

        assert resolver.find_patch("6.18.7").name == "audio-6.18.10.patch"

    def test_no_patch_for_series(self, tmp_path: Path) -> None:
        """Only a 6.17 patch with kernel 6.19.0 fails."""
        patches = _patches(tmp_path, "16iax10h-audio-6.17.patch")
        resolver = VersionPatchResolver(["a1b2c3d kernel-6.19.0"], patches)

        with pytest.raises(NoPatchAvailable) as exc_info:
            resolver.pair("6.19.0")
        assert "16iax10h-audio-6.17.patch" in (exc_info.value.hint or "")

    def test_commit_match_is_exact(self) -> None:
        """6.18.7 must not match the commit for 6.18.70."""
        history = ["fff0000 kernel-6.18.70", "a1b2c3d kernel-6.18.7-200"]
        resolver = VersionPatchResolver(history, [])

        assert resolver.find_commit("6.18.7") == "a1b2c3d"

    def test_commit_not_found(self) -> None:
        resolver = VersionPatchResolver(["a1b2c3d kernel-6.18.7"], [])
        with pytest.raises(NoVersionsFound):
            resolver.find_commit("6.18.9")

    def test_empty_history(self, tmp_path: Path) -> None:
        patches = _patches(tmp_path, "audio-6.18.patch")
        with pytest.raises(NoVersionsFound):
            VersionPatchResolver([], patches).pair("6.18.7")
