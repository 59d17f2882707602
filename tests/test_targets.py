"""Tests for the target matrix."""

import pytest

from riscv_gcc_build.errors import ConfigurationError, UnsatisfiableDependencyError
from riscv_gcc_build.targets import (
    TargetSpec,
    all_targets,
    expand_targets,
    host_bits,
    make_target,
    native_target,
    parse_target,
)
from riscv_gcc_build.types import HostOS


class TestParseTarget:
    """Tests for parse_target function."""

    @pytest.mark.parametrize(
        ("text", "host_os", "bits"),
        [
            ("linux64", HostOS.LINUX, 64),
            ("linux32", HostOS.LINUX, 32),
            ("deb32", HostOS.LINUX, 32),
            ("debian64", HostOS.LINUX, 64),
            ("win32", HostOS.WINDOWS, 32),
            ("windows64", HostOS.WINDOWS, 64),
            ("--win64", HostOS.WINDOWS, 64),
            ("osx", HostOS.MACOS, 64),
            ("mac", HostOS.MACOS, 64),
            ("macos", HostOS.MACOS, 64),
            ("Linux64", HostOS.LINUX, 64),
        ],
    )
    def test_aliases(self, text: str, host_os: HostOS, bits: int) -> None:
        target = parse_target(text)
        assert target.host_os == host_os
        assert target.bits == bits

    def test_linux_defaults_to_64(self) -> None:
        assert parse_target("linux").bits == 64

    def test_native_uses_host_width(self) -> None:
        target = parse_target("native")
        assert target.host_os == HostOS.NATIVE
        assert target.bits == host_bits()

    @pytest.mark.parametrize("text", ["", "amiga64", "linux16", "win-64"])
    def test_unknown(self, text: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            parse_target(text)
        assert exc_info.value.code == "unknown_target"

    def test_macos_32_unsupported(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_target("osx32")


class TestTargetSpec:
    """Tests for TargetSpec."""

    def test_windows_depends_on_linux(self) -> None:
        target = make_target(HostOS.WINDOWS, 32)
        assert target.depends_on == TargetSpec(HostOS.LINUX, 32)

    def test_linux_has_no_dependency(self) -> None:
        assert make_target(HostOS.LINUX, 64).depends_on is None

    def test_slugs(self) -> None:
        assert make_target(HostOS.LINUX, 32).slug == "linux32"
        assert make_target(HostOS.WINDOWS, 64).slug == "win64"
        assert make_target(HostOS.MACOS, 64).slug == "macos"
        assert native_target().slug == "native"

    def test_str(self) -> None:
        assert str(make_target(HostOS.WINDOWS, 64)) == "windows/64"

    def test_hashable_and_equal(self) -> None:
        assert {parse_target("win64"), parse_target("windows64")} == {parse_target("win64")}


class TestExpandTargets:
    """Tests for expand_targets function."""

    def test_linux_before_windows(self) -> None:
        ordered = expand_targets([parse_target("win64"), parse_target("linux64")])
        assert [t.slug for t in ordered] == ["linux64", "win64"]

    def test_all_targets_order(self) -> None:
        ordered = expand_targets(all_targets())
        assert [t.slug for t in ordered] == [
            "linux64",
            "linux32",
            "win64",
            "win32",
            "macos",
        ]

    def test_every_dependency_precedes_dependent(self) -> None:
        ordered = expand_targets(reversed(all_targets()))
        for index, target in enumerate(ordered):
            if target.depends_on is not None:
                assert target.depends_on in ordered[:index]

    def test_duplicates_ignored(self) -> None:
        ordered = expand_targets([parse_target("linux64")] * 3)
        assert len(ordered) == 1

    def test_unsatisfiable_dependency(self) -> None:
        with pytest.raises(UnsatisfiableDependencyError) as exc_info:
            expand_targets([parse_target("win64")])

        assert exc_info.value.target == "windows/64"
        assert exc_info.value.missing == "linux/64"
        assert exc_info.value.code == "unsatisfiable_dependency"

    def test_dependency_not_auto_added(self) -> None:
        ordered = expand_targets(
            [parse_target("win32")], is_completed=lambda t: True
        )
        assert [t.slug for t in ordered] == ["win32"]

    def test_completed_dependency_checked_for_right_width(self) -> None:
        completed = {parse_target("linux64")}
        with pytest.raises(UnsatisfiableDependencyError):
            expand_targets([parse_target("win32")], is_completed=completed.__contains__)

    def test_empty(self) -> None:
        assert expand_targets([]) == []
