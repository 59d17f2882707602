"""Tests for the toolchain build plan.

Commands go to a RecordingExecutor; only their composition is checked.
"""

from pathlib import Path

import pytest

from conftest import RecordingExecutor
from riscv_gcc_build.builds.steps import MARKER_NAME
from riscv_gcc_build.builds.toolchain import (
    CONFIGURE_LOG,
    GCC_MULTILIB,
    ToolchainBuilder,
    build_triplet,
    cross_compile_prefix,
    plan_toolchain_job,
)
from riscv_gcc_build.sources.models import default_packages

STEP_ORDER = [
    "gmp",
    "mpfr",
    "mpc",
    "isl",
    "expat",
    "binutils-gdb",
    "gcc-first",
    "newlib",
    "newlib-nano",
    "gcc-final",
    "gcc-final-nano",
    "check",
    "licenses",
    "info",
]


@pytest.fixture
def packages():
    return default_packages("7.2.0-1-20171109")


def make_builder(make_config, packages, executor, target="linux64", **flags):
    config = make_config(targets=[target], **flags)
    return ToolchainBuilder(config, config.targets[0], executor, packages)


def configure_options(executor: RecordingExecutor) -> list[str]:
    """Options of the last recorded configure invocation."""
    configure = [cmd for cmd in executor.commands() if cmd[0] == "bash" and cmd[1].endswith("configure")]
    return configure[-1][2:]


class TestHelpers:
    """Tests for the triplet helpers."""

    def test_triplets(self):
        assert cross_compile_prefix(64) == "x86_64-w64-mingw32"
        assert cross_compile_prefix(32) == "i686-w64-mingw32"
        assert build_triplet(32) == "i686-linux-gnu"


class TestPlan:
    """Tests for plan_toolchain_job function."""

    def test_step_order_and_markers(self, make_config, packages, executor, work_dir):
        config = make_config(targets=["linux64"])
        target = config.targets[0]

        job = plan_toolchain_job(config, target, executor, packages)

        assert job.name == "linux64"
        assert job.target == target
        assert [s.name for s in job.steps] == STEP_ORDER
        assert job.steps[0].marker_path == work_dir / "build" / "linux64" / "gmp" / MARKER_NAME

    def test_planning_runs_nothing(self, make_config, packages, executor):
        config = make_config(targets=["win32"])
        plan_toolchain_job(config, config.targets[0], executor, packages)
        assert executor.runs == []


class TestLibraries:
    """Tests for the host library steps."""

    def test_gmp(self, make_config, packages, executor, work_dir):
        builder = make_builder(make_config, packages, executor, target="linux32", jobs=6)

        builder.build_library("gmp")

        configure, build, install = executor.runs
        assert configure["cmd"][:2] == ["bash", str(work_dir / "gmp-6.1.2" / "configure")]
        assert f"--prefix={work_dir / 'install' / 'linux32'}" in configure["cmd"]
        assert configure["env"]["ABI"] == "32"
        assert configure["env"]["CFLAGS"] == "-m32 -pipe"
        assert configure["cwd"] == work_dir / "build" / "linux32" / "gmp"
        assert configure["log_path"].name == CONFIGURE_LOG
        assert build["cmd"] == ["make", "-j6"]
        assert install["cmd"] == ["make", "-j6", "install-strip"]

    def test_mpc_uses_installed_prerequisites(self, make_config, packages, executor, work_dir):
        builder = make_builder(make_config, packages, executor)

        builder.build_library("mpc")

        prefix = work_dir / "install" / "linux64"
        options = configure_options(executor)
        assert f"--with-gmp={prefix}" in options
        assert f"--with-mpfr={prefix}" in options

    def test_configure_skipped_when_configured(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)
        builder.step_dir("isl").mkdir(parents=True)
        (builder.step_dir("isl") / "config.status").touch()

        builder.build_library("isl")

        assert all(cmd[0] == "make" for cmd in executor.commands())


class TestWindows:
    """Tests for canadian cross builds."""

    def test_host_options(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor, target="win64")

        builder.build_library("mpfr")

        options = configure_options(executor)
        assert "--build=x86_64-linux-gnu" in options
        assert "--host=x86_64-w64-mingw32" in options
        assert executor.runs[0]["env"]["CFLAGS"] == "-pipe"

    def test_linux_toolchain_on_path(self, make_config, packages, executor, work_dir):
        builder = make_builder(make_config, packages, executor, target="win32")

        builder.build_newlib()

        path = executor.runs[0]["path"]
        assert path[0] == work_dir / "install" / "linux32" / "riscv-none-gcc" / "bin"
        assert path[1] == work_dir / "install" / "win32" / "riscv-none-gcc" / "bin"

    def test_check_strips_and_copies_dll(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor, target="win64")

        builder.check()

        strip, copy_dll = executor.commands()
        assert strip[0] == "find"
        assert strip[strip.index("-name") + 1] == "*.exe"
        assert strip[strip.index("-exec") + 1] == "x86_64-w64-mingw32-strip"
        assert "libgcc_s_seh-1.dll" in copy_dll[-1]
        assert executor.runs[0]["cwd"] == builder.app_prefix


class TestBinutils:
    """Tests for the binutils-gdb step."""

    def test_docs_and_nano_prefix(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)
        (builder.app_prefix / "bin").mkdir(parents=True)
        (builder.app_prefix / "bin" / "riscv-none-embed-as").write_text("as")

        builder.build_binutils()

        commands = executor.commands()
        assert ["make", "-j2", "html", "pdf"] in commands
        assert "--with-pkgversion=GNU MCU Eclipse RISC-V Embedded GCC" in commands[0]
        assert (builder.app_prefix_nano / "bin" / "riscv-none-embed-as").is_file()

    def test_without_docs(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor, skip_docs=True)
        builder.app_prefix.mkdir(parents=True)

        builder.build_binutils()

        assert ["make", "-j2", "html", "pdf"] not in executor.commands()


class TestGcc:
    """Tests for the gcc and newlib steps."""

    def test_first_stage_runs_multilib_generator(self, make_config, packages, executor, work_dir):
        builder = make_builder(make_config, packages, executor)

        builder.build_gcc_first()

        generator = executor.runs[0]
        assert generator["cwd"] == work_dir / "riscv-none-gcc-7.2.0-1-20171109" / "gcc" / "config" / "riscv"
        assert generator["cmd"][-1].startswith("./multilib-generator " + GCC_MULTILIB[0])
        assert generator["cmd"][-1].endswith("> t-elf-multilib")
        commands = executor.commands()
        assert ["make", "all-gcc"] in commands
        assert ["make", "install-gcc"] in commands

    def test_disable_multilib(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor, multilib_enabled=False)

        builder.build_gcc_first()

        assert executor.commands()[0][1].endswith("configure")
        assert "--disable-multilib" in configure_options(executor)

    def test_gcc_options(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)

        builder.build_gcc_final()

        options = configure_options(executor)
        assert "--target=riscv-none-embed" in options
        assert "--with-arch=rv64imafdc" in options
        assert "--with-abi=lp64d" in options
        assert "--enable-languages=c,c++" in options
        assert ["make", "-j2", "install-strip"] in executor.commands()

    def test_skip_strip_installs_unstripped(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor, skip_strip=True)

        builder.build_gcc_final()

        assert ["make", "-j2", "install"] in executor.commands()

    def test_nano_newlib_prefix(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)

        builder.build_newlib(nano=True)

        options = configure_options(executor)
        assert f"--prefix={builder.app_prefix_nano}" in options
        assert "--enable-newlib-nano-malloc" in options
        assert executor.runs[0]["env"]["CFLAGS_FOR_TARGET"].startswith("-Os")

    def test_merge_nano_libraries(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)
        nano_lib = builder.app_prefix_nano / "riscv-none-embed" / "lib"
        (nano_lib / "rv32imac" / "ilp32").mkdir(parents=True)
        (nano_lib / "libc.a").write_text("c")
        (nano_lib / "rv32imac" / "ilp32" / "libm.a").write_text("m")
        (nano_lib / "libnosys.a").write_text("n")
        nano_include = builder.app_prefix_nano / "riscv-none-embed" / "include"
        nano_include.mkdir(parents=True)
        (nano_include / "newlib.h").write_text("#define NANO")

        builder.merge_nano_libraries()

        lib = builder.app_prefix / "riscv-none-embed" / "lib"
        assert (lib / "libc_nano.a").read_text() == "c"
        assert (lib / "rv32imac" / "ilp32" / "libm_nano.a").read_text() == "m"
        assert not (lib / "libnosys_nano.a").exists()
        header = builder.app_prefix / "riscv-none-embed" / "include" / "newlib-nano" / "newlib.h"
        assert header.read_text() == "#define NANO"


class TestPostInstall:
    """Tests for check, licenses, and info steps."""

    def test_linux_check(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)

        builder.check()

        (strip,) = executor.commands()
        assert "-name" not in strip
        assert strip[strip.index("-exec") + 1] == "strip"

    def test_check_skip_strip(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor, skip_strip=True)
        builder.check()
        assert executor.runs == []

    def test_copy_licenses(self, make_config, packages, executor, work_dir: Path):
        builder = make_builder(make_config, packages, executor)
        gmp_src = work_dir / "gmp-6.1.2"
        gmp_src.mkdir(parents=True)
        (gmp_src / "COPYING.LESSERv3").write_text("LGPL")
        (gmp_src / "configure").write_text("sh")
        expat_src = work_dir / "expat-2.2.5"
        expat_src.mkdir(parents=True)
        (expat_src / "COPYING").write_text("MIT")

        builder.copy_licenses()

        licenses = builder.app_prefix / "licenses"
        assert (licenses / "gmp-6.1.2" / "COPYING.LESSERv3").read_text() == "LGPL"
        assert not (licenses / "gmp-6.1.2" / "configure").exists()
        assert not (licenses / "expat-2.2.5").exists()

    def test_copy_info(self, make_config, packages, executor):
        builder = make_builder(make_config, packages, executor)
        builder.step_dir("gcc-final").mkdir(parents=True)
        (builder.step_dir("gcc-final") / CONFIGURE_LOG).write_text("configured")

        builder.copy_info()

        info = builder.app_prefix / "gnu-mcu-eclipse"
        assert (info / "gcc-configure-output.txt").read_text() == "configured"
        assert not (info / "binutils-configure-output.txt").exists()
