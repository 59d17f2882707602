"""Toolchain build plan.

This module handles:
- Turning a target into the ordered list of resumable build steps
- Composing configure/make command lines for each component
- Post-install steps: stripping, runtime DLLs, licenses, build info

The step bodies only run external commands through an Executor; success
or failure of those commands is all that is observed.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from pathlib import Path

from riscv_gcc_build.builds.executors import Executor
from riscv_gcc_build.builds.steps import MARKER_NAME, BuildJob, BuildStep
from riscv_gcc_build.config import RunConfiguration
from riscv_gcc_build.sources.models import SourcePackage
from riscv_gcc_build.targets import TargetSpec
from riscv_gcc_build.types import HostOS

logger = logging.getLogger(__name__)

CONFIGURE_LOG = "configure-output.txt"
MAKE_LOG = "make-output.txt"

GCC_MULTILIB = [
    "rv32i-ilp32--c",
    "rv32im-ilp32--c",
    "rv32iac-ilp32--",
    "rv32imac-ilp32--",
    "rv32imaf-ilp32f--",
    "rv32imafc-ilp32f-rv32imafdc-",
    "rv64imac-lp64--",
    "rv64imafdc-lp64d--",
]
GCC_MULTILIB_FILE = "t-elf-multilib"

CFLAGS_FOR_TARGET = "-O2 -mcmodel=medany"
CFLAGS_FOR_TARGET_NANO = "-Os -mcmodel=medany"

# Libraries renamed with a _nano suffix when merged into the main tree
NANO_LIBRARIES = ["libc.a", "libg.a", "libm.a", "libgloss.a", "libstdc++.a", "libsupc++.a"]

LIBRARY_STEPS = ["gmp", "mpfr", "mpc", "isl", "expat"]

GCC_COMMON_OPTIONS = [
    "--disable-shared",
    "--disable-threads",
    "--disable-decimal-float",
    "--disable-libffi",
    "--disable-libgomp",
    "--disable-libmudflap",
    "--disable-libquadmath",
    "--disable-libssp",
    "--disable-libstdcxx-pch",
    "--disable-nls",
    "--with-newlib",
    "--with-gnu-as",
    "--with-gnu-ld",
]

NEWLIB_OPTIONS = [
    "--enable-newlib-io-long-double",
    "--enable-newlib-io-long-long",
    "--enable-newlib-io-c99-formats",
    "--enable-newlib-register-fini",
    "--disable-newlib-supplied-syscalls",
    "--disable-nls",
]

NEWLIB_NANO_OPTIONS = [
    "--disable-newlib-supplied-syscalls",
    "--disable-newlib-fvwrite-in-streamio",
    "--disable-newlib-fseek-optimization",
    "--disable-newlib-wide-orient",
    "--disable-newlib-unbuf-stream-opt",
    "--enable-newlib-io-long-double",
    "--enable-newlib-io-long-long",
    "--enable-newlib-io-c99-formats",
    "--enable-newlib-register-fini",
    "--enable-newlib-nano-malloc",
    "--enable-newlib-global-atexit",
    "--enable-newlib-nano-formatted-io",
    "--enable-newlib-reent-small",
    "--disable-nls",
]

LICENSE_PATTERNS = ["COPYING*", "LICENSE*", "COPYRIGHT*", "README*"]


def cross_compile_prefix(bits: int) -> str:
    """Return the mingw-w64 triplet producing Windows binaries."""
    return "x86_64-w64-mingw32" if bits == 64 else "i686-w64-mingw32"


def build_triplet(bits: int) -> str:
    """Return the triplet of the GNU/Linux build machine."""
    return "x86_64-linux-gnu" if bits == 64 else "i686-linux-gnu"


class ToolchainBuilder:
    """Builds the steps of one target's toolchain.

    Args:
        config: Run configuration.
        target: Target being built.
        executor: Back-end running the commands.
        packages: Source packages, by component name.
    """

    def __init__(
        self,
        config: RunConfiguration,
        target: TargetSpec,
        executor: Executor,
        packages: dict[str, SourcePackage],
    ) -> None:
        self.config = config
        self.target = target
        self.executor = executor
        self.packages = packages

        self.build_dir = config.target_build_dir(target)
        self.install_dir = config.target_install_dir(target)
        self.app_prefix = config.app_prefix(target)
        self.app_prefix_nano = self.install_dir / f"{config.app_lc_name}-nano"
        self.is_windows = target.host_os == HostOS.WINDOWS

    # Paths

    def source_dir(self, component: str) -> Path:
        return self.config.work_dir / self.packages[component].folder_name

    def step_dir(self, name: str) -> Path:
        return self.build_dir / name

    def doc_options(self, prefix: Path) -> list[str]:
        doc = prefix / "share" / "doc"
        return [
            f"--prefix={prefix}",
            f"--infodir={doc / 'info'}",
            f"--mandir={doc / 'man'}",
            f"--htmldir={doc / 'html'}",
            f"--pdfdir={doc / 'pdf'}",
        ]

    def host_options(self) -> list[str]:
        if not self.is_windows:
            return []
        return [
            f"--build={build_triplet(self.target.bits)}",
            f"--host={cross_compile_prefix(self.target.bits)}",
        ]

    def tool_path(self, prefix: Path | None = None) -> list[Path]:
        """Folders to put on PATH while building target libraries."""
        path = [(prefix or self.app_prefix) / "bin"]
        if self.target.depends_on is not None:
            path.insert(0, self.config.app_prefix(self.target.depends_on) / "bin")
        return path

    def host_flags(self) -> dict[str, str]:
        if self.target.host_os in (HostOS.LINUX, HostOS.MACOS):
            flags = f"-m{self.target.bits} -pipe"
        else:
            flags = "-pipe"
        return {"CFLAGS": flags, "CXXFLAGS": flags}

    # Command helpers

    def configure(
        self,
        name: str,
        component: str,
        options: Sequence[str],
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
        configure_script: str = "configure",
    ) -> None:
        """Run a component's configure script in its step folder.

        Skipped when ``config.status`` shows an earlier configure
        completed in that folder.
        """
        folder = self.step_dir(name)
        if (folder / "config.status").exists():
            logger.debug("%s already configured", name)
            return
        script = self.source_dir(component) / configure_script
        self.executor.run(
            ["bash", str(script), *options],
            cwd=folder,
            log_path=folder / CONFIGURE_LOG,
            env={**self.host_flags(), **(env or {})},
            path=path,
        )

    def make(
        self,
        name: str,
        *targets: str,
        parallel: bool = True,
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> None:
        """Run make in a step folder."""
        folder = self.step_dir(name)
        cmd = ["make"]
        if parallel:
            cmd.append(f"-j{self.config.jobs}")
        cmd.extend(targets)
        self.executor.run(
            cmd,
            cwd=folder,
            log_path=folder / MAKE_LOG,
            env=env,
            path=path,
        )

    def install_target(self) -> str:
        return "install" if self.config.skip_strip else "install-strip"

    # Steps

    def build_library(self, name: str) -> None:
        """Build one of the static host libraries gcc depends on."""
        prefix = self.install_dir
        options = [f"--prefix={prefix}", *self.host_options()]
        env: dict[str, str] = {}

        if name == "gmp":
            # ABI is mandatory, otherwise configure fails on 32-bits
            env["ABI"] = str(self.target.bits)
        elif name == "mpfr":
            options.extend([f"--with-gmp={prefix}", "--disable-warnings"])
        elif name == "mpc":
            options.extend([f"--with-gmp={prefix}", f"--with-mpfr={prefix}"])
        elif name == "isl":
            options.append(f"--with-gmp-prefix={prefix}")

        options.extend(["--disable-shared", "--enable-static"])
        self.configure(name, name, options, env=env)
        self.make(name)
        self.make(name, "install-strip")

    def prerequisite_options(self) -> list[str]:
        return [
            f"--with-{lib}={self.install_dir}" for lib in ("mpc", "mpfr", "gmp", "isl")
        ]

    def build_binutils(self) -> None:
        name = "binutils-gdb"
        options = [
            *self.doc_options(self.app_prefix),
            *self.host_options(),
            f"--target={self.config.gcc_target}",
            f"--with-pkgversion={self.config.branding}",
            *self.prerequisite_options(),
            "--disable-shared",
            "--enable-static",
            "--disable-werror",
            "--disable-build-warnings",
            "--disable-gdb-build-warnings",
            "--disable-nls",
            "--enable-plugins",
            "--with-expat",
            f"--with-sysroot={self.app_prefix / self.config.gcc_target}",
        ]
        env = {
            "CPPFLAGS": f"-I{self.install_dir / 'include'}",
            "LDFLAGS": f"-L{self.install_dir / 'lib'}",
        }
        self.configure(name, "binutils", options, env=env)
        self.make(name)
        self.make(name, "install")
        if not self.config.skip_docs:
            self.make(name, "html", "pdf")
            self.make(name, "install-html", "install-pdf")

        # gcc-final-nano installs into its own prefix and needs binutils there
        shutil.copytree(self.app_prefix, self.app_prefix_nano, dirs_exist_ok=True)

    def run_multilib_generator(self) -> None:
        config_dir = self.source_dir("gcc") / "gcc" / "config" / "riscv"
        generator = " ".join(GCC_MULTILIB)
        self.executor.run(
            ["bash", "-c", f"./multilib-generator {generator} > {GCC_MULTILIB_FILE}"],
            cwd=config_dir,
            log_path=self.step_dir("gcc-first") / MAKE_LOG,
        )

    def multilib_options(self) -> list[str]:
        return [] if self.config.multilib_enabled else ["--disable-multilib"]

    def gcc_options(self, prefix: Path, languages: str) -> list[str]:
        return [
            *self.doc_options(prefix),
            *self.host_options(),
            f"--target={self.config.gcc_target}",
            f"--with-pkgversion={self.config.branding}",
            *self.prerequisite_options(),
            f"--enable-languages={languages}",
            *GCC_COMMON_OPTIONS,
            *self.multilib_options(),
            f"--with-abi={self.config.gcc_abi}",
            f"--with-arch={self.config.gcc_arch}",
            f"--with-sysroot={prefix / self.config.gcc_target}",
        ]

    def build_gcc_first(self) -> None:
        name = "gcc-first"
        if self.config.multilib_enabled:
            self.run_multilib_generator()
        options = [
            *self.gcc_options(self.app_prefix, "c"),
            "--disable-tls",
            "--enable-checking=no",
            "--without-headers",
        ]
        self.configure(
            name, "gcc", options, env={"CFLAGS_FOR_TARGET": CFLAGS_FOR_TARGET}
        )
        # Parallel build fails for win32
        self.make(name, "all-gcc", parallel=False)
        self.make(name, "install-gcc", parallel=False)

    def build_newlib(self, nano: bool = False) -> None:
        name = "newlib-nano" if nano else "newlib"
        prefix = self.app_prefix_nano if nano else self.app_prefix
        flags = CFLAGS_FOR_TARGET_NANO if nano else CFLAGS_FOR_TARGET
        env = {
            "CFLAGS_FOR_TARGET": f"{flags} -ffunction-sections -fdata-sections "
            "-Wno-implicit-function-declaration",
            "CXXFLAGS_FOR_TARGET": f"{flags} -ffunction-sections -fdata-sections",
        }
        options = [
            *self.doc_options(prefix),
            *self.host_options(),
            f"--target={self.config.gcc_target}",
            *(NEWLIB_NANO_OPTIONS if nano else NEWLIB_OPTIONS),
            *self.multilib_options(),
        ]
        # newlib is compiled by the first stage compiler
        path = self.tool_path()
        self.configure(name, "newlib", options, env=env, path=path)
        self.make(name, path=path)
        self.make(name, "install", path=path)
        if not nano and not self.config.skip_docs:
            self.make(name, "pdf", path=path)

    def build_gcc_final(self, nano: bool = False) -> None:
        name = "gcc-final-nano" if nano else "gcc-final"
        prefix = self.app_prefix_nano if nano else self.app_prefix
        flags = CFLAGS_FOR_TARGET_NANO if nano else CFLAGS_FOR_TARGET
        env = {
            "LDFLAGS": f"-L{self.install_dir / 'lib'} -Wl,--gc-sections -static-libstdc++",
            "CFLAGS_FOR_TARGET": f"{flags} -ffunction-sections -fdata-sections",
            "CXXFLAGS_FOR_TARGET": f"{flags} -ffunction-sections -fdata-sections "
            "-Wno-mismatched-tags -Wno-ignored-attributes",
            "LDFLAGS_FOR_TARGET": f"{flags} -Wl,--gc-sections -static-libstdc++",
        }
        options = [
            *self.gcc_options(prefix, "c,c++"),
            "--enable-plugins",
            "--enable-tls",
            "--enable-checking=yes",
            "--without-system-zlib",
            "--with-headers=yes",
        ]
        path = self.tool_path(prefix)
        self.configure(name, "gcc", options, env=env, path=path)
        self.make(name, path=path)
        self.make(name, self.install_target(), path=path)
        if not nano and not self.config.skip_docs:
            self.make(name, "install-pdf", "install-html", path=path)
        if nano:
            self.merge_nano_libraries()

    def merge_nano_libraries(self) -> None:
        """Copy the nano libraries into the main tree with a _nano suffix."""
        target = self.config.gcc_target
        source_root = self.app_prefix_nano / target / "lib"
        dest_root = self.app_prefix / target / "lib"
        copied = 0
        for library in NANO_LIBRARIES:
            for src in sorted(source_root.rglob(library)):
                relative = src.parent.relative_to(source_root)
                dest = dest_root / relative / f"{src.stem}_nano{src.suffix}"
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
                copied += 1
        logger.info("Merged %d nano libraries into %s", copied, dest_root)

        nano_header = self.app_prefix_nano / target / "include" / "newlib.h"
        if nano_header.is_file():
            header_dir = self.app_prefix / target / "include" / "newlib-nano"
            header_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(nano_header, header_dir / "newlib.h")

    def check(self) -> None:
        """Strip executables and add the runtime DLLs of Windows builds."""
        name = "check"
        folder = self.step_dir(name)
        target = self.config.gcc_target
        log_path = folder / MAKE_LOG

        if not self.config.skip_strip:
            strip = (
                f"{cross_compile_prefix(self.target.bits)}-strip"
                if self.is_windows
                else "strip"
            )
            find = ["find", "bin", f"libexec/gcc/{target}", f"{target}/bin",
                    "-type", "f", "-perm", "-u+x"]
            if self.is_windows:
                find.extend(["-name", "*.exe"])
            find.extend(["-exec", strip, "{}", ";"])
            self.executor.run(find, cwd=self.app_prefix, log_path=log_path)

        if self.is_windows:
            prefix = cross_compile_prefix(self.target.bits)
            dll = "libgcc_s_seh-1.dll" if self.target.bits == 64 else "libgcc_s_sjlj-1.dll"
            self.executor.run(
                ["bash", "-c",
                 f'cp -v "$({prefix}-gcc -print-file-name={dll})" bin/'],
                cwd=self.app_prefix,
                log_path=log_path,
            )

    def copy_licenses(self) -> None:
        """Copy each component's license files to ``<prefix>/licenses``."""
        licenses_dir = self.app_prefix / "licenses"
        for component, package in self.packages.items():
            if component == "expat":
                continue
            source = self.source_dir(component)
            dest = licenses_dir / package.folder_name
            dest.mkdir(parents=True, exist_ok=True)
            for pattern in LICENSE_PATTERNS:
                for path in sorted(source.glob(pattern)):
                    if path.is_file():
                        shutil.copy2(path, dest / path.name)

    def copy_info(self) -> None:
        """Copy the configure logs of the main components into the tree."""
        info_dir = self.app_prefix / "gnu-mcu-eclipse"
        info_dir.mkdir(parents=True, exist_ok=True)
        for step, label in (
            ("binutils-gdb", "binutils"),
            ("newlib", "newlib"),
            ("gcc-final", "gcc"),
        ):
            log = self.step_dir(step) / CONFIGURE_LOG
            if log.is_file():
                shutil.copy2(log, info_dir / f"{label}-{CONFIGURE_LOG}")

    def steps(self) -> list[BuildStep]:
        """Return the ordered steps building the toolchain."""
        actions: list[tuple[str, Callable[[], object]]] = [
            *((lib, lambda lib=lib: self.build_library(lib)) for lib in LIBRARY_STEPS),
            ("binutils-gdb", self.build_binutils),
            ("gcc-first", self.build_gcc_first),
            ("newlib", self.build_newlib),
            ("newlib-nano", lambda: self.build_newlib(nano=True)),
            ("gcc-final", self.build_gcc_final),
            ("gcc-final-nano", lambda: self.build_gcc_final(nano=True)),
            ("check", self.check),
            ("licenses", self.copy_licenses),
            ("info", self.copy_info),
        ]
        return [
            BuildStep(
                name=name,
                marker_path=self.step_dir(name) / MARKER_NAME,
                action=action,
            )
            for name, action in actions
        ]


def plan_toolchain_job(
    config: RunConfiguration,
    target: TargetSpec,
    executor: Executor,
    packages: dict[str, SourcePackage],
) -> BuildJob:
    """Plan the job building one target's toolchain.

    Args:
        config: Run configuration.
        target: Target to build.
        executor: Back-end running the commands.
        packages: Source packages, by component name.

    Returns:
        Pending BuildJob named after the target slug.
    """
    builder = ToolchainBuilder(config, target, executor, packages)
    return BuildJob(name=target.slug, steps=builder.steps(), target=target)


__all__ = [
    "CONFIGURE_LOG",
    "GCC_MULTILIB",
    "MAKE_LOG",
    "ToolchainBuilder",
    "build_triplet",
    "cross_compile_prefix",
    "plan_toolchain_job",
]
