"""Target matrix: parsing, validation, and dependency ordering.

A target is a host operating system plus a bit width. Windows toolchains
are "canadian cross" builds: they are compiled with the GNU/Linux toolchain
of the same bit width, so ``windows/N`` depends on ``linux/N``.
"""

from __future__ import annotations

import heapq
import logging
import re
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from riscv_gcc_build.errors import ConfigurationError, UnsatisfiableDependencyError
from riscv_gcc_build.types import HostOS

logger = logging.getLogger(__name__)

TARGET_PATTERN = re.compile(r"^(?:--)?(?P<name>[a-z]+?)(?P<bits>32|64)?$")

OS_ALIASES: dict[str, HostOS] = {
    "native": HostOS.NATIVE,
    "linux": HostOS.LINUX,
    "deb": HostOS.LINUX,
    "debian": HostOS.LINUX,
    "centos": HostOS.LINUX,
    "win": HostOS.WINDOWS,
    "window": HostOS.WINDOWS,
    "windows": HostOS.WINDOWS,
    "osx": HostOS.MACOS,
    "mac": HostOS.MACOS,
    "macos": HostOS.MACOS,
    "darwin": HostOS.MACOS,
}

# Supported (os, bits) combinations
SUPPORTED_BITS: dict[HostOS, tuple[int, ...]] = {
    HostOS.NATIVE: (32, 64),
    HostOS.LINUX: (64, 32),
    HostOS.WINDOWS: (64, 32),
    HostOS.MACOS: (64,),
}


def host_bits() -> int:
    """Return the bit width of the machine running the orchestrator."""
    return 64 if sys.maxsize > 2**32 else 32


@dataclass(frozen=True)
class TargetSpec:
    """One requested build target.

    Attributes:
        host_os: Operating system the produced toolchain runs on.
        bits: 32 or 64.
        depends_on: Target whose completed artifacts must exist first.
    """

    host_os: HostOS
    bits: int
    depends_on: TargetSpec | None = None

    @property
    def slug(self) -> str:
        """Short stable name used for folders and archive names."""
        if self.host_os == HostOS.NATIVE:
            return "native"
        if self.host_os == HostOS.MACOS:
            return "macos"
        prefix = "win" if self.host_os == HostOS.WINDOWS else "linux"
        return f"{prefix}{self.bits}"

    @property
    def priority(self) -> int:
        """Position in the fixed platform order used to break ties."""
        return PRIORITY_ORDER.index((self.host_os, self.bits))

    def __str__(self) -> str:
        return f"{self.host_os.value}/{self.bits}"


PRIORITY_ORDER: list[tuple[HostOS, int]] = [
    (HostOS.NATIVE, 64),
    (HostOS.NATIVE, 32),
    (HostOS.LINUX, 64),
    (HostOS.LINUX, 32),
    (HostOS.WINDOWS, 64),
    (HostOS.WINDOWS, 32),
    (HostOS.MACOS, 64),
]


def make_target(host_os: HostOS, bits: int) -> TargetSpec:
    """Build a TargetSpec, wiring the canadian-cross dependency.

    Raises:
        ConfigurationError: If the combination is not supported.
    """
    if bits not in SUPPORTED_BITS[host_os]:
        raise ConfigurationError(
            f"Unsupported target {host_os.value}/{bits}",
            code="unknown_target",
        )
    depends_on = None
    if host_os == HostOS.WINDOWS:
        depends_on = TargetSpec(HostOS.LINUX, bits)
    return TargetSpec(host_os, bits, depends_on)


def parse_target(text: str) -> TargetSpec:
    """Parse a target name such as ``linux64``, ``win32`` or ``osx``.

    Linux and Windows targets default to 64 bits, the native target to the
    width of the current machine.

    Raises:
        ConfigurationError: If the name or combination is unknown.
    """
    match = TARGET_PATTERN.match(text.strip().lower())
    if not match or match.group("name") not in OS_ALIASES:
        raise ConfigurationError(f"Unknown target: {text}", code="unknown_target")

    host_os = OS_ALIASES[match.group("name")]
    if match.group("bits"):
        bits = int(match.group("bits"))
    elif host_os == HostOS.NATIVE:
        bits = host_bits()
    else:
        bits = SUPPORTED_BITS[host_os][0]
    return make_target(host_os, bits)


def all_targets() -> list[TargetSpec]:
    """Return the targets requested by ``--all``."""
    return [
        make_target(host_os, bits)
        for host_os, bits in PRIORITY_ORDER
        if host_os != HostOS.NATIVE
    ]


def native_target() -> TargetSpec:
    """Return the target built when nothing is requested."""
    return make_target(HostOS.NATIVE, host_bits())


def expand_targets(
    requested: Iterable[TargetSpec],
    is_completed: Callable[[TargetSpec], bool] | None = None,
) -> list[TargetSpec]:
    """Order requested targets so every dependency precedes its dependents.

    Independent targets keep the fixed platform priority (native, linux,
    windows, macos) so runs are deterministic.

    Args:
        requested: Targets to build; duplicates are ignored.
        is_completed: Predicate telling whether a target's artifacts
            already exist on disk.

    Returns:
        Ordered list of targets.

    Raises:
        UnsatisfiableDependencyError: If a dependency is neither requested
            nor already completed.
    """
    targets = set(requested)
    dependents: dict[TargetSpec, list[TargetSpec]] = {t: [] for t in targets}
    indegree: dict[TargetSpec, int] = {t: 0 for t in targets}

    for target in targets:
        dep = target.depends_on
        if dep is None:
            continue
        if dep in targets:
            dependents[dep].append(target)
            indegree[target] += 1
        elif is_completed is not None and is_completed(dep):
            logger.info("Using previously built %s for %s", dep, target)
        else:
            raise UnsatisfiableDependencyError(str(target), str(dep))

    ready = [(t.priority, t) for t, d in indegree.items() if d == 0]
    heapq.heapify(ready)
    ordered: list[TargetSpec] = []

    while ready:
        _, target = heapq.heappop(ready)
        ordered.append(target)
        for child in dependents[target]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (child.priority, child))

    if len(ordered) != len(targets):
        stuck = sorted(str(t) for t, d in indegree.items() if d > 0)
        raise ConfigurationError(f"Dependency cycle between targets: {stuck}")

    return ordered


__all__ = [
    "PRIORITY_ORDER",
    "TargetSpec",
    "all_targets",
    "expand_targets",
    "host_bits",
    "make_target",
    "native_target",
    "parse_target",
]
