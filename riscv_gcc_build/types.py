"""Shared type definitions for riscv_gcc_build.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class JobStatus(str, Enum):
    """Status of a build job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class HostOS(str, Enum):
    """Operating system the produced toolchain runs on."""

    NATIVE = "native"
    LINUX = "linux"
    WINDOWS = "windows"
    MACOS = "macos"


class ExecutionMode(str, Enum):
    """Where the commands of a build step are executed."""

    NATIVE = "native"
    CONTAINER = "container"


class BuildAction(str, Enum):
    """Non-build actions accepted by the ``build`` command."""

    CLEAN = "clean"
    CLEANALL = "cleanall"
    BUILD_IMAGES = "build-images"
    PRELOAD_IMAGES = "preload-images"


@dataclass
class ArtifactInfo:
    """Information about a file packed into a distribution archive."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "BuildAction",
    "ExecutionMode",
    "HostOS",
    "JobStatus",
]
