"""Execution back-ends for build commands.

Platform specifics stay here: a target is either built directly on the
host (native, macOS) or inside a Docker container providing the
reproducible GNU/Linux and mingw-w64 environments.
"""

from __future__ import annotations

import logging
import os
import shlex
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from riscv_gcc_build.builds.runner import (
    CommandError,
    CommandResult,
    capture_command,
    run_command,
)
from riscv_gcc_build.types import ExecutionMode, HostOS

logger = logging.getLogger(__name__)

# Images providing the build environment, by bit width
DOCKER_IMAGES: dict[int, str] = {
    64: "ilegeul/centos:6-xbb-v2",
    32: "ilegeul/centos32:6-xbb-v2",
}

DOCKERFILE_URLS: dict[int, str] = {
    64: "https://github.com/ilg-ul/docker/raw/master/centos/6-xbb-v2/Dockerfile",
    32: "https://github.com/ilg-ul/docker/raw/master/centos32/6-xbb-v2/Dockerfile",
}


class Executor(ABC):
    """Runs build commands for one target.

    ``path`` lists folders to put in front of the executing environment's
    PATH, for example the bin folder of a toolchain built earlier.
    """

    mode: ExecutionMode

    @abstractmethod
    def run(
        self,
        cmd: list[str],
        cwd: Path,
        log_path: Path,
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> CommandResult:
        """Run a command, appending its output to ``log_path``."""

    @abstractmethod
    def capture(
        self,
        cmd: list[str],
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> str:
        """Run a short command and return its output."""


class NativeExecutor(Executor):
    """Runs commands directly on the build host."""

    mode = ExecutionMode.NATIVE

    @staticmethod
    def _environment(
        env: dict[str, str] | None, path: Sequence[Path]
    ) -> dict[str, str] | None:
        if not path:
            return env
        merged = dict(env or {})
        merged["PATH"] = os.pathsep.join(
            [*(str(p) for p in path), os.environ.get("PATH", "")]
        )
        return merged

    def run(
        self,
        cmd: list[str],
        cwd: Path,
        log_path: Path,
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> CommandResult:
        cwd.mkdir(parents=True, exist_ok=True)
        return run_command(
            cmd, cwd=cwd, log_path=log_path, env_override=self._environment(env, path)
        )

    def capture(
        self,
        cmd: list[str],
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> str:
        return capture_command(cmd, env_override=self._environment(env, path))


class ContainerExecutor(Executor):
    """Runs commands inside a Docker container.

    The work folder is mounted at the same path inside the container, so
    paths computed on the host are valid in both places.
    """

    mode = ExecutionMode.CONTAINER

    def __init__(
        self,
        image: str,
        work_dir: Path,
        user: str | None = None,
    ) -> None:
        self.image = image
        self.work_dir = work_dir
        self.user = user if user is not None else f"{os.getuid()}:{os.getgid()}"

    def wrap(
        self,
        cmd: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> list[str]:
        """Compose the ``docker run`` command executing ``cmd``."""
        docker_cmd = ["docker", "run", "--rm", "--user", self.user]
        docker_cmd.extend(["-v", f"{self.work_dir}:{self.work_dir}"])
        docker_cmd.extend(["-w", str(cwd or self.work_dir)])
        for key, value in sorted((env or {}).items()):
            docker_cmd.extend(["-e", f"{key}={value}"])
        docker_cmd.append(self.image)

        script = shlex.join(cmd)
        if path:
            # The image's own PATH is only known inside the container
            prefix = ":".join(str(p) for p in path)
            script = f'export PATH={shlex.quote(prefix)}:"$PATH"; {script}'
        docker_cmd.extend(["bash", "-c", script])
        return docker_cmd

    def run(
        self,
        cmd: list[str],
        cwd: Path,
        log_path: Path,
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> CommandResult:
        cwd.mkdir(parents=True, exist_ok=True)
        return run_command(self.wrap(cmd, cwd, env, path), cwd=cwd, log_path=log_path)

    def capture(
        self,
        cmd: list[str],
        env: dict[str, str] | None = None,
        path: Sequence[Path] = (),
    ) -> str:
        return capture_command(self.wrap(cmd, env=env, path=path))


def executor_for(host_os: HostOS, bits: int, work_dir: Path) -> Executor:
    """Select the execution back-end for a target."""
    if host_os in (HostOS.LINUX, HostOS.WINDOWS):
        return ContainerExecutor(DOCKER_IMAGES[bits], work_dir)
    return NativeExecutor()


def check_docker_available() -> str:
    """Return the Docker version string.

    Raises:
        CommandError: If Docker is not installed or not running.
    """
    try:
        return capture_command(["docker", "--version"]).strip()
    except CommandError as e:
        raise CommandError(
            "Docker is not available; install it and start the daemon",
            code="docker_unavailable",
        ) from e


def build_images(log_path: Path, cwd: Path) -> list[str]:
    """Build the Docker images used for the containerized targets."""
    check_docker_available()
    built: list[str] = []
    for bits in (32, 64):
        image = DOCKER_IMAGES[bits]
        logger.info("Building Docker image %s", image)
        run_command(
            ["docker", "build", "--tag", image, DOCKERFILE_URLS[bits]],
            cwd=cwd,
            log_path=log_path,
        )
        built.append(image)
    return built


def preload_images() -> dict[str, str]:
    """Pull the Docker images and report the distribution each one runs."""
    check_docker_available()
    descriptions: dict[str, str] = {}
    for bits in (64, 32):
        image = DOCKER_IMAGES[bits]
        logger.info("Checking Docker image %s", image)
        descriptions[image] = capture_command(
            ["docker", "run", "--rm", image, "lsb_release", "--description", "--short"],
            timeout=3600,
        ).strip()
    return descriptions


__all__ = [
    "DOCKER_IMAGES",
    "ContainerExecutor",
    "Executor",
    "NativeExecutor",
    "build_images",
    "check_docker_available",
    "executor_for",
    "preload_images",
]
