"""Build service module.

This module provides the high-level orchestration API:
- run_build(): Main entry point - build and publish every requested target
- run_action(): clean, cleanall, build-images and preload-images
- Locking the work folder against concurrent runs
- Per-target started/completed stamps used for resume and dependencies
"""

from __future__ import annotations

import fcntl
import logging
import os
import platform
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import httpx

from riscv_gcc_build.builds.artifacts import DistributionArtifact, publish
from riscv_gcc_build.builds.clean import clean
from riscv_gcc_build.builds.executors import (
    Executor,
    build_images,
    check_docker_available,
    executor_for,
    preload_images,
)
from riscv_gcc_build.builds.runner import CommandError
from riscv_gcc_build.builds.steps import StepRunner, write_marker
from riscv_gcc_build.builds.toolchain import plan_toolchain_job
from riscv_gcc_build.config import (
    STAMP_COMPLETED,
    STAMP_STARTED,
    RunConfiguration,
    pin_build_timestamp,
    print_config_json,
)
from riscv_gcc_build.errors import ConfigurationError, OrchestratorError
from riscv_gcc_build.sources.fetch import fetch_sources
from riscv_gcc_build.sources.models import (
    SourcePackage,
    SourcesFileSchema,
    default_packages,
    load_sources_file,
)
from riscv_gcc_build.targets import TargetSpec, expand_targets
from riscv_gcc_build.types import BuildAction, ExecutionMode, HostOS

logger = logging.getLogger(__name__)

LOCK_NAME = ".build.lock"

ExecutorFactory = Callable[[HostOS, int, Path], Executor]


class WorkDirLockedError(OrchestratorError):
    """Raised when another run holds the work folder."""

    def __init__(self, work_dir: Path, code: str = "work_dir_locked") -> None:
        super().__init__(f"Another build is running in {work_dir}", code=code)
        self.work_dir = work_dir


@contextmanager
def work_dir_lock(work_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on the work folder.

    Uses a file-based lock so two invocations never drive the same
    folders at once.

    Args:
        work_dir: Work folder to lock.

    Yields:
        None when the lock is acquired.

    Raises:
        WorkDirLockedError: If another process holds the lock.
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    lock_file = work_dir / LOCK_NAME

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise WorkDirLockedError(work_dir) from None
        lock_acquired = True
        logger.debug("Work folder lock acquired: %s", lock_file)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Work folder lock released: %s", lock_file)
        os.close(fd)


def target_completed(config: RunConfiguration, target: TargetSpec) -> bool:
    """Check whether a target's install tree was completed by any run."""
    return (config.target_install_dir(target) / STAMP_COMPLETED).is_file()


def check_host(config: RunConfiguration, system: str | None = None) -> None:
    """Reject targets the current machine cannot build.

    Args:
        config: Run configuration.
        system: Host system name; platform.system() if not provided.

    Raises:
        ConfigurationError: If a macOS target is requested on another
            system.
    """
    system = system or platform.system()
    if system != "Darwin" and any(t.host_os == HostOS.MACOS for t in config.targets):
        raise ConfigurationError(
            "macOS targets can only be built on a macOS host",
            code="unsupported_host",
        )


def load_overrides(config: RunConfiguration) -> SourcesFileSchema | None:
    """Load the sources file named by the configuration, if any."""
    if config.sources_file is None:
        return None
    return load_sources_file(config.sources_file)


def load_packages(config: RunConfiguration) -> dict[str, SourcePackage]:
    """Return the source packages of this run."""
    return default_packages(
        config.release_version,
        use_gits=config.use_gits,
        overrides=load_overrides(config),
    )


def save_configuration(config: RunConfiguration) -> Path:
    """Record the effective configuration next to the build outputs."""
    path = config.scripts_dir / f"config-{config.build_timestamp}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(print_config_json(config) + "\n", encoding="utf-8")
    return path


def build_target(
    config: RunConfiguration,
    target: TargetSpec,
    packages: dict[str, SourcePackage],
    runner: StepRunner,
    executor: Executor,
) -> DistributionArtifact:
    """Build and publish one target.

    Raises:
        StepFailure: If a build step fails.
        PublishError: If the result cannot be published.
    """
    install_dir = config.target_install_dir(target)
    install_dir.mkdir(parents=True, exist_ok=True)
    (install_dir / STAMP_STARTED).touch()

    logger.info("Building %s (%s)", target, executor.mode.value)
    job = plan_toolchain_job(config, target, executor, packages)
    result = runner.run(job)
    result.raise_for_status()
    logger.info(
        "%s: %d steps run, %d already done",
        target,
        len(result.executed),
        len(result.skipped),
    )

    artifact = publish(job, config, executor)
    write_marker(install_dir / STAMP_COMPLETED)
    return artifact


def run_build(
    config: RunConfiguration,
    client: httpx.Client | None = None,
    executor_factory: ExecutorFactory = executor_for,
    now: datetime | None = None,
) -> list[DistributionArtifact]:
    """Build every requested target, in dependency order.

    The targets are validated and ordered before anything touches the
    disk. Sources are fetched once, then each target is built, published
    and stamped completed in turn. The first failure stops the run;
    running again resumes from the last completed step.

    Args:
        config: Resolved run configuration.
        client: HTTPX client for source downloads.
        executor_factory: Selects the back-end of each target.
        now: Current time, used when a new timestamp is created.

    Returns:
        Published artifacts, in build order.

    Raises:
        ConfigurationError: If the host cannot build a target.
        UnsatisfiableDependencyError: If a prerequisite target is missing.
        StepFailure: If a build step fails.
        PublishError: If an artifact cannot be published.
    """
    check_host(config)
    order = expand_targets(
        config.targets, is_completed=lambda t: target_completed(config, t)
    )
    logger.info("Build order: %s", ", ".join(str(t) for t in order))

    executors = {t: executor_factory(t.host_os, t.bits, config.work_dir) for t in order}
    if any(e.mode == ExecutionMode.CONTAINER for e in executors.values()):
        try:
            check_docker_available()
        except CommandError as e:
            raise ConfigurationError(str(e), code=e.code) from e

    config = pin_build_timestamp(config, now)
    artifacts: list[DistributionArtifact] = []

    with work_dir_lock(config.work_dir):
        save_configuration(config)
        packages = load_packages(config)
        fetch_sources(config, packages.values(), client=client)

        runner = StepRunner(log_dir=config.build_dir / "logs")
        for target in order:
            artifacts.append(
                build_target(config, target, packages, runner, executors[target])
            )

    return artifacts


def run_action(config: RunConfiguration, action: BuildAction) -> list[str]:
    """Run one of the non-build actions.

    Returns:
        Human-readable lines describing what was done.
    """
    if action in (BuildAction.CLEAN, BuildAction.CLEANALL):
        with work_dir_lock(config.work_dir):
            removed = clean(
                config,
                everything=action == BuildAction.CLEANALL,
                overrides=load_overrides(config),
            )
        return [f"Removed {path}" for path in removed] or ["Nothing to remove"]

    if action == BuildAction.BUILD_IMAGES:
        config.work_dir.mkdir(parents=True, exist_ok=True)
        images = build_images(config.work_dir / "build-images.log", config.work_dir)
        return [f"Built {image}" for image in images]

    descriptions = preload_images()
    return [f"{image}: {description}" for image, description in descriptions.items()]


__all__ = [
    "STAMP_COMPLETED",
    "STAMP_STARTED",
    "WorkDirLockedError",
    "build_target",
    "check_host",
    "load_packages",
    "run_action",
    "run_build",
    "target_completed",
    "work_dir_lock",
]
