"""Resumable step execution.

Every expensive action is wrapped in check-then-act-then-mark: a step whose
completion marker exists is skipped, so an interrupted multi-hour build can
be restarted without redoing finished work. The first failing step halts
the job; nothing is retried.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from riscv_gcc_build.errors import StepFailure
from riscv_gcc_build.targets import TargetSpec
from riscv_gcc_build.types import JobStatus

logger = logging.getLogger(__name__)

MARKER_NAME = "stamp-install-completed"


@dataclass(frozen=True)
class BuildStep:
    """A named, idempotent unit of work.

    Attributes:
        name: Unique name within a job.
        marker_path: File whose existence means the step is done.
        action: External procedure; raises on failure.
    """

    name: str
    marker_path: Path
    action: Callable[[], object]

    def is_completed(self) -> bool:
        """Check whether the completion marker exists."""
        return self.marker_path.exists()


@dataclass
class BuildJob:
    """Ordered steps building one target.

    Attributes:
        name: Job name, used for the aggregated log file.
        steps: Steps in execution order.
        target: Target being built, if any.
        status: Current lifecycle state.
    """

    name: str
    steps: list[BuildStep]
    target: TargetSpec | None = None
    status: JobStatus = JobStatus.PENDING

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise ValueError(f"Duplicate step name in job {self.name}: {step.name}")
            seen.add(step.name)


@dataclass
class JobResult:
    """Outcome of running a job.

    Attributes:
        job_name: Name of the job.
        status: COMPLETED or FAILED.
        executed: Steps whose action ran and succeeded.
        skipped: Steps skipped because their marker existed.
        failed_step: Name of the failing step, if any.
        cause: Exception raised by the failing step.
        log_path: Log file with details about the failure.
    """

    job_name: str
    status: JobStatus
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_step: str | None = None
    cause: BaseException | None = None
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def raise_for_status(self) -> None:
        """Raise StepFailure if the job failed."""
        if self.status == JobStatus.FAILED:
            raise StepFailure(
                self.failed_step or "?",
                self.cause or "unknown error",
                target=self.job_name,
                log_path=self.log_path,
            )


def write_marker(path: Path) -> Path:
    """Atomically publish a completion marker.

    The marker is written to a temporary file in the same folder and then
    renamed, so it never exists in a partially-written state.

    Args:
        path: Marker path.

    Returns:
        The marker path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as f:
            f.write(datetime.now(timezone.utc).isoformat() + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


class StepRunner:
    """Runs the steps of a job, skipping completed ones.

    Args:
        log_dir: Folder for aggregated ``<job>.log`` files; no aggregated
            log is written if None.
    """

    def __init__(self, log_dir: Path | None = None) -> None:
        self.log_dir = log_dir

    def _log_path(self, job: BuildJob) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / f"{job.name}.log"

    def _record(self, job: BuildJob, message: str) -> None:
        log_path = self._log_path(job)
        if log_path is None:
            return
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a") as f:
            f.write(f"{datetime.now(timezone.utc).isoformat()} {message}\n")

    def run(self, job: BuildJob) -> JobResult:
        """Run a job to completion or first failure.

        Args:
            job: Job to run. A completed job may be run again (every step
                is then skipped); a failed job may not.

        Returns:
            JobResult describing the outcome.

        Raises:
            ValueError: If the job already failed.
        """
        if job.status == JobStatus.FAILED:
            raise ValueError(
                f"Job {job.name} already failed; plan a new job to resume"
            )

        result = JobResult(job_name=job.name, status=JobStatus.RUNNING)
        total = len(job.steps)

        for index, step in enumerate(job.steps, start=1):
            job.status = JobStatus.RUNNING

            if step.is_completed():
                logger.info("[%s] %d/%d %s: already done", job.name, index, total, step.name)
                self._record(job, f"SKIP {step.name}")
                result.skipped.append(step.name)
                continue

            logger.info("[%s] %d/%d %s: running", job.name, index, total, step.name)
            self._record(job, f"START {step.name}")

            try:
                step.action()
                write_marker(step.marker_path)
            except Exception as e:
                job.status = JobStatus.FAILED
                self._record(job, f"FAILED {step.name}: {e}")
                log_path = getattr(e, "log_path", None) or self._log_path(job)
                logger.error("[%s] %s failed: %s", job.name, step.name, e)
                result.status = JobStatus.FAILED
                result.failed_step = step.name
                result.cause = e
                result.log_path = log_path
                return result

            self._record(job, f"DONE {step.name}")
            result.executed.append(step.name)

        job.status = JobStatus.COMPLETED
        result.status = JobStatus.COMPLETED
        self._record(job, "COMPLETED")
        return result


__all__ = [
    "MARKER_NAME",
    "BuildJob",
    "BuildStep",
    "JobResult",
    "StepRunner",
    "write_marker",
]
