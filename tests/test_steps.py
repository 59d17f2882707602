"""Tests for resumable step execution."""

from pathlib import Path
from unittest.mock import patch

import pytest

from riscv_gcc_build.builds.steps import (
    MARKER_NAME,
    BuildJob,
    BuildStep,
    StepRunner,
    write_marker,
)
from riscv_gcc_build.errors import StepFailure
from riscv_gcc_build.types import JobStatus


class Recorder:
    """Collects the names of the actions that ran."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def action(self, name: str, fail: bool = False):
        def _run() -> None:
            self.calls.append(name)
            if fail:
                raise RuntimeError(f"{name} broke")

        return _run


def make_job(tmp_path: Path, recorder: Recorder, names: list[str], failing: str | None = None) -> BuildJob:
    steps = [
        BuildStep(
            name=name,
            marker_path=tmp_path / "build" / name / MARKER_NAME,
            action=recorder.action(name, fail=name == failing),
        )
        for name in names
    ]
    return BuildJob(name="linux64", steps=steps)


class TestWriteMarker:
    """Tests for write_marker function."""

    def test_creates_marker_and_parents(self, tmp_path: Path) -> None:
        marker = tmp_path / "a" / "b" / MARKER_NAME
        write_marker(marker)

        assert marker.is_file()
        assert marker.read_text().strip()

    def test_no_temporary_files_left(self, tmp_path: Path) -> None:
        write_marker(tmp_path / MARKER_NAME)
        assert [p.name for p in tmp_path.iterdir()] == [MARKER_NAME]


class TestBuildJob:
    """Tests for BuildJob."""

    def test_duplicate_step_names(self, tmp_path: Path) -> None:
        recorder = Recorder()
        with pytest.raises(ValueError, match="Duplicate"):
            make_job(tmp_path, recorder, ["gmp", "gmp"])

    def test_starts_pending(self, tmp_path: Path) -> None:
        job = make_job(tmp_path, Recorder(), ["gmp"])
        assert job.status == JobStatus.PENDING


class TestStepRunner:
    """Tests for StepRunner.run."""

    def test_runs_all_steps_in_order(self, tmp_path: Path) -> None:
        recorder = Recorder()
        job = make_job(tmp_path, recorder, ["gmp", "mpfr", "mpc"])

        result = StepRunner().run(job)

        assert recorder.calls == ["gmp", "mpfr", "mpc"]
        assert result.status == JobStatus.COMPLETED
        assert result.success
        assert result.executed == ["gmp", "mpfr", "mpc"]
        assert job.status == JobStatus.COMPLETED
        for step in job.steps:
            assert step.is_completed()

    def test_idempotent_resume(self, tmp_path: Path) -> None:
        """Running again after success runs no action."""
        recorder = Recorder()
        StepRunner().run(make_job(tmp_path, recorder, ["gmp", "mpfr"]))
        recorder.calls.clear()

        result = StepRunner().run(make_job(tmp_path, recorder, ["gmp", "mpfr"]))

        assert recorder.calls == []
        assert result.skipped == ["gmp", "mpfr"]
        assert result.status == JobStatus.COMPLETED

    def test_completed_job_can_run_again(self, tmp_path: Path) -> None:
        recorder = Recorder()
        job = make_job(tmp_path, recorder, ["gmp"])
        runner = StepRunner()
        runner.run(job)

        result = runner.run(job)

        assert result.skipped == ["gmp"]
        assert recorder.calls == ["gmp"]

    def test_fail_fast(self, tmp_path: Path) -> None:
        recorder = Recorder()
        job = make_job(tmp_path, recorder, ["gmp", "mpfr", "mpc"], failing="mpfr")

        result = StepRunner().run(job)

        assert recorder.calls == ["gmp", "mpfr"]
        assert result.status == JobStatus.FAILED
        assert result.failed_step == "mpfr"
        assert isinstance(result.cause, RuntimeError)
        assert job.status == JobStatus.FAILED
        assert job.steps[0].is_completed()
        assert not job.steps[1].is_completed()
        assert not job.steps[2].is_completed()

    def test_resume_after_failure(self, tmp_path: Path) -> None:
        """A new job resumes at the failed step."""
        recorder = Recorder()
        StepRunner().run(make_job(tmp_path, recorder, ["gmp", "mpfr", "mpc"], failing="mpfr"))
        recorder.calls.clear()

        result = StepRunner().run(make_job(tmp_path, recorder, ["gmp", "mpfr", "mpc"]))

        assert recorder.calls == ["mpfr", "mpc"]
        assert result.skipped == ["gmp"]
        assert result.executed == ["mpfr", "mpc"]

    def test_failed_job_cannot_run_again(self, tmp_path: Path) -> None:
        job = make_job(tmp_path, Recorder(), ["gmp"], failing="gmp")
        runner = StepRunner()
        runner.run(job)

        with pytest.raises(ValueError, match="already failed"):
            runner.run(job)

    def test_raise_for_status(self, tmp_path: Path) -> None:
        job = make_job(tmp_path, Recorder(), ["gmp", "isl"], failing="isl")
        result = StepRunner(log_dir=tmp_path / "logs").run(job)

        with pytest.raises(StepFailure) as exc_info:
            result.raise_for_status()

        assert exc_info.value.step_name == "isl"
        assert exc_info.value.target == "linux64"
        assert exc_info.value.log_path == tmp_path / "logs" / "linux64.log"
        assert "isl broke" in str(exc_info.value)

    def test_raise_for_status_success(self, tmp_path: Path) -> None:
        result = StepRunner().run(make_job(tmp_path, Recorder(), ["gmp"]))
        result.raise_for_status()

    def test_cause_log_path_preferred(self, tmp_path: Path) -> None:
        """The failing command's own log is reported when known."""
        step_log = tmp_path / "gmp" / "make-output.txt"

        class LoggedError(Exception):
            log_path = step_log

        def fail() -> None:
            raise LoggedError("make failed")

        job = BuildJob(
            name="native",
            steps=[BuildStep("gmp", tmp_path / "gmp" / MARKER_NAME, fail)],
        )
        result = StepRunner(log_dir=tmp_path / "logs").run(job)

        assert result.log_path == step_log

    def test_aggregated_log(self, tmp_path: Path) -> None:
        recorder = Recorder()
        log_dir = tmp_path / "logs"
        StepRunner(log_dir=log_dir).run(make_job(tmp_path, recorder, ["gmp"]))
        StepRunner(log_dir=log_dir).run(make_job(tmp_path, recorder, ["gmp", "mpfr"], failing="mpfr"))

        lines = (log_dir / "linux64.log").read_text().splitlines()
        events = [line.split(" ", 1)[1] for line in lines]

        assert events == [
            "START gmp",
            "DONE gmp",
            "COMPLETED",
            "SKIP gmp",
            "START mpfr",
            "FAILED mpfr: mpfr broke",
        ]

    def test_marker_not_written_on_failure(self, tmp_path: Path) -> None:
        job = make_job(tmp_path, Recorder(), ["gmp"], failing="gmp")
        StepRunner().run(job)
        assert not (tmp_path / "build" / "gmp").exists()

    def test_marker_write_failure_fails_job(self, tmp_path: Path) -> None:
        recorder = Recorder()
        job = make_job(tmp_path, recorder, ["gmp", "mpfr"])

        with patch(
            "riscv_gcc_build.builds.steps.write_marker",
            side_effect=OSError("No space left on device"),
        ):
            result = StepRunner(log_dir=tmp_path / "logs").run(job)

        assert recorder.calls == ["gmp"]
        assert result.status == JobStatus.FAILED
        assert result.failed_step == "gmp"
        assert isinstance(result.cause, OSError)
        assert result.log_path == tmp_path / "logs" / "linux64.log"
        assert job.status == JobStatus.FAILED
        assert not job.steps[0].is_completed()
