"""Shared fixtures for the test suite."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from riscv_gcc_build.builds.executors import Executor
from riscv_gcc_build.builds.runner import CommandResult
from riscv_gcc_build.config import RunConfiguration, resolve_run_configuration
from riscv_gcc_build.types import ExecutionMode


class RecordingExecutor(Executor):
    """Executor that records commands instead of running them."""

    mode = ExecutionMode.NATIVE

    def __init__(self, banner: str = "riscv-none-embed-gcc (GNU MCU Eclipse) 7.2.0") -> None:
        self.banner = banner
        self.runs: list[dict[str, Any]] = []
        self.captures: list[list[str]] = []

    def run(self, cmd, cwd, log_path, env=None, path=()):
        self.runs.append(
            {"cmd": cmd, "cwd": cwd, "log_path": log_path, "env": env or {}, "path": list(path)}
        )
        return CommandResult(
            exit_code=0,
            log_path=log_path,
            started_at=None,  # type: ignore[arg-type]
            finished_at=None,  # type: ignore[arg-type]
            command=" ".join(cmd),
        )

    def capture(self, cmd, env=None, path=()):
        self.captures.append(cmd)
        return self.banner

    def commands(self) -> list[list[str]]:
        return [r["cmd"] for r in self.runs]


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Work folder below the test's temporary directory."""
    return tmp_path / "work"


@pytest.fixture
def make_config(work_dir: Path) -> Callable[..., RunConfiguration]:
    """Factory for configurations rooted in a temporary work folder."""

    def _make(**flags: Any) -> RunConfiguration:
        flags.setdefault("work_dir", work_dir)
        flags.setdefault("build_timestamp", "20240102-0304")
        return resolve_run_configuration(environment={}, cli_flags=flags)

    return _make


@pytest.fixture
def executor() -> RecordingExecutor:
    """Executor recording the commands it is given."""
    return RecordingExecutor()
