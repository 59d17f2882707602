"""Error definitions for the build orchestrator.

Every error carries a stable ``code`` for programmatic handling and, where
one exists, the path of the log file with more information.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

CONFIGURATION_ERROR = "configuration_error"
UNSATISFIABLE_DEPENDENCY = "unsatisfiable_dependency"
STEP_FAILED = "step_failed"
PUBLISH_ERROR = "publish_error"


class OrchestratorError(Exception):
    """Base class for errors surfaced to the invoker."""

    def __init__(
        self,
        message: str,
        code: str,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.log_path = log_path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": str(self),
        }
        if self.log_path is not None:
            result["log_path"] = str(self.log_path)
        return result


class ConfigurationError(OrchestratorError):
    """Raised for invalid or contradictory options."""

    def __init__(self, message: str, code: str = CONFIGURATION_ERROR) -> None:
        super().__init__(message, code=code)


class UnsatisfiableDependencyError(OrchestratorError):
    """Raised when a requested target's prerequisite target is unavailable."""

    def __init__(
        self,
        target: str,
        missing: str,
        code: str = UNSATISFIABLE_DEPENDENCY,
    ) -> None:
        super().__init__(
            f"Target {target} requires {missing}, which is neither requested "
            f"nor already built",
            code=code,
        )
        self.target = target
        self.missing = missing


class StepFailure(OrchestratorError):
    """Raised when an external build step fails; the pipeline halts."""

    def __init__(
        self,
        step_name: str,
        cause: BaseException | str,
        target: str | None = None,
        log_path: Path | None = None,
        code: str = STEP_FAILED,
    ) -> None:
        where = f" for {target}" if target else ""
        super().__init__(
            f"Step '{step_name}'{where} failed: {cause}",
            code=code,
            log_path=log_path,
        )
        self.step_name = step_name
        self.cause = cause
        self.target = target

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["step"] = self.step_name
        if self.target:
            result["target"] = self.target
        return result


class PublishError(OrchestratorError):
    """Raised when a job's output cannot be published."""

    def __init__(
        self,
        message: str,
        log_path: Path | None = None,
        code: str = PUBLISH_ERROR,
    ) -> None:
        super().__init__(message, code=code, log_path=log_path)


__all__ = [
    "CONFIGURATION_ERROR",
    "PUBLISH_ERROR",
    "STEP_FAILED",
    "UNSATISFIABLE_DEPENDENCY",
    "ConfigurationError",
    "OrchestratorError",
    "PublishError",
    "StepFailure",
    "UnsatisfiableDependencyError",
]
