"""Build orchestration module.

This module handles:
- Resumable step execution with completion markers
- Native and containerized command execution
- The toolchain build plan of each target
- Publishing distribution archives
- Cleaning build outputs
"""

from riscv_gcc_build.builds.steps import BuildJob, BuildStep, JobResult, StepRunner

__all__ = ["BuildJob", "BuildStep", "JobResult", "StepRunner"]

# Submodules are imported explicitly, e.g. riscv_gcc_build.builds.service
