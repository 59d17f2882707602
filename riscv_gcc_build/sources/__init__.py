"""Upstream sources: package definitions and fetching.

Access submodules via riscv_gcc_build.sources.models and
riscv_gcc_build.sources.fetch.
"""

from riscv_gcc_build.sources.models import SourcePackage, default_packages

__all__ = ["SourcePackage", "default_packages"]
