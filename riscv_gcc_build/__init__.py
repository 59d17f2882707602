"""RISC-V Embedded GCC build - staged, resumable toolchain distribution builds.

This package drives the multi-stage binutils/GCC/newlib cross build for
several host platforms and packages each result into a distribution archive.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
