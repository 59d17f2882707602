"""Allow ``python -m riscv_gcc_build``."""

from riscv_gcc_build.cli import app

if __name__ == "__main__":
    app(prog_name="riscv-gcc-build")
