"""Thin CLI wrapper for riscv_gcc_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.

Asking for help and passing an unknown option or argument both print
usage text and exit with status 1.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import click
import typer
from rich.console import Console
from rich.logging import RichHandler
from typer.core import TyperGroup

from riscv_gcc_build import __version__
from riscv_gcc_build.builds.runner import CommandError
from riscv_gcc_build.config import (
    RunConfiguration,
    config_to_dict,
    environment_overrides,
    print_config_json,
    resolve_run_configuration,
)
from riscv_gcc_build.errors import OrchestratorError, StepFailure
from riscv_gcc_build.sources.fetch import DownloadError, ExtractionError, VerificationError
from riscv_gcc_build.targets import all_targets, native_target
from riscv_gcc_build.types import BuildAction

USAGE_EXIT_CODE = 1


class UsageExitGroup(TyperGroup):
    """Command group whose usage errors exit with USAGE_EXIT_CODE."""

    def make_context(self, info_name, args, parent=None, **extra):
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as e:
            e.exit_code = USAGE_EXIT_CODE
            raise

    def invoke(self, ctx):
        # Subcommand arguments are parsed here, after the group context exists.
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = USAGE_EXIT_CODE
            raise


app = typer.Typer(
    name="riscv-gcc-build",
    help="RISC-V Embedded GCC distribution builder - staged, resumable, multi-target",
    cls=UsageExitGroup,
    context_settings={"help_option_names": []},
)
console = Console()
err_console = Console(stderr=True)

HANDLED_ERRORS = (
    OrchestratorError,
    CommandError,
    DownloadError,
    VerificationError,
    ExtractionError,
)


def setup_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"riscv-gcc-build version {__version__}")
        raise typer.Exit()


def help_callback(ctx: typer.Context, value: bool) -> None:
    """Print help for the current command and exit with USAGE_EXIT_CODE."""
    if value and not ctx.resilient_parsing:
        typer.echo(ctx.get_help(), color=ctx.color)
        raise typer.Exit(code=USAGE_EXIT_CODE)


HelpOption = Annotated[
    bool,
    typer.Option(
        "--help",
        "-h",
        help="Show this message and exit",
        callback=help_callback,
        is_eager=True,
        expose_value=False,
    ),
]


def error_to_dict(error: Exception) -> dict[str, Any]:
    """Convert a handled error to JSON-compatible data."""
    if isinstance(error, OrchestratorError):
        return error.to_dict()
    result: dict[str, Any] = {"code": getattr(error, "code", "error"), "message": str(error)}
    log_path = getattr(error, "log_path", None)
    if log_path is not None:
        result["log_path"] = str(log_path)
    return result


def report_error(error: Exception, json_output: bool) -> None:
    """Print an error the way the selected output mode expects."""
    if json_output:
        typer.echo(json.dumps({"success": False, "error": error_to_dict(error)}, indent=2))
        return

    err_console.print(f"Error: {error}", style="red", markup=False)
    if isinstance(error, StepFailure):
        err_console.print(f"  Step:   {error.step_name}")
        if error.target:
            err_console.print(f"  Target: {error.target}")
    log_path = getattr(error, "log_path", None)
    if log_path is not None:
        err_console.print(f"  Log:    {log_path}")
    if isinstance(error, StepFailure):
        err_console.print("Run the same command again to resume from the failed step.")


def _flag(value: bool) -> bool | None:
    """Map an unset boolean flag to 'not given'."""
    return True if value else None


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    show_help: HelpOption = False,
) -> None:
    """RISC-V Embedded GCC distribution builder."""
    if ctx.invoked_subcommand is None:
        help_callback(ctx, True)


@app.command()
def build(
    action: Annotated[
        BuildAction | None,
        typer.Argument(help="Optional action instead of building"),
    ] = None,
    targets: Annotated[
        list[str] | None,
        typer.Option(
            "--target",
            "-t",
            help="Target to build, e.g. linux64, win32, osx (can be repeated)",
        ),
    ] = None,
    all_: Annotated[
        bool,
        typer.Option("--all", help="Build all targets"),
    ] = False,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", help="Parallel make jobs"),
    ] = None,
    disable_strip: Annotated[
        bool,
        typer.Option("--disable-strip", help="Do not strip executables"),
    ] = False,
    without_docs: Annotated[
        bool,
        typer.Option("--without-docs", "--without-pdf", help="Do not build manuals"),
    ] = False,
    disable_multilib: Annotated[
        bool,
        typer.Option("--disable-multilib", help="Build a single library variant"),
    ] = False,
    develop: Annotated[
        bool,
        typer.Option("--develop", help="Developer mode (verbose logging)"),
    ] = False,
    use_gits: Annotated[
        bool,
        typer.Option("--use-gits", help="Check sources out from git"),
    ] = False,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Work folder (default ~/Work/<app>)"),
    ] = None,
    sources: Annotated[
        Path | None,
        typer.Option("--sources", help="YAML file overriding source versions/URLs"),
    ] = None,
    timestamp: Annotated[
        str | None,
        typer.Option("--timestamp", help="Reuse a build timestamp (YYYYmmdd-HHMM)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    show_help: HelpOption = False,
) -> None:
    """Build the toolchain distribution for the requested targets.

    Without targets the native toolchain is built. Windows targets need
    the GNU/Linux target of the same width, requested in the same run
    or built earlier. Interrupted builds resume when run again.
    """
    from riscv_gcc_build.builds.service import run_action, run_build

    requested: list[Any] = list(targets or [])
    if all_:
        requested.extend(all_targets())

    cli_flags: dict[str, Any] = {
        "targets": requested or None,
        "jobs": jobs,
        "skip_strip": _flag(disable_strip),
        "skip_docs": _flag(without_docs),
        "multilib_enabled": False if disable_multilib else None,
        "develop_mode": _flag(develop),
        "use_gits": _flag(use_gits),
        "work_dir": work_dir,
        "sources_file": sources,
        "build_timestamp": timestamp,
    }

    try:
        config = resolve_run_configuration(
            environment=environment_overrides(), cli_flags=cli_flags
        )
    except OrchestratorError as e:
        report_error(e, json_output)
        raise typer.Exit(code=1) from None

    setup_logging("DEBUG" if config.develop_mode else config.log_level)

    try:
        if action is not None:
            lines = run_action(config, action)
            if json_output:
                summary = {"success": True, "action": action.value, "results": lines}
                typer.echo(json.dumps(summary, indent=2))
            else:
                for line in lines:
                    console.print(line, markup=False)
            return

        artifacts = run_build(config)
    except HANDLED_ERRORS as e:
        report_error(e, json_output)
        raise typer.Exit(code=1) from None

    if json_output:
        data = {
            "success": True,
            "artifacts": [
                {
                    "archive_path": str(a.archive_path),
                    "sha256": a.sha256,
                    "licenses": len(a.license_manifest),
                    "build_logs": [str(p) for p in a.build_log_paths],
                }
                for a in artifacts
            ],
        }
        typer.echo(json.dumps(data, indent=2))
    else:
        console.print("[green]Build completed[/green]")
        for a in artifacts:
            console.print(f"  {a.archive_path}")
            console.print(f"    sha256: {a.sha256}")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    show_help: HelpOption = False,
) -> None:
    """Show effective configuration."""
    try:
        run_config = resolve_run_configuration(environment=environment_overrides())
    except OrchestratorError as e:
        report_error(e, json_output)
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(print_config_json(run_config))
    else:
        _print_config(run_config)


def _print_config(run_config: RunConfiguration) -> None:
    data = config_to_dict(run_config)
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Distribution:[/bold]")
    console.print(f"  Application:         {data['app_name']} ({data['app_lc_name']})")
    console.print(f"  Release version:     {data['release_version']}")
    console.print(f"  Build timestamp:     {data['build_timestamp'] or '(new)'}")
    console.print(f"  GCC target:          {data['gcc_target']}")
    console.print(f"  Arch / ABI:          {data['gcc_arch']} / {data['gcc_abi']}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Work directory:      {data['work_dir']}")
    console.print(f"  Download directory:  {data['download_dir']}")
    console.print(f"  Build directory:     {data['build_dir']}")
    console.print(f"  Deploy directory:    {data['deploy_dir']}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Targets:             {', '.join(data['targets'])}")
    console.print(f"  Jobs:                {data['jobs']}")
    console.print(f"  Multilib:            {data['multilib_enabled']}")
    console.print(f"  Skip docs:           {data['skip_docs']}")
    console.print(f"  Skip strip:          {data['skip_strip']}")
    console.print(f"  Use gits:            {data['use_gits']}")
    console.print(f"  Log level:           {data['log_level']}")


@app.command("targets")
def list_targets(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
    show_help: HelpOption = False,
) -> None:
    """List the supported targets."""
    specs = [native_target(), *all_targets()]

    if json_output:
        data = [
            {
                "name": t.slug,
                "host_os": t.host_os.value,
                "bits": t.bits,
                "depends_on": t.depends_on.slug if t.depends_on else None,
            }
            for t in specs
        ]
        typer.echo(json.dumps(data, indent=2))
        return

    console.print("[bold]Supported Targets:[/bold]")
    for t in specs:
        requires = f" (requires {t.depends_on.slug})" if t.depends_on else ""
        console.print(f"  {t.slug:<8} {t.host_os.value}/{t.bits}{requires}")


__all__ = ["app"]
