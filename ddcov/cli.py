"""command line interface for ddcov"""

import logging
from typing import List
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .pintool import DragonDanceError, Trace
from .lift import lift_trace_file


app = typer.Typer(
    help="record coverage traces in the dragondance pin helper format",
    no_args_is_help=True,
    context_settings=dict(help_option_names=["-h", "--help"]),
    pretty_exceptions_short=True,
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

# global state for verbose option
verbose_enabled = False


def setup_logging(verbose: bool):
    """route library logging through rich on stderr"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def print_module_table(trace: Trace):
    """show the module table that was written"""
    table = Table(title="module table")
    table.add_column("#", justify="right")
    table.add_column("base", style="cyan")
    table.add_column("end", style="cyan")
    table.add_column("name")

    for number, module in enumerate(trace.modules, 1):
        table.add_row(
            str(number), f"0x{module.base:x}", f"0x{module.end:x}", module.name
        )

    Console().print(table)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "-v", "--verbose", help="enable verbose output for all operations"
    ),
):
    """global options for ddcov"""
    global verbose_enabled
    verbose_enabled = verbose
    setup_logging(verbose)


@app.command()
def lift(
    input_file: Path = typer.Argument(
        ..., help="input file with simple coverage format"
    ),
    output: Path = typer.Option(..., "--output", "-o", help="output pin helper file"),
    modules: List[str] = typer.Option(
        [], "--module", "-M", help="module definitions (name@base[:end|+size])"
    ),
    size: int = typer.Option(
        1, "--size", "-s", help="block size for entries that do not give one"
    ),
    skip_unmapped: bool = typer.Option(
        False, "--skip-unmapped", help="drop addresses outside every module"
    ),
):
    """lift simple coverage traces to the pin helper format"""
    if not modules:
        typer.echo("error: at least one module must be specified with -M", err=True)
        raise typer.Exit(1)

    try:
        trace = lift_trace_file(input_file, modules, size, skip_unmapped)
        trace.save(output)
    except (DragonDanceError, OSError) as e:
        typer.echo(f"error lifting trace: {e}", err=True)
        if verbose_enabled:
            import traceback

            traceback.print_exc()
        raise typer.Exit(1)

    if verbose_enabled:
        print_module_table(trace)

    typer.echo(
        f"wrote {len(trace)} entries ({len(trace.modules)} modules) to {output}"
    )


def main():
    """entry point for console script"""
    app()


if __name__ == "__main__":
    main()
