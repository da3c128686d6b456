"""
Binload CLI
============

Click-based command-line front end: loads one executable and prints the
resulting model as Rich tables or as JSON.

Usage::

    # Summary, sections and symbols
    binload /usr/bin/ls

    # Insist on PE (the hint is advisory; detection wins)
    binload app.exe --type pe

    # Machine-readable output
    binload /usr/bin/ls --json

Exit status is 0 on success, 1 when the file cannot be loaded and 2 for
usage or configuration errors.  A failed load prints a single diagnostic
line naming the file and the cause on standard error.

References:
    - Click documentation: https://click.palletsprojects.com/
"""

from __future__ import annotations

import json
import sys

import click

from shared.config import BinloadConfig
from shared.console import BinloadConsole
from shared.logger import BinloadLogger

from binload.core.errors import LoadError
from binload.core.loader import BinaryLoader, unload_binary
from binload.output.console import BinaryConsoleOutput


@click.command("binload")
@click.argument("path", type=click.Path())
@click.option(
    "--type", "-t",
    "type_hint",
    type=click.Choice(["auto", "elf", "pe"], case_sensitive=False),
    default="auto",
    help="Expected binary format.  Default: auto-detect.",
)
@click.option(
    "--sections/--no-sections",
    default=True,
    help="Show the section table (default: shown).",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Output the loaded model as JSON to stdout.",
)
@click.option(
    "--max-symbols",
    type=click.IntRange(min=1),
    default=50,
    help="Maximum rows per symbol table (default: 50).",
)
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to a TOML configuration file.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging of each loading stage.",
)
def binload_cli(
    path: str,
    type_hint: str,
    sections: bool,
    json_output: bool,
    max_symbols: int,
    config_path: str | None,
    verbose: bool,
) -> None:
    """Load an ELF or PE executable and describe it.

    PATH is the executable to load.

    Examples:

    \b
        binload /usr/bin/ls
        binload kernel32.dll --no-sections
        binload a.out --json
    """
    err_console = BinloadConsole(stderr=True)

    try:
        config = BinloadConfig.load(config_path)
    except (OSError, ValueError) as exc:
        source = config_path or "binload"
        err_console.error(f"{source}: invalid configuration ({exc})")
        sys.exit(2)

    settings = config.global_settings
    logger = BinloadLogger(
        "loader",
        log_level="DEBUG" if verbose or settings.debug else settings.log_level,
        log_file=settings.log_file,
        json_logs=settings.log_json,
    )
    loader = BinaryLoader(config=config, logger=logger)

    try:
        binary = loader.load(path, type_hint)
    except LoadError as exc:
        err_console.error(str(exc))
        sys.exit(1)
    finally:
        logger.close()

    try:
        if json_output:
            click.echo(json.dumps(binary.model_dump(mode="json"), indent=2))
        else:
            BinaryConsoleOutput().display(
                binary, show_sections=sections, max_symbols=max_symbols
            )
    finally:
        unload_binary(binary)


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Entry point for the ``binload`` console script."""
    binload_cli()


if __name__ == "__main__":
    main()
