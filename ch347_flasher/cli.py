"""Thin CLI wrapper for ch347_flasher.

This module provides the command-line interface using Typer.
All bus and flash logic is delegated to the session layer.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)

from ch347_flasher import __version__
from ch347_flasher.config import Settings, get_settings, print_settings_json
from ch347_flasher.errors import FlasherError
from ch347_flasher.flash.chips import ChipGeometry, build_registry
from ch347_flasher.flash.session import ProgrammerSession
from ch347_flasher.types import FlashOperation, SpiClock

app = typer.Typer(
    name="ch347-flasher",
    help="CH347 SPI flash programmer - detect, read, write, verify and erase",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ch347-flasher version {__version__}")
        raise typer.Exit()


def parse_address(value: str) -> int:
    """Parse a decimal or 0x-prefixed address."""
    try:
        address = int(value, 0)
    except ValueError:
        raise typer.BadParameter(f"Not a valid address: {value}") from None
    if address < 0:
        raise typer.BadParameter(f"Address must not be negative: {value}")
    return address


def _chip_dict(chip: ChipGeometry) -> dict[str, object]:
    return {
        "name": chip.name,
        "manufacturer": chip.manufacturer,
        "jedec_id": chip.jedec_hex,
        "size": chip.size,
        "page_size": chip.page_size,
        "sector_size": chip.sector_size,
        "block_size": chip.block_size,
    }


class _ProgressReporter:
    """Map phase progress callbacks onto rich progress bars."""

    def __init__(self, progress: Progress) -> None:
        self._progress = progress
        self._tasks: dict[FlashOperation, TaskID] = {}

    def __call__(self, operation: FlashOperation, done: int, total: int) -> None:
        task = self._tasks.get(operation)
        if task is None:
            task = self._progress.add_task(operation.value.capitalize(), total=total)
            self._tasks[operation] = task
        self._progress.update(task, completed=done, total=total)


@contextmanager
def _progress() -> Iterator[_ProgressReporter]:
    with Progress(
        TextColumn("[bold blue]{task.description:<10}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    ) as progress:
        yield _ProgressReporter(progress)


@contextmanager
def _open_session(ctx: typer.Context) -> Iterator[ProgrammerSession]:
    """Connect to the bridge and detect the chip.

    Errors from the library are printed and turned into exit code 1.
    """
    settings: Settings = ctx.obj["settings"]
    clock: SpiClock | None = ctx.obj["clock"]
    session = ProgrammerSession(settings)
    try:
        session.connect(clock)
        chip = session.detect_chip()
        console.print(
            f"[green]Detected {chip.manufacturer} {chip.name}[/green] "
            f"({chip.size_str}, JEDEC {chip.jedec_hex})"
        )
        yield session
    except FlasherError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        session.disconnect()


@app.callback()
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
    clock: Annotated[
        SpiClock | None,
        typer.Option("--clock", "-c", help="SPI clock (overrides CH347_SPI_CLOCK)"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (overrides CH347_LOG_LEVEL)"),
    ] = None,
) -> None:
    """CH347 SPI flash programmer."""
    settings = get_settings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = {"settings": settings, "clock": clock}


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        chip_db_display = (
            str(settings.chip_db_path) if settings.chip_db_path else "(built-in only)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Bridge:[/bold]")
        console.print(f"  SPI clock:           {settings.spi_clock.value}")
        console.print(f"  USB timeout (ms):    {settings.usb_timeout_ms}")
        console.print()
        console.print("[bold]Chips:[/bold]")
        console.print(f"  Chip database:       {chip_db_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Erase before write:  {settings.erase_before_write}")
        console.print(f"  Verify after write:  {settings.verify_after_write}")
        console.print()
        console.print("[bold]Timeouts (ms):[/bold]")
        console.print(f"  Page program:        {settings.page_program_timeout_ms}")
        console.print(f"  Sector erase:        {settings.sector_erase_timeout_ms}")
        console.print(f"  Block erase:         {settings.block_erase_timeout_ms}")
        console.print(f"  Chip erase:          {settings.chip_erase_timeout_ms}")


@app.command()
def chips(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List known flash chips."""
    try:
        registry = build_registry(ctx.obj["settings"])
    except (FlasherError, OSError) as e:
        console.print(f"[red]Failed to load chip database: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps([_chip_dict(c) for c in registry], indent=2))
        return

    console.print(f"[bold]Known chips ({len(registry)}):[/bold]")
    for chip in registry:
        console.print(
            f"  {chip.jedec_hex}  {chip.manufacturer:<12} {chip.name:<14} {chip.size_str}"
        )


@app.command()
def detect(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Connect to the bridge and identify the flash chip."""
    settings: Settings = ctx.obj["settings"]
    session = ProgrammerSession(settings)
    try:
        info = session.connect(ctx.obj["clock"])
        chip = session.detect_chip()
    except FlasherError as e:
        if json_output:
            console.print(
                json.dumps(
                    {"success": False, "error": e.message, "error_code": e.error_code},
                    indent=2,
                )
            )
        else:
            console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        session.disconnect()

    if json_output:
        output = {
            "success": True,
            "bridge": {
                "vid": f"{info.vid:04x}",
                "pid": f"{info.pid:04x}",
                "product": info.product,
                "interface": info.interface,
            },
            "chip": _chip_dict(chip),
        }
        console.print(json.dumps(output, indent=2))
    else:
        variant = "CH347T" if info.is_ch347t else "CH347F"
        console.print(
            f"[bold]Bridge:[/bold] {variant} ({info.vid:04x}:{info.pid:04x}) "
            f"interface {info.interface}"
        )
        console.print(f"[bold]Chip:[/bold]   {chip.manufacturer} {chip.name}")
        console.print(f"  JEDEC ID:    {chip.jedec_hex}")
        console.print(f"  Size:        {chip.size_str} ({chip.size} bytes)")
        console.print(f"  Page size:   {chip.page_size}")
        console.print(f"  Sector size: {chip.sector_size}")


@app.command()
def read(
    ctx: typer.Context,
    output: Annotated[Path, typer.Argument(help="File to write the dump to")],
    offset: Annotated[
        str,
        typer.Option("--offset", "-o", help="Start address (decimal or 0x hex)"),
    ] = "0",
    length: Annotated[
        str | None,
        typer.Option("--length", "-l", help="Bytes to read (default: to end of chip)"),
    ] = None,
) -> None:
    """Dump flash contents to a file."""
    address = parse_address(offset)
    count = parse_address(length) if length is not None else None

    with _open_session(ctx) as session, _progress() as progress:
        data = session.read_flash(address, count, progress=progress)

    try:
        output.write_bytes(data)
    except OSError as e:
        console.print(f"[red]Failed to write {output}: {e}[/red]")
        raise typer.Exit(code=1) from None
    console.print(f"[green]✓ Read {len(data)} bytes to {output}[/green]")


def _load_image(image: Path) -> bytes:
    try:
        return image.read_bytes()
    except OSError as e:
        console.print(f"[red]Failed to read {image}: {e}[/red]")
        raise typer.Exit(code=1) from None


@app.command()
def write(
    ctx: typer.Context,
    image: Annotated[Path, typer.Argument(help="Image file to program")],
    offset: Annotated[
        str,
        typer.Option("--offset", "-o", help="Start address (decimal or 0x hex)"),
    ] = "0",
    no_erase: Annotated[
        bool,
        typer.Option("--no-erase", help="Do not erase before programming"),
    ] = False,
    no_verify: Annotated[
        bool,
        typer.Option("--no-verify", help="Skip read-back verification"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
) -> None:
    """Erase, program and verify an image.

    This is a DESTRUCTIVE operation: the covered sectors are overwritten.
    Use --force to skip the confirmation prompt.
    """
    address = parse_address(offset)
    data = _load_image(image)
    if not data:
        console.print(f"[red]Image is empty: {image}[/red]")
        raise typer.Exit(code=1)

    with _open_session(ctx) as session:
        if not force:
            console.print(
                f"[bold red]WARNING:[/bold red] This will OVERWRITE "
                f"{len(data)} bytes at 0x{address:06X}"
            )
            confirm = typer.confirm("Are you sure you want to continue?", default=False)
            if not confirm:
                console.print("[yellow]Aborted[/yellow]")
                raise typer.Exit(code=0)

        with _progress() as progress:
            result = session.write_flash(
                data,
                address,
                erase=False if no_erase else None,
                verify=False if no_verify else None,
                progress=progress,
            )

    console.print("[green]✓ Write succeeded[/green]")
    console.print(f"  Bytes written:  {result.bytes_written}")
    console.print(f"  Sectors erased: {result.sectors_erased}")
    console.print(f"  Verified:       {result.verified}")


@app.command()
def verify(
    ctx: typer.Context,
    image: Annotated[Path, typer.Argument(help="Image file to compare against")],
    offset: Annotated[
        str,
        typer.Option("--offset", "-o", help="Start address (decimal or 0x hex)"),
    ] = "0",
) -> None:
    """Compare flash contents with an image."""
    address = parse_address(offset)
    data = _load_image(image)

    with _open_session(ctx) as session, _progress() as progress:
        matched = session.verify_flash(data, address, progress=progress)

    if not matched:
        console.print("[red]✗ Verification failed: contents differ[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Verified {len(data)} bytes at 0x{address:06X}[/green]")


@app.command()
def erase(
    ctx: typer.Context,
    chip: Annotated[
        bool,
        typer.Option("--chip", help="Erase the whole chip"),
    ] = False,
    sector: Annotated[
        str | None,
        typer.Option("--sector", help="Erase the 4 KiB sector at this address"),
    ] = None,
    block: Annotated[
        str | None,
        typer.Option("--block", help="Erase the 64 KiB block at this address"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompts"),
    ] = False,
) -> None:
    """Erase the chip, one sector or one block."""
    choices = (("chip", chip), ("sector", sector), ("block", block))
    selected = [name for name, value in choices if value]
    if len(selected) != 1:
        console.print("[red]Specify exactly one of --chip, --sector or --block[/red]")
        raise typer.Exit(code=1)

    address = 0
    if sector is not None:
        address = parse_address(sector)
    elif block is not None:
        address = parse_address(block)

    with _open_session(ctx) as session:
        if not force:
            target = "the WHOLE chip" if chip else f"the {selected[0]} at 0x{address:06X}"
            console.print(f"[bold red]WARNING:[/bold red] This will ERASE {target}")
            confirm = typer.confirm("Are you sure you want to continue?", default=False)
            if not confirm:
                console.print("[yellow]Aborted[/yellow]")
                raise typer.Exit(code=0)

        if chip:
            with console.status("Erasing chip (this can take minutes)..."):
                session.erase_chip()
        elif sector is not None:
            session.erase_sector(address)
        else:
            session.erase_block(address)

    console.print("[green]✓ Erase complete[/green]")


if __name__ == "__main__":
    app()
