"""
btrfs-recovery - Command-Line Interface
CLI with rich terminal output

Features:
- Superblock and block inspection
- Single block repair from mirrors and block files
- Filesystem wide repair driven by a reference database
- Restoring block backups
"""

import json
import sys
from typing import List, Optional

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__, constants
from ..app import RecoveryApp, parse_superblock
from ..exceptions import RecoveryError, UnresolvedAmbiguityError
from ..utils import encode_data, format_checksum, format_size, get_btrfs_partitions, is_mounted

console = Console()

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_INTERRUPTED = 2
EXIT_PARTIALLY_FIXED = 3
EXIT_NOT_FIXED = 4
EXIT_AMBIGUOUS = 5


def parse_block_numbers(ctx, param, value) -> List[int]:
    """Comma separated block numbers"""
    if not value:
        return []
    try:
        return [int(number.strip(), 0) for number in value.split(',') if number.strip()]
    except ValueError:
        raise click.BadParameter(f"Invalid block number list: {value}")


def show_superblock(superblock, full_info: bool = False):
    console.print(Panel(superblock.describe(), title="[bold blue]Superblock[/bold blue]",
                        border_style="blue", box=box.ROUNDED))
    if full_info:
        console.print_json(json.dumps(superblock.to_dict()))


def show_blocks(blocks, full_info: bool = False):
    for block in blocks:
        style = "green" if block.is_valid() else "red"
        console.print(Panel(block.describe(), title=f"[bold {style}]Block {block.header.bytenr}[/bold {style}]",
                            border_style=style, box=box.ROUNDED))
        if full_info:
            console.print_json(json.dumps(encode_data(block.to_dict())))


def show_stats(stats, repair: bool):
    corrupted = stats.corrupted_count
    if corrupted == 0:
        console.print("[bold green]Didn't find any issues![/bold green]")
        return

    short_info = f"{stats.correctly_fixed}+{stats.partially_fixed}/{corrupted}"
    message = (f"{'Correctly' if repair else 'Would have correctly'} fixed {stats.correctly_fixed} block(s) and "
               f"partially fixed {stats.partially_fixed} block(s) out of total {corrupted} corrupted block(s)!")
    console.print(f"[bold]\\[{short_info}][/bold] {message}")

    if stats.skipped_blocks:
        skipped = Table(title="Skipped Blocks", box=box.ROUNDED)
        skipped.add_column("Block", style="cyan bold", justify="right")
        skipped.add_column("Copies", style="white", justify="right")
        for bytenr, infos in sorted(stats.skipped_blocks.items()):
            skipped.add_row(str(bytenr), str(len(infos)))
        console.print(skipped)


@click.group()
def cli():
    """btrfs-recovery - Repair corrupted btrfs metadata blocks"""


@cli.command()
def version():
    """Show version information"""
    version_info = Table(show_header=False, box=box.ROUNDED)
    version_info.add_column(style="cyan bold")
    version_info.add_column(style="white")

    version_info.add_row("Application", "btrfs-recovery")
    version_info.add_row("Version", __version__)
    version_info.add_row("Python", f"{sys.version.split()[0]}")
    version_info.add_row("Checksums", ", ".join(constants.CSUM_NAMES[:3]))

    console.print(Panel(version_info, title="[bold blue]Version Information[/bold blue]", border_style="blue"))


@cli.command()
def devices():
    """List btrfs partitions known to the system"""
    partitions = get_btrfs_partitions()
    if not partitions:
        console.print("[yellow]No btrfs partitions found[/yellow]")
        return

    table = Table(title="Btrfs Partitions", box=box.ROUNDED)
    table.add_column("Device", style="cyan bold")
    table.add_column("Mountpoint", style="white")
    table.add_column("Size", style="white", justify="right")
    table.add_column("Used", style="white", justify="right")
    table.add_column("Mounted", justify="center")

    for partition in partitions:
        mounted = is_mounted(partition['device'])
        table.add_row(partition['device'], partition['mountpoint'], format_size(partition['total']),
                      format_size(partition['used']), "[red]yes[/red]" if mounted else "[green]no[/green]")
    console.print(table)


@cli.command()
@click.argument('devices', nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option('--database', '-d', type=click.Path(exists=True, dir_okay=False),
              help='Reference database for filesystem wide repair')
@click.option('--tree', '-t', type=click.Choice(['all'] + list(constants.TREES)), default='all',
              help='Limit repair to a tree')
@click.option('--copy', '-c', 'backup_path', type=click.Path(file_okay=False),
              help='Directory for block backups (default: ./backup)')
@click.option('--superblock', '-s', type=click.Path(exists=True, dir_okay=False),
              help='Superblock to use instead of the one on the devices')
@click.option('--blocks', '-b', 'block_numbers', callback=parse_block_numbers,
              help='Comma separated block numbers')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='File where to write the fixed block')
@click.option('--repair/--no-repair', default=False, help='Write fixes to the devices (default: dry-run)')
@click.option('--print', '-p', 'full_info', is_flag=True, help='Print full info as JSON')
@click.option('--quiet', '-q', is_flag=True, help="Don't output info")
@click.option('--swap-header', '-x', is_flag=True, help='Swap the first 1024 bytes of each block')
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='JSON configuration file')
@click.pass_context
def fix(ctx, devices, database, tree, backup_path, superblock, block_numbers, output, repair, full_info, quiet,
        swap_header, config_path):
    """Inspect and repair blocks of btrfs DEVICES (or standalone block files)"""
    devices = list(dict.fromkeys(devices))
    try:
        with RecoveryApp(config_path, quiet=quiet, backup_path=backup_path) as app:
            code = run_fix(app, devices, database, tree, superblock, block_numbers, output, repair, full_info,
                           quiet, swap_header)
    except KeyboardInterrupt:
        console.print("[bold red]Interrupt! Aborted![/bold red]")
        ctx.exit(EXIT_INTERRUPTED)
    except UnresolvedAmbiguityError as e:
        console.print(f"[bold red]Unresolved:[/bold red] {e}")
        ctx.exit(EXIT_AMBIGUOUS)
    except RecoveryError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        ctx.exit(EXIT_USAGE)
    except OSError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        ctx.exit(e.errno or EXIT_USAGE)
    ctx.exit(code)


def run_fix(app: RecoveryApp, devices, database: Optional[str], tree: str, superblock_file: Optional[str],
            block_numbers: List[int], output: Optional[str], repair: bool, full_info: bool, quiet: bool,
            swap_header: bool) -> int:
    superblock_override = None
    for file in list(dict.fromkeys(devices + ([superblock_file] if superblock_file else []))):
        superblock = parse_superblock(file)
        if file == superblock_file:
            superblock_override = superblock
        if superblock is not None and not quiet:
            show_superblock(superblock, full_info)

    if database:
        app.open_database(database)
    if repair:
        app.refuse_mounted_devices(devices)

    states, block_files = app.create_filesystem_states(devices)
    if not states and (block_numbers or database):
        console.print("[red]You must specify devices when using block number or database option![/red]")
        return EXIT_USAGE

    blocks = app.load_blocks(block_numbers, block_files, superblock_override, swap_header)
    if not blocks and not database:
        console.print("[red]You must specify at least one block![/red]")
        return EXIT_USAGE
    if not quiet:
        show_blocks(blocks, full_info)

    if database:
        stats = app.reconcile(tree, block_numbers, repair=repair)
        show_stats(stats, repair)

    if output:
        if not blocks:
            console.print("[yellow]No blocks to write![/yellow]")
            return EXIT_OK
        result = app.fix_blocks(blocks, output)
        if result.block is None:
            console.print("[bold red]Unable to fix anything[/bold red]")
            return EXIT_NOT_FIXED
        if result.successful:
            console.print("[bold green]✓ Successfully fixed block![/bold green]")
        elif result.block.is_valid():
            if len(blocks) == 1 and blocks[0].header.csum == result.block.header.csum:
                console.print("[green]Wrote block file as it was![/green]")
            else:
                console.print("[yellow]Partially fixed![/yellow]")
                console.print(f"New checksum {format_checksum(result.block.header.csum)}")
                return EXIT_PARTIALLY_FIXED
        else:
            console.print("[bold red]Failed to fix block![/bold red]")
            return EXIT_PARTIALLY_FIXED

    return EXIT_OK


@cli.command()
@click.argument('backup', type=click.Path(exists=True, dir_okay=False))
@click.argument('device', type=click.Path(exists=True, dir_okay=False))
@click.argument('offset', type=int)
@click.option('--repair/--no-repair', default=False, help='Write to the device (default: dry-run)')
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='JSON configuration file')
@click.pass_context
def restore(ctx, backup, device, offset, repair, config_path):
    """Write a BACKUP block file back to DEVICE at OFFSET"""
    try:
        with RecoveryApp(config_path) as app:
            if repair:
                app.refuse_mounted_devices([device])
            app.create_filesystem_states([device])
            written = app.restore(backup, device, offset, repair)
    except RecoveryError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        ctx.exit(EXIT_USAGE)
    except OSError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        ctx.exit(e.errno or EXIT_USAGE)

    if repair:
        console.print(f"[bold green]✓ Restored {written} bytes at offset {offset}[/bold green]")
    else:
        console.print(f"Would restore {backup} to {device} at offset {offset}")


def main():
    """Main CLI entry point"""
    try:
        code = cli.main(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        code = EXIT_USAGE
    except click.Abort:
        console.print("[bold red]Interrupt! Aborted![/bold red]")
        code = EXIT_INTERRUPTED
    except click.ClickException as e:
        e.show()
        code = e.exit_code
    sys.exit(code or EXIT_OK)


if __name__ == "__main__":
    main()
