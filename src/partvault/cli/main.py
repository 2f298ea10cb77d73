"""
PartVault CLI Main Entry Point.

Command-line interface for inspecting disks and running archive, restore,
clone and resume operations.
"""

from __future__ import annotations

import json
import re
import sys
from pathlib import Path
from typing import Any

import click
import humanize
import psutil
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from partvault import __version__
from partvault.core.config import PartVaultConfig, load_config
from partvault.core.errors import PartVaultError
from partvault.core.job import JobProgress, JobResult
from partvault.core.models import (
    EventKind,
    LayoutPolicy,
    OperationMode,
    OperationRequest,
    OperationSummary,
    PartitionEvent,
)
from partvault.core.safety import generate_confirmation_string, verify_confirmation
from partvault.core.session import Session

console = Console()

EVENT_STYLES = {
    EventKind.START: "cyan",
    EventKind.DONE: "green",
    EventKind.FAILED: "red",
    EventKind.SKIPPED: "yellow",
}


def get_session(ctx: click.Context) -> Session:
    """Get or create session from context."""
    if "session" not in ctx.obj:
        config = ctx.obj.get("config") or load_config()
        ctx.obj["session"] = Session(config=config)
    return ctx.obj["session"]


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def confirm_destruction(ctx: click.Context, target: str, yes: bool) -> None:
    """Ask for the typed DESTROY-<TARGET> confirmation unless already given."""
    session = get_session(ctx)
    if yes or not session.config.safety.require_confirmation:
        return

    confirm_str = generate_confirmation_string(target)
    console.print(f"[red]⚠️  This will DESTROY ALL DATA on {target}[/red]")
    user_confirm = click.prompt(f"Type '{confirm_str}' to confirm", default="")
    verified, message = verify_confirmation(target, user_confirm)
    if not verified:
        console.print(f"[red]{message}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="PartVault")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    json_output: bool,
    quiet: bool,
) -> None:
    """
    PartVault - partition-aware disk archive and restore.

    Archives every partition of a GPT disk with the best available imaging
    tool and restores it verbatim, compacted or enlarged, keeping disk and
    partition GUIDs intact.
    """
    ctx.ensure_object(dict)

    if config:
        loaded = PartVaultConfig.load(config)
        loaded.ensure_directories()
        ctx.obj["config"] = loaded
    else:
        ctx.obj["config"] = load_config()

    ctx.obj["json_output"] = json_output
    ctx.obj["quiet"] = quiet


@cli.command("list")
@click.pass_context
def list_disks(ctx: click.Context) -> None:
    """List whole disks."""
    session = get_session(ctx)

    with console.status("Scanning disks..."):
        disks = session.platform.list_disks()

    if ctx.obj.get("json_output"):
        echo_json([disk.to_dict() for disk in disks])
        return

    table = Table(title="Disks")
    table.add_column("Device", style="cyan")
    table.add_column("Model", style="white")
    table.add_column("Size", style="green")
    table.add_column("Label", style="magenta")
    table.add_column("Partitions", style="yellow")
    table.add_column("System", style="red")

    for disk in disks:
        table.add_row(
            disk.device_path,
            disk.model[:30] if disk.model else "Unknown",
            humanize.naturalsize(disk.size_bytes, binary=True),
            disk.label_kind or "",
            str(disk.partition_count),
            "Yes" if disk.is_system_disk else "",
        )

    console.print(table)


@cli.command("inspect")
@click.argument("device")
@click.pass_context
def inspect_device(ctx: click.Context, device: str) -> None:
    """Show the partition table of a disk and the backend each partition would use."""
    session = get_session(ctx)

    table = session.platform.read_table(device)
    mounted = session.platform.get_mounted_devices()

    if ctx.obj.get("json_output"):
        data = table.to_dict()
        data["live_source"] = session.safety.is_live_source(device)
        echo_json(data)
        return

    console.print(
        Panel(
            f"""[cyan]Device:[/cyan] {device}
[cyan]Disk GUID:[/cyan] {table.disk_guid}
[cyan]Size:[/cyan] {humanize.naturalsize(table.size_bytes, binary=True)} ({table.total_sectors} sectors of {table.sector_size} bytes)
[cyan]Usable LBAs:[/cyan] {table.first_lba} - {table.last_lba}
[cyan]Running system:[/cyan] {"Yes" if session.safety.is_live_source(device) else "No"}""",
            title="Partition Table",
        )
    )

    part_table = Table()
    part_table.add_column("#", style="dim")
    part_table.add_column("Start", style="white", justify="right")
    part_table.add_column("Size", style="green")
    part_table.add_column("FS", style="yellow")
    part_table.add_column("Type GUID", style="magenta")
    part_table.add_column("UUID", style="blue")
    part_table.add_column("Backend", style="cyan")

    for entry in table.entries:
        node = session.platform.partition_node(device, entry.index)
        backend = session.registry.resolve(entry.filesystem_kind, node in mounted)[0]
        part_table.add_row(
            str(entry.index),
            str(entry.start_sector),
            humanize.naturalsize(entry.size_bytes(table.sector_size), binary=True),
            entry.filesystem_kind.value,
            entry.type_guid,
            entry.partition_uuid,
            backend.name + (" (mounted)" if node in mounted else ""),
        )

    console.print(part_table)


@cli.command("estimate")
@click.argument("device")
@click.option("--target", help="Device or directory to compare the estimate against")
@click.pass_context
def estimate(ctx: click.Context, device: str, target: str | None) -> None:
    """Estimate the payload size of archiving a disk."""
    session = get_session(ctx)

    with console.status("Measuring used space..."):
        table = session.platform.read_table(device)
        payload = session.safety.estimate_payload(table, device)

    check = None
    if target:
        target_path = Path(target)
        if target_path.is_dir():
            target_bytes = psutil.disk_usage(str(target_path)).free
            mode = OperationMode.ARCHIVE
        else:
            target_bytes = session.platform.device_size_bytes(target)
            mode = OperationMode.RESTORE
        check = session.safety.validate_capacity(payload, target_bytes, mode)

    if ctx.obj.get("json_output"):
        data = payload.to_dict()
        if check is not None:
            data["capacity_ok"] = check.passed
        echo_json(data)
        return

    size_table = Table(title=f"Payload estimate for {device}")
    size_table.add_column("#", style="dim")
    size_table.add_column("Estimate", style="green")
    size_table.add_column("Source", style="yellow")
    for index, size in payload.per_partition.items():
        size_table.add_row(
            str(index),
            humanize.naturalsize(size, binary=True),
            "used blocks" if index in payload.exact else "partition size",
        )
    console.print(size_table)
    console.print(f"Total: [bold]{humanize.naturalsize(payload.total_bytes, binary=True)}[/bold]")

    if check is not None:
        style = "green" if check.passed else "yellow"
        console.print(f"[{style}]{check.message}[/{style}]")


@cli.command("backends")
@click.pass_context
def backends(ctx: click.Context) -> None:
    """Show the imaging backends found on this host."""
    session = get_session(ctx)
    described = session.registry.describe()

    if ctx.obj.get("json_output"):
        echo_json(described)
        return

    table = Table(title="Imaging Backends")
    table.add_column("Name", style="cyan")
    table.add_column("Filesystem", style="yellow")
    table.add_column("Mode", style="magenta")
    table.add_column("Available", style="green")
    for backend in described:
        table.add_row(
            backend["name"],
            backend["filesystem_kind"] or "any",
            backend["mode"],
            "Yes" if backend["available"] else "[red]No[/red]",
        )
    console.print(table)


@cli.command("archive")
@click.argument("source")
@click.argument("archive", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--compression",
    type=click.Choice(["auto", "zstd", "pigz", "gzip", "lz4", "none"]),
    default=None,
    help="Compression codec (default from configuration)",
)
@click.option("--allow-live", is_flag=True, help="Image the running system's disk read-only")
@click.option("--shrink-source", is_flag=True, help="Shrink ext4 and NTFS filesystems on SOURCE first")
@click.option("--no-regrow", is_flag=True, help="Leave SOURCE's filesystems shrunk afterwards")
@click.option("--scratch-dir", type=click.Path(file_okay=False, path_type=Path), help="Working directory")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def archive(
    ctx: click.Context,
    source: str,
    archive: Path,
    compression: str | None,
    allow_live: bool,
    shrink_source: bool,
    no_regrow: bool,
    scratch_dir: Path | None,
    dry_run: bool,
) -> None:
    """Archive every partition of SOURCE into ARCHIVE."""
    request = OperationRequest(
        mode=OperationMode.ARCHIVE,
        source=source,
        target=str(archive),
        allow_live_source=allow_live,
        shrink_source=shrink_source,
        regrow_source=not no_regrow,
        compression=compression,
        scratch_dir=str(scratch_dir) if scratch_dir else None,
    )
    run_request(ctx, request, dry_run)


@cli.command("restore")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("target")
@click.option(
    "--layout",
    type=click.Choice([policy.value for policy in LayoutPolicy]),
    default=LayoutPolicy.VERBATIM.value,
    help="How to lay out partitions on the target",
)
@click.option("--only", "selection", help="Restore only these partitions, e.g. 1,3-5")
@click.option(
    "--grow",
    multiple=True,
    metavar="INDEX=SIZE",
    help="Enlarge a partition by SIZE (e.g. 3=20G); needs --layout compact_with_enlargement",
)
@click.option("--scratch-dir", type=click.Path(file_okay=False, path_type=Path), help="Working directory")
@click.option("--yes", "-y", is_flag=True, help="Skip the typed confirmation")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def restore(
    ctx: click.Context,
    archive: Path,
    target: str,
    layout: str,
    selection: str | None,
    grow: tuple[str, ...],
    scratch_dir: Path | None,
    yes: bool,
    dry_run: bool,
) -> None:
    """Restore ARCHIVE onto TARGET."""
    try:
        indices = parse_selection(selection) if selection else frozenset()
        deltas = parse_deltas(grow)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    if not dry_run:
        confirm_destruction(ctx, target, yes)

    request = OperationRequest(
        mode=OperationMode.RESTORE,
        source=str(archive),
        target=target,
        partial_restore_selection=indices,
        layout_policy=LayoutPolicy(layout),
        confirmed_destructive=True,
        size_deltas=deltas,
        scratch_dir=str(scratch_dir) if scratch_dir else None,
    )
    run_request(ctx, request, dry_run)


@cli.command("clone")
@click.argument("source")
@click.argument("target")
@click.option("--shrink-source", is_flag=True, help="Shrink ext4 and NTFS filesystems on SOURCE first")
@click.option("--no-regrow", is_flag=True, help="Leave SOURCE's filesystems shrunk afterwards")
@click.option("--yes", "-y", is_flag=True, help="Skip the typed confirmation")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def clone(
    ctx: click.Context,
    source: str,
    target: str,
    shrink_source: bool,
    no_regrow: bool,
    yes: bool,
    dry_run: bool,
) -> None:
    """Clone disk SOURCE onto disk TARGET."""
    if not dry_run:
        confirm_destruction(ctx, target, yes)

    request = OperationRequest(
        mode=OperationMode.CLONE,
        source=source,
        target=target,
        shrink_source=shrink_source,
        regrow_source=not no_regrow,
        confirmed_destructive=True,
    )
    run_request(ctx, request, dry_run)


@cli.command("resume")
@click.argument("scratch", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Skip the typed confirmation")
@click.pass_context
def resume(ctx: click.Context, scratch: Path, yes: bool) -> None:
    """Retry a failed restore from its retained SCRATCH directory."""
    session = get_session(ctx)
    job = session.build_resume_job(scratch)

    if not ctx.obj.get("quiet"):
        console.print(Panel(job.get_plan(), title="Resume Plan"))

    from partvault.engine.catalog import ResumeState

    confirm_destruction(ctx, ResumeState.load(scratch).target, yes)

    result = run_with_progress(ctx, lambda on_event, on_progress: session.run_job(job, on_event, on_progress))
    report_result(ctx, result)


def run_request(ctx: click.Context, request: OperationRequest, dry_run: bool) -> None:
    session = get_session(ctx)

    if dry_run:
        job = session.build_job(request)
        errors = job.validate()
        console.print(Panel(f"[yellow]DRY RUN[/yellow]\n\n{job.get_plan()}", title="Plan"))
        for error in errors:
            console.print(f"[red]✗ {error}[/red]")
        return

    result = run_with_progress(ctx, lambda on_event, on_progress: session.run(request, on_event, on_progress))
    report_result(ctx, result)


def run_with_progress(ctx: click.Context, runner: Any) -> JobResult[OperationSummary]:
    """Run an operation while rendering partition events and byte progress."""
    if ctx.obj.get("quiet") or ctx.obj.get("json_output"):
        return runner(None, None)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(binary_units=True),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting...", total=None)

        def on_progress(prog: JobProgress) -> None:
            progress.update(
                task,
                description=prog.message or prog.stage,
                completed=prog.bytes_processed,
                total=prog.bytes_total or None,
            )

        def on_event(event: PartitionEvent) -> None:
            style = EVENT_STYLES[event.kind]
            label = "disk" if event.index == 0 else f"partition {event.index}"
            detail = humanize.naturalsize(event.bytes, binary=True) if event.bytes else event.message
            progress.console.print(
                f"[{style}]{event.kind.value:>7}[/{style}] {label} "
                f"[dim]{event.backend or ''}[/dim] {detail}"
            )

        return runner(on_event, on_progress)


def report_result(ctx: click.Context, result: JobResult[OperationSummary]) -> None:
    summary = result.data

    if ctx.obj.get("json_output"):
        echo_json(
            {
                "success": result.success,
                "error": result.error,
                "warnings": result.warnings,
                "summary": summary.to_dict() if summary else None,
            }
        )
        sys.exit(0 if result.success and (summary is None or summary.success) else 1)

    if summary is not None:
        lines = [
            f"[cyan]Mode:[/cyan] {summary.mode.value}",
            f"[green]Succeeded:[/green] {format_indices(summary.succeeded)}",
            f"[red]Failed:[/red] {format_indices(summary.failed)}",
            f"[yellow]Skipped:[/yellow] {format_indices(summary.skipped)}",
            f"[cyan]Elapsed:[/cyan] {humanize.precisedelta(summary.elapsed_seconds)}",
        ]
        if summary.archive_path and summary.mode == OperationMode.ARCHIVE:
            lines.append(f"[cyan]Archive:[/cyan] {summary.archive_path}")
        if summary.fatal_error:
            lines.append(f"[red]Fatal in {summary.fatal_phase}:[/red] {summary.fatal_error}")
        if summary.scratch_retained:
            lines.append(f"[yellow]Scratch retained:[/yellow] {summary.scratch_dir}")
        console.print(Panel("\n".join(lines), title="Summary"))

    for warning in result.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")

    if result.success and (summary is None or summary.success):
        console.print("[green]✓ Operation completed[/green]")
        return

    console.print(f"[red]✗ {result.error or 'Some partitions failed'}[/red]")
    sys.exit(1)


def format_indices(indices: list[int]) -> str:
    return ", ".join(str(i) for i in indices) if indices else "-"


def parse_size(size_str: str) -> int | None:
    """Parse size string like '10G' to bytes."""
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([KMGT]?)(?:I?B)?$", size_str.strip().upper())
    if not match:
        return None

    value = float(match.group(1))
    unit = match.group(2)

    multipliers = {
        "": 1,
        "K": 1024,
        "M": 1024**2,
        "G": 1024**3,
        "T": 1024**4,
    }

    return int(value * multipliers.get(unit, 1))


def parse_selection(text: str) -> frozenset[int]:
    """Parse a partition selection like '1,3-5' into indices."""
    indices: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        match = re.fullmatch(r"(\d+)(?:\s*-\s*(\d+))?", part)
        if match is None:
            raise ValueError(f"Invalid partition selection: {part!r}")
        first = int(match.group(1))
        last = int(match.group(2) or first)
        if first < 1 or last < first:
            raise ValueError(f"Invalid partition range: {part!r}")
        indices.update(range(first, last + 1))
    if not indices:
        raise ValueError("Partition selection is empty")
    return frozenset(indices)


def parse_deltas(values: tuple[str, ...] | list[str]) -> dict[int, int]:
    """Parse INDEX=SIZE enlargement requests into byte deltas."""
    deltas: dict[int, int] = {}
    for value in values:
        index_text, sep, size_text = value.partition("=")
        size = parse_size(size_text) if sep else None
        if not index_text.strip().isdigit() or size is None:
            raise ValueError(f"Invalid size delta: {value!r} (expected INDEX=SIZE)")
        deltas[int(index_text)] = size
    return deltas


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except PartVaultError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
