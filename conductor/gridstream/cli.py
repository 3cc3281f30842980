#!/usr/bin/env python3
# Gridstream - CLI
# SPDX-License-Identifier: Apache-2.0

"""
Command-line interface for chunked decoding and the blob cache.

Usage:
    gridstream decode era5.nc --var t2m --output t2m.json
    gridstream decode gfs.grib2 --var t --bbox -130 20 -60 55
    gridstream cache put gfs.grib2 --source noaa --dataset gfs
    gridstream cache ls
    gridstream cache stats
    gridstream cache clear --yes
"""

from pathlib import Path
from typing import Optional
import asyncio
import json
import logging
import sys

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from gridstream import __version__
from gridstream.config import MIB, CacheSettings
from gridstream.errors import GridstreamError

console = Console()

SUFFIX_FORMATS = {
    ".nc": "netcdf",
    ".nc4": "netcdf",
    ".cdf": "netcdf",
    ".grib2": "grib2",
    ".grb2": "grib2",
    ".grib": "grib2",
}


def _infer_format(path: Path) -> Optional[str]:
    return SUFFIX_FORMATS.get(path.suffix.lower())


def _fail(message: str):
    console.print(f"[red]Error: {escape(message)}[/]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="gridstream")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose: bool):
    """
    Gridstream - chunked NetCDF / GRIB2 decoding with a two-tier cache.

    Raw files live in a size-limited blob cache; decoded results are cached
    by request fingerprint so repeated extractions skip the parse.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@main.command()
@click.argument("file", type=str)
@click.option("--format", "fmt", type=click.Choice(["netcdf", "grib2"]), default=None,
              help="Input format (default: from file extension)")
@click.option("--var", "variables", multiple=True, help="Variable / parameter to extract (repeatable)")
@click.option("--bbox", nargs=4, type=float, default=None, help="West South East North (degrees)")
@click.option("--start", type=str, default=None, help="Time range start (ISO 8601)")
@click.option("--end", type=str, default=None, help="Time range end (ISO 8601)")
@click.option("--chunk-mb", type=float, default=None, help="Decode window size in MB")
@click.option("--overlap-mb", type=float, default=None, help="Read-ahead per window in MB (default: 1)")
@click.option("--source", type=str, default="unknown", help="Source tag for cached files")
@click.option("--dataset", type=str, default="data", help="Dataset tag for cached files")
@click.option("--cache-dir", type=Path, default=None, help="Cache directory (default: $GRIDSTREAM_CACHE_DIR)")
@click.option("--output", "-o", type=Path, default=None,
              help="Write the result to OUT.json, or OUT.json.zst for a compressed file")
def decode(file: str, fmt: Optional[str], variables: tuple, bbox: Optional[tuple],
           start: Optional[str], end: Optional[str], chunk_mb: Optional[float],
           overlap_mb: Optional[float], source: str, dataset: str,
           cache_dir: Optional[Path], output: Optional[Path]):
    """
    Decode a NetCDF or GRIB2 file.

    FILE is a path, or an identifier previously stored with `cache put`.

    Example: Extract 2m temperature over North America
        gridstream decode gfs.grib2 --var t --bbox -130 20 -60 55
    """
    from gridstream.pipeline import DecodeOptions, DecodePipeline

    path = Path(file)
    byte_source = path.read_bytes() if path.is_file() else file
    fmt = fmt or _infer_format(path)
    if fmt is None:
        _fail(f"Cannot infer format of {file}; pass --format")

    options = {
        "variables": list(variables),
        "bbox": bbox,
        "source": source,
        "dataset": dataset,
    }
    if start or end:
        options["time_range"] = {"start": start, "end": end}
    if chunk_mb is not None:
        options["chunk_size"] = int(chunk_mb * MIB)
    if overlap_mb is not None:
        options["overlap"] = int(overlap_mb * MIB)

    console.print(Panel.fit(
        f"[bold blue]Gridstream - {fmt.upper()} decode[/]\n"
        f"{file}" + (f" ({len(byte_source) / MIB:.1f} MB)" if not isinstance(byte_source, str) else ""),
        border_style="blue"
    ))

    async def run():
        async with DecodePipeline.open(CacheSettings.from_env(cache_dir)) as pipeline:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Decoding...", total=100)

                def on_progress(update: dict):
                    progress.update(task, completed=update["progress"],
                                    description=update["stage"].capitalize())

                decode_options = DecodeOptions(**options, on_progress=on_progress)
                return await pipeline.decode(byte_source, fmt, decode_options)

    try:
        outcome = asyncio.run(run())
    except (GridstreamError, ValidationError) as e:
        _fail(str(e))

    result = outcome.result
    meta = result["metadata"]

    table = Table(title="Decode Result", show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Fingerprint", outcome.fingerprint)
    table.add_row("Provenance", outcome.provenance.value)
    table.add_row("Total Size", f"{meta['total_size'] / MIB:.2f} MB")
    table.add_row("Chunks", str(meta["processed_chunks"]))
    if "variables" in result:
        for name, entry in result["variables"].items():
            dims = entry["metadata"]["dimensions"] if entry["metadata"] else "not found"
            table.add_row(f"Variable {name}", f"{len(entry['data'])} values {dims}")
    else:
        table.add_row("Messages", str(meta["message_count"]))
    console.print(table)
    if not outcome.complete:
        console.print("[yellow]Some records straddled chunk ends and were skipped; raise --overlap-mb to recover them[/]")

    if output is not None:
        if output.suffix == ".zst":
            from gridstream.export import write_result
            stats = write_result(result, output)
            console.print(f"[dim]Saved to {output} ({stats.output_bytes / 1024:.1f} KB)[/]")
        else:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(json.dumps(result))
            console.print(f"[dim]Saved to {output}[/]")


@main.group()
def cache():
    """Manage the raw blob cache."""
    pass


def _open_blobs(cache_dir: Optional[Path]):
    from gridstream.blobcache import open_cache
    return open_cache(CacheSettings.from_env(cache_dir))


cache_dir_option = click.option("--cache-dir", type=Path, default=None,
                                 help="Cache directory (default: $GRIDSTREAM_CACHE_DIR)")


@cache.command("put")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--id", "identifier", type=str, default=None, help="Identifier (default: file name)")
@click.option("--source", type=str, default="unknown", help="Source tag")
@click.option("--dataset", type=str, default="data", help="Dataset tag")
@cache_dir_option
def cache_put(file: Path, identifier: Optional[str], source: str, dataset: str,
              cache_dir: Optional[Path]):
    """Store a raw file so it can be decoded by identifier."""
    identifier = identifier or file.name
    data = file.read_bytes()

    async def run():
        async with _open_blobs(cache_dir) as blobs:
            key = blobs.generate_cache_key(identifier, {"source": source, "dataset": dataset})
            return await blobs.put(key, data, {
                "source": source,
                "dataset": dataset,
                "format": _infer_format(file) or "unknown",
                "identifier": identifier,
            })

    try:
        key = asyncio.run(run())
    except GridstreamError as e:
        _fail(str(e))

    console.print(f"[green]Stored[/] {identifier} ({len(data) / MIB:.2f} MB) as [cyan]{key}[/]")


@cache.command("ls")
@click.option("--source", type=str, default=None, help="Only entries with this source")
@click.option("--format", "fmt", type=str, default=None, help="Only entries with this format")
@cache_dir_option
def cache_ls(source: Optional[str], fmt: Optional[str], cache_dir: Optional[Path]):
    """List cache entries."""
    async def run():
        async with _open_blobs(cache_dir) as blobs:
            return await blobs.list_entries(source=source, format=fmt)

    entries = asyncio.run(run())

    table = Table(title="Cache Entries")
    table.add_column("Key", style="cyan")
    table.add_column("Source")
    table.add_column("Dataset")
    table.add_column("Format", style="yellow")
    table.add_column("Size", style="green")
    table.add_column("Chunked", style="dim")
    for entry in entries:
        table.add_row(
            entry.key,
            entry.source or "",
            entry.dataset or "",
            entry.format or "",
            f"{entry.size / 1024:.1f} KB",
            "yes" if entry.chunked else "",
        )
    console.print(table)


@cache.command("stats")
@cache_dir_option
def cache_stats(cache_dir: Optional[Path]):
    """Show cache totals."""
    async def run():
        async with _open_blobs(cache_dir) as blobs:
            return await blobs.stats()

    stats = asyncio.run(run())

    table = Table(title="Cache Stats", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Entries", str(stats.total_entries))
    table.add_row("Total Size", f"{stats.total_size_mb:.2f} MB")
    table.add_row("Chunked", str(sum(1 for e in stats.entries if e.chunked)))
    console.print(table)


@cache.command("clear")
@click.option("--results-only", is_flag=True, help="Remove decoded results, keep raw files")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@cache_dir_option
def cache_clear(results_only: bool, yes: bool, cache_dir: Optional[Path]):
    """Remove cache entries."""
    what = "all cached results" if results_only else "every cache entry"
    if not yes and not click.confirm(f"Remove {what}?"):
        return

    async def run():
        async with _open_blobs(cache_dir) as blobs:
            if results_only:
                from gridstream.results import ResultCache
                return await ResultCache(blobs).clear()
            count = len(await blobs.keys())
            await blobs.clear()
            return count

    removed = asyncio.run(run())
    console.print(f"[green]Removed {removed} entries[/]")


if __name__ == "__main__":
    main()
