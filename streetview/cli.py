"""Operator CLI for capturing and inspecting cached street view images."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from streetview import metrics
from streetview.address import focused_address, normalize_address, street_only_address, structured_address
from streetview.errors import CaptureFailure, InputError, JobInProgress, ResourceAcquisitionFailure
from streetview.jobs import CaptureService, build_capture_service
from streetview.settings import get_settings

T = TypeVar("T")

console = Console()
cli = typer.Typer(help="Capture street view images for property addresses.")


@cli.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every subcommand."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


def _build_service() -> CaptureService:
    return build_capture_service(get_settings())


def _run(action: Callable[[CaptureService], Awaitable[T]], *, with_browser: bool = False) -> T:
    async def _runner() -> T:
        service = _build_service()
        if with_browser:
            service.browser.install_shutdown_hooks()
        try:
            return await action(service)
        finally:
            await service.aclose()

    return asyncio.run(_runner())


def _fail(message: str, *, code: int = 1) -> NoReturn:
    console.print(f"[red]{message}[/]")
    raise typer.Exit(code)


@cli.command()
def capture(
    address: str = typer.Argument(..., help="Property address to capture"),
    target_id: str = typer.Argument(..., help="Identifier used as the cache and dedup key"),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Capture (or reuse the cached) street view image for ADDRESS."""

    port = get_settings().telemetry.prometheus_port
    if port:
        metrics.start_exporter(port)
    try:
        response = _run(lambda service: service.trigger(address, target_id), with_browser=True)
    except InputError as exc:
        _fail(str(exc), code=2)
    except JobInProgress as exc:
        _fail(str(exc), code=3)
    except (CaptureFailure, ResourceAcquisitionFailure) as exc:
        _fail(str(exc))

    if json_output:
        console.print_json(data=response.model_dump(mode="json"))
        return
    table = Table("Field", "Value", title=f"Capture {response.target_id}")
    table.add_row("key", response.result_key)
    table.add_row("url", response.url)
    table.add_row("cache_hit", "yes" if response.cache_hit else "no")
    table.add_row("method", response.method or "-")
    if response.is_street_view is not None:
        table.add_row("street_view", "yes" if response.is_street_view else "no (map fallback)")
    console.print(table)


@cli.command()
def status(
    target_id: str = typer.Argument(..., help="Target identifier"),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Report whether TARGET_ID is cached, in progress, or unknown."""

    try:
        result = _run(lambda service: service.status(target_id))
    except InputError as exc:
        _fail(str(exc), code=2)

    if json_output:
        console.print_json(data=result.model_dump(mode="json", exclude_none=True))
        return
    table = Table("Field", "Value", title=f"Status {target_id}")
    for key, value in result.model_dump(mode="json", exclude_none=True).items():
        table.add_row(key, str(value))
    console.print(table)


@cli.command()
def processing(
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """List captures currently marked as processing."""

    jobs = _run(lambda service: service.processing())
    if json_output:
        console.print_json(data=[job.model_dump(mode="json") for job in jobs])
        return
    if not jobs:
        console.print("[dim]No captures in progress.[/]")
        return
    table = Table("Target", "Address", "Started", "Status", title="Processing")
    for job in jobs:
        table.add_row(job.target_id, job.address, job.started_at.isoformat(), job.status.value)
    console.print(table)


@cli.command()
def recent(
    limit: int = typer.Option(10, min=1, help="Maximum captures to list."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Show the most recently captured images."""

    captures = _run(lambda service: service.recent_captures(limit))
    if json_output:
        console.print_json(data=[item.model_dump(mode="json") for item in captures])
        return
    if not captures:
        console.print("[dim]No captures recorded yet.[/]")
        return
    table = Table("Target", "Address", "Captured", "Image", title="Recent captures")
    for item in captures:
        table.add_row(item.target_id, item.address, item.captured_at.isoformat(), item.image_url)
    console.print(table)


@cli.command("record-search")
def record_search(
    target_id: str = typer.Argument(..., help="Target identifier"),
    query: str = typer.Argument(..., help="Search text as entered by the user"),
) -> None:
    """Store a search record so future captures are linked to it."""

    _run(lambda service: service.record_search(target_id, query))
    console.print(f"[green]Recorded search for {target_id}.[/]")


@cli.command()
def evict(
    target_id: str = typer.Argument(..., help="Target identifier"),
) -> None:
    """Delete the cached image for TARGET_ID so the next capture re-renders it."""

    try:
        removed = _run(lambda service: service.evict(target_id))
    except InputError as exc:
        _fail(str(exc), code=2)
    if removed:
        console.print(f"[green]Evicted cached image for {target_id}.[/]")
    else:
        console.print(f"[yellow]No cached image for {target_id}.[/]")


@cli.command()
def normalize(
    address: str = typer.Argument(..., help="Raw address to normalize"),
) -> None:
    """Show the query variants derived from ADDRESS."""

    threshold = get_settings().capture.long_address_threshold
    table = Table("Variant", "Value", title="Address variants")
    table.add_row("normalized", normalize_address(address, long_threshold=threshold))
    table.add_row("structured", structured_address(address) or "-")
    table.add_row("street_only", street_only_address(address) or "-")
    table.add_row("focused", focused_address(address) or "-")
    console.print(table)


@cli.command()
def stats(
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Summarize the on-disk image cache."""

    async def _stats(service: CaptureService) -> dict[str, Any]:
        return await asyncio.to_thread(service.content.stats)

    data = _run(_stats)
    if json_output:
        console.print_json(data=data)
        return
    table = Table("Field", "Value", title="Cache")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    cli()
