"""
Cookie Harvester - Main Entry Point

CLI for running the harvester service, a one-off collection cycle, or a
single ad-hoc visit.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from harvester.browser.config import HarvesterConfig
from harvester.collection.job_config import validate_target_url
from harvester.collection.models import CollectionRun, CookieRecord, VisitResult
from harvester.exceptions import InvalidTargetURLError, LaunchError
from harvester.observability.logging_config import configure_logging
from harvester.service import CookieHarvester

root_env = Path(__file__).parent / ".env"
if root_env.exists():
    load_dotenv(root_env, override=True)
else:
    load_dotenv(override=True)

app = typer.Typer(
    name="harvester",
    help="Cookie Harvester - scheduled cookie collection with a headless browser",
)
console = Console()
logger = logging.getLogger("harvester")


def _launch_failed(error: LaunchError) -> None:
    console.print(Panel(
        f"[red]Browser failed to start:[/] {error}\n\n"
        f"Set the executable in your .env file:\n"
        f"  [dim]CHROME_EXECUTABLE_PATH=/usr/bin/google-chrome[/]\n"
        f"or install the bundled browser:\n"
        f"  [dim]playwright install chromium[/]",
        title="⚠ Launch Error",
        border_style="red",
    ))
    raise typer.Exit(code=1)


def _print_run(run: CollectionRun) -> None:
    table = Table(title=f"Collection run ({run.trigger.value})")
    table.add_column("Site", style="cyan")
    table.add_column("Result", style="white")
    table.add_column("Cookies", style="green", justify="right")

    for site_key, outcome in sorted(run.outcomes.items()):
        if isinstance(outcome, CookieRecord):
            table.add_row(site_key, "[green]ok[/]", str(outcome.cookie_count))
        else:
            table.add_row(site_key, f"[red]{outcome}[/]", "-")

    console.print(table)


def _print_result(result: VisitResult) -> None:
    if result.success and result.record is not None:
        console.print(Panel(
            f"[bold]{result.record.cookie_count}[/] cookies\n\n"
            f"[dim]{result.record.cookie_header or '(none)'}[/]",
            title=f"✓ {result.url}",
            border_style="green",
        ))
    else:
        console.print(Panel(
            f"[red]{result.error}[/]",
            title=f"✗ {result.url}",
            border_style="red",
        ))


# =========================================================================
# Commands
# =========================================================================


@app.command()
def targets():
    """List the built-in collection targets."""
    config = HarvesterConfig.from_env()

    table = Table(title="Built-in Targets")
    table.add_column("Site Key", style="cyan")
    table.add_column("URL", style="white")
    table.add_column("Wait Until", style="green")
    table.add_column("Timeout (ms)", style="yellow", justify="right")

    for target in config.targets:
        table.add_row(
            target.site_key,
            target.url,
            target.config.wait_until,
            f"{target.config.timeout_ms:,.0f}",
        )

    console.print(table)
    console.print(
        f"[dim]Collected every {config.collection_interval_seconds:,.0f}s[/]"
    )


@app.command()
def serve(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run the harvester until interrupted (SIGINT/SIGTERM)."""
    configure_logging(level=logging.DEBUG if verbose else logging.INFO)

    async def _run():
        harvester = CookieHarvester(HarvesterConfig.from_env())
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)

        try:
            await run_until_stopped(harvester, stop)
        except LaunchError as e:
            _launch_failed(e)

    asyncio.run(_run())


async def run_until_stopped(harvester: CookieHarvester, stop: asyncio.Event) -> None:
    """
    Start the harvester and keep it running until `stop` is set.

    A stop during the startup cycle cancels startup. Every exit path,
    including LaunchError and cancellation, ends in harvester.shutdown().
    """
    startup = asyncio.create_task(harvester.init(), name="harvester-startup")
    stopped = asyncio.create_task(stop.wait(), name="harvester-stop")
    try:
        await asyncio.wait({startup, stopped}, return_when=asyncio.FIRST_COMPLETED)

        if not startup.done():
            startup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await startup
            return

        startup.result()
        status = harvester.status()
        console.print(
            f"[green]Harvester running[/] - "
            f"{sum(status.per_site_has_data.values())}/{len(status.per_site_has_data)} "
            f"sites have cookies. Press Ctrl+C to stop."
        )
        await stopped
    finally:
        for task in (startup, stopped):
            task.cancel()
        logger.info("harvester_stopping")
        await harvester.shutdown()


@app.command()
def collect(
    as_json: bool = typer.Option(False, "--json", help="Print the snapshot as JSON"),
):
    """Run one collection cycle over the built-in targets and exit."""
    configure_logging(level=logging.WARNING)

    async def _run():
        harvester = CookieHarvester(HarvesterConfig.from_env())
        try:
            await harvester.sessions.init()
        except LaunchError as e:
            await harvester.shutdown()
            _launch_failed(e)

        try:
            run = await harvester.scheduler.trigger_immediate()
        finally:
            await harvester.shutdown()

        if as_json:
            typer.echo(json.dumps(harvester.get_snapshot().to_dict(), indent=2))
        else:
            _print_run(run)

    asyncio.run(_run())


@app.command()
def visit(
    url: str = typer.Argument(..., help="https URL to harvest cookies from"),
    timeout: Optional[int] = typer.Option(None, help="Navigation timeout (ms)"),
    wait_until: Optional[str] = typer.Option(
        None, help="load | domcontentloaded | networkidle0 | networkidle2"
    ),
    initial_wait: Optional[int] = typer.Option(None, help="Settle delay after load (ms)"),
    challenge_wait: Optional[int] = typer.Option(None, help="Challenge pause (ms)"),
    additional_wait: Optional[int] = typer.Option(None, help="Extra delay (ms)"),
    header: list[str] = typer.Option([], "--header", "-H", help="Extra header, NAME=VALUE"),
    script: Optional[str] = typer.Option(None, help="JavaScript to run before extraction"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Harvest cookies from a single ad-hoc URL."""
    configure_logging(level=logging.WARNING)

    try:
        validate_target_url(url)
    except InvalidTargetURLError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(code=2)

    options: dict[str, Any] = {
        "timeout": timeout,
        "waitUntil": wait_until,
        "initialWait": initial_wait,
        "cloudflareWait": challenge_wait,
        "additionalWait": additional_wait,
        "executeScript": script,
    }
    if header:
        headers = {}
        for item in header:
            name, sep, value = item.partition("=")
            if not sep or not name.strip():
                console.print(f"[red]Invalid header (expected NAME=VALUE):[/] {item}")
                raise typer.Exit(code=2)
            headers[name.strip()] = value.strip()
        options["headers"] = headers
    options = {k: v for k, v in options.items() if v is not None}

    async def _run() -> VisitResult:
        harvester = CookieHarvester(HarvesterConfig.from_env())
        try:
            await harvester.sessions.init()
        except LaunchError as e:
            await harvester.shutdown()
            _launch_failed(e)
        try:
            return await harvester.request_custom_job(url, options)
        finally:
            await harvester.shutdown()

    result = asyncio.run(_run())

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)

    if not result.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
