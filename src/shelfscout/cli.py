"""Command-line interface for ShelfScout."""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import click
import structlog
from rich.console import Console
from rich.table import Table

from shelfscout import __version__
from shelfscout.config import Config
from shelfscout.container import DependencyContainer
from shelfscout.exceptions import ShelfScoutError
from shelfscout.observability import configure_logging
from shelfscout.protocols import JobState

console = Console()
logger = structlog.get_logger(__name__)


class ShutdownManager:
    """Turns SIGINT/SIGTERM into an asyncio event."""

    def __init__(self) -> None:
        self.stop_event = asyncio.Event()
        self._shutdown_signals = (signal.SIGINT, signal.SIGTERM)

    def install(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._shutdown_signals:
            loop.add_signal_handler(sig, self._signal_handler, sig)

    def _signal_handler(self, signum: int) -> None:
        if self.stop_event.is_set():
            return
        console.print(f"\n[yellow]Received signal {signum}, shutting down...[/yellow]")
        self.stop_event.set()

    async def wait(self) -> None:
        await self.stop_event.wait()


def _load_config(ctx: click.Context) -> Config:
    config_path: Optional[Path] = ctx.obj["config_path"]
    config = Config.from_yaml(config_path) if config_path else Config()
    config.monitoring.log_level = ctx.obj["log_level"]
    return config


def _run(ctx: click.Context, func: Callable[[DependencyContainer], Awaitable[Any]]) -> Any:
    """Run *func* inside a container lifecycle, mapping domain errors to exit codes."""
    config = _load_config(ctx)
    configure_logging(config.monitoring)

    async def _main() -> Any:
        container = DependencyContainer(config_path=ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            return await func(container)

    try:
        return asyncio.run(_main())
    except ShelfScoutError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _parse_selectors(values: Tuple[str, ...]) -> Dict[str, str]:
    selectors: Dict[str, str] = {}
    for value in values:
        name, sep, selector = value.partition("=")
        if not sep or not name or not selector:
            raise click.BadParameter(f"Expected NAME=SELECTOR, got '{value}'", param_hint="--selector")
        selectors[name.strip()] = selector.strip()
    return selectors


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, path_type=Path), help="Configuration file path")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[Path], log_level: str) -> None:
    """ShelfScout - product scraping job orchestration."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--selector", "-s", multiple=True, help="Field selector as NAME=CSS (repeatable)")
@click.option("--timeout-ms", type=int, default=None, help="Hard ceiling per attempt")
@click.option("--max-retries", type=int, default=None, help="Automatic retries after the first attempt")
@click.option("--no-save", is_flag=True, help="Do not keep scraped fields on the job record")
@click.option("--client-id", default="cli", show_default=True, help="Identifier used for rate limiting")
@click.option("--wait", is_flag=True, help="Process the jobs in this process and wait for them")
@click.pass_context
def submit(
    ctx: click.Context,
    urls: Tuple[str, ...],
    selector: Tuple[str, ...],
    timeout_ms: Optional[int],
    max_retries: Optional[int],
    no_save: bool,
    client_id: str,
    wait: bool,
) -> None:
    """Queue one scrape job per URL."""
    options: Dict[str, Any] = {"selectors": _parse_selectors(selector), "save_result": not no_save}
    if timeout_ms is not None:
        options["timeout_ms"] = timeout_ms
    if max_retries is not None:
        options["max_retries"] = max_retries

    async def _submit(container: DependencyContainer) -> None:
        service = await container.get_service()
        accepted = await service.submit_batch(client_id, list(urls), options)
        if not wait:
            _print_json(accepted)
            return
        queue = await container.get_queue()
        await queue.start()
        await queue.wait_until_idle()
        _print_json([await service.get_job(job_id) for job_id in accepted["jobIds"]])

    _run(ctx, _submit)


@cli.command()
@click.argument("job_id")
@click.pass_context
def status(ctx: click.Context, job_id: str) -> None:
    """Show a job."""

    async def _status(container: DependencyContainer) -> None:
        service = await container.get_service()
        _print_json(await service.get_job(job_id))

    _run(ctx, _status)


@cli.command()
@click.option("--state", type=click.Choice([s.value for s in JobState]), default=None)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=10, show_default=True)
@click.pass_context
def jobs(ctx: click.Context, state: Optional[str], page: int, limit: int) -> None:
    """List jobs."""

    async def _jobs(container: DependencyContainer) -> None:
        queue = await container.get_queue()
        counts = await queue.counts()
        listed = await queue.list(state, page=page, limit=limit)

        table = Table(title=f"Jobs ({state or 'all'}) page {page}")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("State")
        table.add_column("Attempts", justify="right")
        table.add_column("Progress", justify="right")
        table.add_column("URL")
        table.add_column("Failure")
        for job in listed:
            table.add_row(
                job.id,
                job.state.value,
                str(job.attempts_made),
                f"{job.progress}%",
                job.url,
                job.failure_reason or "" if job.state is JobState.FAILED else "",
            )
        console.print(table)
        console.print(" ".join(f"{name}={count}" for name, count in counts.items()))

    _run(ctx, _jobs)


@cli.command()
@click.argument("job_id")
@click.pass_context
def retry(ctx: click.Context, job_id: str) -> None:
    """Requeue a failed job."""

    async def _retry(container: DependencyContainer) -> None:
        service = await container.get_service()
        _print_json(await service.retry_job(job_id))

    _run(ctx, _retry)


@cli.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a waiting or active job."""

    async def _cancel(container: DependencyContainer) -> None:
        service = await container.get_service()
        _print_json(await service.cancel_job(job_id))

    _run(ctx, _cancel)


@cli.command()
@click.argument("seed_url")
@click.option("--depth", type=int, default=None, help="Maximum crawl depth")
@click.option("--max-urls", type=int, default=None, help="Maximum URLs to return")
@click.option("--pattern", "-p", multiple=True, help="Include pattern (substring, repeatable)")
@click.option("--exclude", "-x", multiple=True, help="Exclude pattern (substring, repeatable)")
@click.option("--timeout-ms", type=int, default=None, help="Wall-clock ceiling for the crawl")
@click.option("--enqueue", is_flag=True, help="Queue a scrape job for every URL found")
@click.pass_context
def discover(
    ctx: click.Context,
    seed_url: str,
    depth: Optional[int],
    max_urls: Optional[int],
    pattern: Tuple[str, ...],
    exclude: Tuple[str, ...],
    timeout_ms: Optional[int],
    enqueue: bool,
) -> None:
    """Discover product URLs starting from a listing page."""
    request: Dict[str, Any] = {"include_patterns": list(pattern), "exclude_patterns": list(exclude)}
    if depth is not None:
        request["max_depth"] = depth
    if max_urls is not None:
        request["max_urls"] = max_urls
    if timeout_ms is not None:
        request["timeout_ms"] = timeout_ms

    async def _discover(container: DependencyContainer) -> None:
        service = await container.get_service()
        _print_json(await service.discover(seed_url, request, enqueue=enqueue))

    _run(ctx, _discover)


@cli.command()
@click.pass_context
def worker(ctx: click.Context) -> None:
    """Process queued jobs until interrupted."""

    async def _worker(container: DependencyContainer) -> None:
        shutdown = ShutdownManager()
        shutdown.install()
        await container.start_metrics()
        queue = await container.get_queue()
        await queue.start()
        console.print(f"[green]Worker running with concurrency {queue.concurrency}. Ctrl+C to stop.[/green]")
        await shutdown.wait()
        await queue.stop()
        _print_json(queue.get_stats())

    _run(ctx, _worker)


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Show component health and job counts."""

    async def _health(container: DependencyContainer) -> None:
        queue = await container.get_queue()
        status = container.get_health_status()
        status["jobs"] = await queue.counts()
        _print_json(status)

    _run(ctx, _health)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
