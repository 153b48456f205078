"""CLI entrypoint for the catalog crawler."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .config import Settings, get_settings
from .configs import validate_config
from .db.session import build_engine, init_models
from .errors import CrawlerError, InvalidConfigError
from .logging_utils import configure_logging
from .models import ConfigStatus, CrawlerConfig, Frequency, new_id
from .runtime import CrawlerRuntime
from .scheduling import compute_next_crawl

app = typer.Typer(help="Catalog crawler command line interface")

T = TypeVar("T")


def build_runtime(settings: Settings) -> CrawlerRuntime:
    return CrawlerRuntime.build(settings)


def _run(operation: Callable[[CrawlerRuntime], Awaitable[T]]) -> T:
    settings = get_settings()
    configure_logging(settings.log_file, settings.log_level)

    async def main() -> T:
        runtime = build_runtime(settings)
        try:
            return await operation(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(main())
    except CrawlerError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _dump(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command()
def show_config() -> None:
    """Print the active configuration."""

    settings = get_settings()
    typer.echo(settings.model_dump_json(indent=2))


@app.command()
def init_db() -> None:
    """Create the database tables."""

    settings = get_settings()

    async def main() -> None:
        engine = build_engine(settings.database_url)
        try:
            await init_models(engine)
        finally:
            await engine.dispose()

    asyncio.run(main())
    typer.echo("Database initialised")


@app.command()
def add_config(path: Path = typer.Argument(..., exists=True, readable=True)) -> None:
    """Register a crawler config from a JSON file."""

    data = json.loads(path.read_text())

    async def operation(runtime: CrawlerRuntime) -> CrawlerConfig:
        if data.get("config_id") and await runtime.store.get_config(data["config_id"]):
            raise InvalidConfigError(f"Config {data['config_id']} exists; use update-config to change it")
        overrides = data.get("options") or {}
        options = runtime.default_options()
        for key in options.to_dict():
            if key in overrides:
                setattr(options, key, overrides[key])
        config = CrawlerConfig(
            config_id=data.get("config_id") or new_id(),
            name=data["name"],
            target_url=data["target_url"],
            selectors=data.get("selectors", {}),
            strategy=data.get("strategy", "selector"),
            rate_limit=int(data.get("rate_limit", runtime.settings.default_rate_limit_per_minute)),
            frequency=Frequency(data.get("frequency", Frequency.DAILY.value)),
            cron_expression=data.get("cron_expression"),
            status=ConfigStatus(data.get("status", ConfigStatus.ACTIVE.value)),
            owner=data.get("owner"),
            supplier_id=data.get("supplier_id"),
            options=options,
            headers=data.get("headers", {}),
            cookies=data.get("cookies", {}),
        )
        validate_config(config)
        config.next_crawl = compute_next_crawl(config.frequency, None, config.cron_expression)
        return await runtime.store.save_config(config)

    config = _run(operation)
    typer.echo(f"Saved config {config.config_id}")


@app.command()
def update_config(config_id: str, path: Path = typer.Argument(..., exists=True, readable=True)) -> None:
    """Change the fields given in a JSON file, keeping the config's crawl history."""

    changes = json.loads(path.read_text())

    async def operation(runtime: CrawlerRuntime) -> CrawlerConfig:
        return await runtime.update_config(config_id, changes)

    _dump(_run(operation).to_dict())


@app.command()
def run_job(
    config_id: str,
    wait: bool = typer.Option(True, help="Wait for the job to finish and print it"),
) -> None:
    """Start a crawl for one config."""

    async def operation(runtime: CrawlerRuntime) -> Any:
        job = await runtime.manager.start_job(config_id)
        if wait:
            job = await runtime.manager.wait(job.job_id)
        return job.to_dict()

    _dump(_run(operation))


@app.command()
def sweep() -> None:
    """Start jobs for every due config once and wait for them."""

    async def operation(runtime: CrawlerRuntime) -> int:
        started = await runtime.scheduler.sweep()
        for job in started:
            await runtime.manager.wait(job.job_id)
        return len(started)

    count = _run(operation)
    typer.echo(f"Ran {count} scheduled jobs")


@app.command()
def scheduler(interval: Optional[float] = typer.Option(None, help="Seconds between sweeps")) -> None:
    """Run the scheduler loop until interrupted."""

    async def operation(runtime: CrawlerRuntime) -> None:
        await runtime.scheduler.run(interval or runtime.settings.scheduler_interval_seconds)

    try:
        _run(operation)
    except KeyboardInterrupt:
        typer.echo("Scheduler interrupted")


@app.command()
def quarantine_list(config_id: Optional[str] = typer.Option(None, help="Only this config")) -> None:
    """List quarantined URLs."""

    async def operation(runtime: CrawlerRuntime) -> Any:
        return [entry.to_dict() for entry in await runtime.quarantine.list(config_id)]

    _dump(_run(operation))


@app.command()
def quarantine_remove(config_id: str, url: str) -> None:
    """Release a URL from quarantine so the next job fetches it again."""

    async def operation(runtime: CrawlerRuntime) -> bool:
        return await runtime.quarantine.remove(config_id, url)

    if not _run(operation):
        typer.echo(f"{url} is not quarantined for {config_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {url} from quarantine")


@app.command()
def load_proxies(path: Path = typer.Argument(..., exists=True, readable=True)) -> None:
    """Merge proxies from a file into the configured proxy list."""

    settings = get_settings()
    if settings.proxy_list_path is None:
        typer.echo("CRAWLER_PROXY_LIST_PATH is not set", err=True)
        raise typer.Exit(code=1)

    existing = []
    if settings.proxy_list_path.exists():
        existing = [line.strip() for line in settings.proxy_list_path.read_text().splitlines() if line.strip()]
    incoming = [line.strip() for line in path.read_text().splitlines() if line.strip()]
    merged = list(dict.fromkeys(existing + incoming))
    settings.proxy_list_path.parent.mkdir(parents=True, exist_ok=True)
    settings.proxy_list_path.write_text("\n".join(merged) + "\n")
    typer.echo(f"Loaded {len(merged) - len(existing)} new proxies from {path} ({len(merged)} total)")


@app.command()
def domain_list() -> None:
    """List the crawl allowlist."""

    async def operation(runtime: CrawlerRuntime) -> Any:
        return [entry.to_dict() for entry in await runtime.allowlist.list()]

    _dump(_run(operation))


@app.command()
def domain_set(
    domain: str,
    allowed: bool = typer.Option(True, "--allow/--block", help="Allow or block the host"),
    notes: Optional[str] = typer.Option(None, help="Free text kept with the entry"),
) -> None:
    """Add or change a host on the crawl allowlist."""

    async def operation(runtime: CrawlerRuntime) -> Any:
        return (await runtime.allowlist.set(domain, allowed, notes)).to_dict()

    try:
        entry = _run(operation)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"{entry['domain']} is {'allowed' if entry['allowed'] else 'blocked'}")


@app.command()
def domain_remove(domain: str) -> None:
    """Delete a host from the crawl allowlist."""

    async def operation(runtime: CrawlerRuntime) -> bool:
        return await runtime.allowlist.remove(domain)

    if not _run(operation):
        typer.echo(f"{domain} is not on the allowlist", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {domain}")


if __name__ == "__main__":
    app()
