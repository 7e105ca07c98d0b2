"""CLI for the device spec scraper."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import click
import uvicorn

from api.main import create_app

from .cache.normalization import (
    PASSES,
    PostgresQuoteTable,
    backfill_redirect_types,
    load_price_payloads,
    run_pass,
    table_for,
)
from .config import Settings, configure_logging
from .db import ensure_schema, get_db_connection
from .errors import ScraperError
from .runtime import build_runtime
from .search.crawler import ROOT_PREFIXES

LOGGER = logging.getLogger(__name__)

NORMALIZED_TABLES = ("entity_data_raw", "entity_data")


def _settings(require_browser: bool = False) -> Settings:
    settings = Settings.from_env()
    try:
        settings.validate(require_browser=require_browser)
    except ScraperError as exc:
        raise click.ClickException(exc.message) from exc
    return settings


def _database_url(settings: Settings) -> str:
    if not settings.database_url:
        raise click.ClickException("DATABASE_URL (or PG_DSN) is not set")
    return settings.database_url


def _run(coro):
    try:
        return asyncio.run(coro)
    except ScraperError as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}") from exc


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Device spec scraper CLI."""
    configure_logging(verbose)


@cli.command("init-db")
def init_db() -> None:
    """Create scraper tables and indexes."""
    settings = _settings()
    ensure_schema(_database_url(settings))
    click.echo("✅ Schema is up to date")


@cli.command()
@click.option("--host", default=None, help="Bind address (default from SCRAPER_HOST)")
@click.option("--port", default=None, type=int, help="Bind port (default from SCRAPER_PORT)")
@click.option("--no-workers", is_flag=True, help="Serve the gateway without a worker pool")
def serve(host: Optional[str], port: Optional[int], no_workers: bool) -> None:
    """Run the real-time gateway (and the worker pool)."""
    settings = _settings(require_browser=not no_workers)
    app = create_app(settings=settings, start_workers=not no_workers)
    click.echo(f"🚀 Serving gateway on {host or settings.host}:{port or settings.port}")
    uvicorn.run(app, host=host or settings.host, port=port or settings.port, log_config=None)


@cli.command()
@click.option("--workers", "worker_count", default=None, type=int, help="Pool size (default from SCRAPER_WORKERS)")
def worker(worker_count: Optional[int]) -> None:
    """Run the worker pool only."""
    settings = _settings(require_browser=True)
    if worker_count is not None:
        settings.worker_count = worker_count

    async def main() -> None:
        runtime = await build_runtime(settings, require_browser=True)
        await runtime.service.resume_bulk_jobs()
        pool = runtime.start_workers()
        try:
            await pool.run_forever()
        finally:
            await runtime.close()

    click.echo(f"🚀 Starting {settings.worker_count} worker(s)")
    try:
        _run(main())
    except KeyboardInterrupt:
        LOGGER.info("Keyboard interrupt, shutting down...")


@cli.command()
@click.option("--device-id", required=True, help="Catalog device id")
@click.option("--user-id", required=True, help="Requesting user id")
@click.option("--query", default="", help="Free-text device name")
@click.option("--brand", default=None, help="Brand hint")
@click.option("--target", "target_id", default=None, help="Known target slug (skips search)")
def enqueue(device_id: str, user_id: str, query: str, brand: Optional[str], target_id: Optional[str]) -> None:
    """Admit a scrape job for a device."""
    settings = _settings()

    async def main():
        runtime = await build_runtime(settings)
        try:
            return await runtime.service.enqueue(device_id, user_id, query, brand=brand, target_id=target_id)
        finally:
            await runtime.close()

    job = _run(main())
    click.echo(f"✅ Enqueued job {job.id} for device {job.device_id}")


@cli.command("bulk-start")
@click.option("--user-id", required=True, help="Requesting user id")
@click.option("--target", "target_ids", multiple=True, help="Target slug (repeatable)")
@click.option("--file", "targets_file", type=click.File("r"), default=None, help="File with one target slug per line")
def bulk_start(user_id: str, target_ids, targets_file) -> None:
    """Admit one scrape job per target as a single bulk job."""
    targets = list(target_ids)
    if targets_file is not None:
        targets.extend(line.strip() for line in targets_file if line.strip())
    if not targets:
        raise click.UsageError("Give at least one --target or a --file")
    settings = _settings()

    async def main():
        runtime = await build_runtime(settings)
        try:
            return await runtime.service.start_bulk(user_id, targets)
        finally:
            await runtime.close()

    bulk = _run(main())
    click.echo(f"✅ Started bulk {bulk.id}: {bulk.total} job(s), {len(bulk.skipped)} skipped")


@cli.command()
@click.option("--seed", "seeds", multiple=True, help="Prefix to start from (repeatable, default: a-z and 0-9)")
@click.option("--max-requests", default=None, type=int, help="Stop after this many autocomplete requests")
def crawl(seeds, max_requests: Optional[int]) -> None:
    """Enumerate target slugs by prefix and remember them in the catalog."""
    settings = _settings()

    async def main():
        runtime = await build_runtime(settings)
        try:
            start = [seed.lower() for seed in seeds] or ROOT_PREFIXES
            return await runtime.crawler.crawl(start, max_requests=max_requests)
        finally:
            await runtime.close()

    report = _run(main())
    click.echo(
        f"✅ Crawled {report.requests} prefix(es): {len(report.candidates)} device(s), "
        f"{len(report.failed)} failed, {len(report.pending)} pending"
    )


@cli.command()
def reap() -> None:
    """Release stale claims and recover or interrupt stale jobs."""
    settings = _settings()

    async def main():
        runtime = await build_runtime(settings)
        try:
            report = await runtime.service.reap_stale()
            pruned = await runtime.service.prune_archived()
            return report, pruned
        finally:
            await runtime.close()

    report, pruned = _run(main())
    click.echo(
        f"✅ Released {report.released_claims} claim(s), requeued {len(report.requeued)}, "
        f"interrupted {len(report.interrupted)}, pruned {pruned}"
    )


@cli.command()
def stats() -> None:
    """Show job and queue statistics."""
    settings = _settings()

    async def main():
        runtime = await build_runtime(settings)
        try:
            return await runtime.service.stats()
        finally:
            await runtime.close()

    counts = _run(main())
    click.echo("\n📊 Queue Statistics\n" + "=" * 40)
    for key, count in sorted(counts.items()):
        click.echo(f"  {key:20s}: {count:6d}")
    click.echo()


@cli.command("reset-errors")
def reset_errors() -> None:
    """Put failed queue items of active jobs back to pending."""
    settings = _settings()

    async def main():
        runtime = await build_runtime(settings)
        try:
            return await runtime.service.reset_error_items()
        finally:
            await runtime.close()

    count = _run(main())
    click.echo(f"✅ Reset {count} item(s)")


@cli.command()
@click.option(
    "--pass",
    "pass_names",
    multiple=True,
    type=click.Choice(sorted(PASSES)),
    help="Pass to run (default: all, in order)",
)
@click.option(
    "--table",
    "tables",
    multiple=True,
    type=click.Choice(NORMALIZED_TABLES),
    help="Table to normalize (default: both)",
)
def normalize(pass_names, tables) -> None:
    """Rewrite legacy payload encodings in the entity tables."""
    settings = _settings()
    selected = [PASSES[name] for name in (pass_names or PASSES)]
    conn = get_db_connection(_database_url(settings))
    try:
        for normalization_pass in selected:
            for table in tables or NORMALIZED_TABLES:
                report = run_pass(table_for(conn, table), normalization_pass)
                click.echo(
                    f"{normalization_pass.name} on {table}: scanned={report.scanned} "
                    f"changed={report.changed} invalid={report.invalid}"
                )
    finally:
        conn.close()


@cli.command("backfill-redirect-types")
@click.option("--source", default="price_ru", help="Price source whose raw payloads carry redirect targets")
def backfill_redirect_types_command(source: str) -> None:
    """Fill missing price quote redirect types from raw payloads."""
    settings = _settings()
    conn = get_db_connection(_database_url(settings))
    try:
        updated = backfill_redirect_types(load_price_payloads(conn, source), PostgresQuoteTable(conn), source)
    finally:
        conn.close()
    click.echo(f"✅ Updated {updated} price quote(s)")


if __name__ == "__main__":
    cli()
