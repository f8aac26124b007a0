"""nightlife_etl.cli

Trigger entrypoint for crawl invocations.

Modes (--mode):
  crawl_next_venue    crawl the earliest-due active venue (default)
  scan_area           scan one area listing (--area-id, optional --start-date)
  discover_venues     register venues newly seen in active cities
  scan_active_cities  scan_area over every active city

Usage:
    python -m nightlife_etl.cli --mode crawl_next_venue --db-dsn "$DB_DSN"

    python -m nightlife_etl.cli \\
        --mode scan_area --area-id 13 --start-date 2025-06-01 \\
        --config config/crawler.yml

Every run prints a JSON summary ({status, message, counters, persist, ...})
and writes it to <report_dir>/<run_id>.json. Exit code is 1 only when the
invocation could not run at all (store unreachable, settings invalid, the
target listing fetch failed) or was aborted by an unexpected error; everything
else exits 0.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import date
from pathlib import Path

import click
import psycopg

from nightlife_etl.alerts import build_alerter
from nightlife_etl.config import DEFAULT_CONFIG_PATH, SettingsValidationError, load_settings
from nightlife_etl.crawl import (
    CrawlContext,
    CrawlResult,
    crawl_next_venue,
    discover_venues,
    scan_active_cities,
    scan_area,
)
from nightlife_etl.shared import CrawlCounters, FatalInvocationError, utc_now, write_run_report

log = logging.getLogger(__name__)

MODES = ["crawl_next_venue", "scan_area", "discover_venues", "scan_active_cities"]


def run_mode(
    mode: str,
    ctx: CrawlContext,
    counters: CrawlCounters,
    area_id: int | None = None,
    start_date: date | None = None,
) -> CrawlResult:
    if mode == "crawl_next_venue":
        return crawl_next_venue(ctx, counters)
    if mode == "scan_area":
        return scan_area(ctx, area_id, start_date, counters)  # type: ignore[arg-type]
    if mode == "discover_venues":
        return discover_venues(ctx, counters)
    if mode == "scan_active_cities":
        return scan_active_cities(ctx, counters)
    raise ValueError(f"unknown mode {mode!r}")


@click.command()
@click.option(
    "--mode",
    default="crawl_next_venue",
    type=click.Choice(MODES),
    show_default=True,
    help="Crawl mode",
)
@click.option("--db-dsn", envvar="DB_DSN", default=None, help="PostgreSQL DSN (or $DB_DSN)")
@click.option(
    "--config", "config_path",
    default=str(DEFAULT_CONFIG_PATH), show_default=True, type=click.Path(),
    help="Crawler settings YAML",
)
@click.option("--area-id", default=None, type=int, help="[scan_area] Events-graph area id")
@click.option(
    "--start-date", default=None, type=click.DateTime(formats=["%Y-%m-%d"]),
    help="[scan_area] First listing date (default: today, UTC)",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
@click.option("--no-enrich", is_flag=True, default=False, help="Skip SoundCloud artist enrichment")
@click.option("--no-notify", is_flag=True, default=False, help="Do not push follower notifications")
def main(
    mode: str,
    db_dsn: str | None,
    config_path: str,
    area_id: int | None,
    start_date,
    run_id: str | None,
    log_level: str,
    no_enrich: bool,
    no_notify: bool,
) -> None:
    """Events-graph crawler CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now().isoformat()
    counters = CrawlCounters()

    click.echo(f"[{run_id}] Starting {mode} run", err=True)

    try:
        settings = load_settings(Path(config_path))
    except (SettingsValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid settings {config_path}: {exc}", err=True)
        sys.exit(1)

    if mode == "scan_area" and area_id is None:
        click.echo(f"[{run_id}] FATAL: --area-id is required for --mode scan_area", err=True)
        sys.exit(1)

    alerter = build_alerter(settings.secrets.slack_webhook_url, timeout=settings.timeout_seconds)
    dsn = db_dsn or settings.secrets.db_dsn

    try:
        if not dsn:
            raise FatalInvocationError("no database DSN: pass --db-dsn or set DB_DSN")
        try:
            conn = psycopg.connect(dsn, autocommit=True)
        except psycopg.OperationalError as exc:
            raise FatalInvocationError(f"store unreachable: {exc}") from exc
        try:
            ctx = CrawlContext.from_settings(
                conn, settings, alerter=alerter, enrich=not no_enrich, notify=not no_notify
            )
            result = run_mode(
                mode, ctx, counters, area_id=area_id,
                start_date=start_date.date() if start_date else None,
            )
        finally:
            conn.close()
    except FatalInvocationError as exc:
        alerter.send(f"{mode} failed: {exc}", is_error=True)
        result = CrawlResult("failed", str(exc), counters)
    except Exception as exc:
        log.exception("%s aborted by unexpected error", mode)
        alerter.send(f"{mode} failed unexpectedly: {type(exc).__name__}: {exc}", is_error=True)
        result = CrawlResult("failed", f"unexpected error: {type(exc).__name__}: {exc}", counters)

    summary = result.to_dict()
    click.echo(json.dumps(summary, indent=2, default=str))
    report_path = write_run_report(
        run_id, started_at, mode, summary, report_dir=Path(settings.report_dir)
    )
    click.echo(f"[{run_id}] Run report: {report_path}", err=True)

    if result.status == "failed":
        click.echo(f"[{run_id}] FATAL: {result.message}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
