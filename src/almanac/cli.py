"""CLI for Almanac: run syncs, expand recurrence rules and migrate the schema."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path

import click

from almanac import __version__
from almanac.config import AlmanacConfig, ConfigError, load_config
from almanac.core.logging import configure_logging
from almanac.core.telemetry import init_telemetry
from almanac.db import Database, Ready, open_database
from almanac.migrations import run_migrations
from almanac.models import SyncResult, SyncRunStatus, from_millis
from almanac.providers import build_adapter
from almanac.recurrence import (
    DEFAULT_MAX_OCCURRENCES,
    describe_rule,
    generate_occurrences,
    parse_rrule,
)
from almanac.store import PostgresCalendarStore
from almanac.sync import SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_EXPAND_DAYS = 30


def _parse_iso(ctx: click.Context, param: click.Parameter, value: str | None) -> datetime | None:
    """click callback: ISO-8601 text to an aware datetime (naive values are UTC)."""
    if value is None:
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO-8601 date/time: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _load(config_path: Path | None) -> AlmanacConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        service_name=config.name,
    )
    return config


def _format_result(result: SyncResult) -> str:
    return (
        f"{result.provider:<8} #{result.connection_id:<6} {result.status:<8} "
        f"processed={result.events_processed} created={result.events_created} "
        f"updated={result.events_updated} deleted={result.events_deleted}"
    )


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="almanac.toml (or a directory holding one); defaults to $ALMANAC_CONFIG",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Almanac: calendar aggregation, sync and recurrence tooling."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--user", "user_id", type=int, required=True, help="User whose connections to sync")
@click.option("--connection", "connection_id", type=int, default=None, help="Sync only this one")
@click.pass_context
def sync(ctx: click.Context, user_id: int, connection_id: int | None) -> None:
    """Sync a user's connections (or one of them) with their providers."""
    config = _load(ctx.obj["config_path"])
    init_telemetry(config.name)
    results = asyncio.run(_run_sync(config, user_id, connection_id))
    if not results:
        click.echo("Nothing to sync.")
        return
    for result in results:
        click.echo(_format_result(result))
        for error in result.errors:
            click.echo(f"    ! {error}")
    if any(result.status == SyncRunStatus.FAILED for result in results):
        sys.exit(1)


async def _run_sync(
    config: AlmanacConfig, user_id: int, connection_id: int | None
) -> list[SyncResult]:
    connectivity = await open_database(config.db)
    if not isinstance(connectivity, Ready):
        click.echo(f"Database unavailable: {connectivity.reason}", err=True)
        sys.exit(1)

    database = connectivity.database
    try:
        store = PostgresCalendarStore(database)
        engine = SyncEngine(
            store,
            adapter_factory=partial(build_adapter, config=config),
            settings=config.sync,
        )
        if connection_id is None:
            return await engine.sync_all(user_id)

        connection = await store.get_connection(user_id, connection_id)
        if connection is None:
            click.echo(f"Connection {connection_id} not found for user {user_id}", err=True)
            sys.exit(1)
        return [await engine.sync_connection(connection)]
    finally:
        await database.close()


@cli.command()
@click.argument("rule_text")
@click.option("--start", required=True, callback=_parse_iso, help="Anchor event start (ISO)")
@click.option("--end", required=True, callback=_parse_iso, help="Anchor event end (ISO)")
@click.option(
    "--from", "window_start", callback=_parse_iso, help="Window start; defaults to --start"
)
@click.option(
    "--to", "window_end", callback=_parse_iso, help="Window end; defaults to 30 days later"
)
@click.option("--max", "max_count", type=click.IntRange(min=1), default=DEFAULT_MAX_OCCURRENCES)
def expand(
    rule_text: str,
    start: datetime,
    end: datetime,
    window_start: datetime | None,
    window_end: datetime | None,
    max_count: int,
) -> None:
    """Print the occurrences of RULE_TEXT for an anchor event."""
    rule = parse_rrule(rule_text)
    if rule is None:
        click.echo(f"Invalid recurrence rule: {rule_text}", err=True)
        sys.exit(1)
    if end < start:
        raise click.BadParameter("--end must not be before --start", param_hint="--end")

    lower = window_start or start
    upper = window_end or lower + timedelta(days=DEFAULT_EXPAND_DAYS)
    occurrences = generate_occurrences(start, end, rule, lower, upper, max_count)
    for occurrence in occurrences:
        begins = from_millis(occurrence.start).isoformat()
        click.echo(f"{begins}  {from_millis(occurrence.end).isoformat()}")
    logger.debug("Expanded %s into %d occurrence(s)", rule_text, len(occurrences))


@cli.command()
@click.argument("rule_text")
def describe(rule_text: str) -> None:
    """Print a human-readable summary of RULE_TEXT."""
    rule = parse_rrule(rule_text)
    if rule is None:
        click.echo(f"Invalid recurrence rule: {rule_text}", err=True)
        sys.exit(1)
    click.echo(describe_rule(rule))


@cli.command()
@click.option("--chain", default="core", show_default=True, help="Version chain, or 'all'")
@click.pass_context
def migrate(ctx: click.Context, chain: str) -> None:
    """Upgrade the database schema to the latest revision."""
    config = _load(ctx.obj["config_path"])
    db_url = config.db.url or Database.from_config(config.db).dsn
    try:
        run_migrations(db_url, chain=chain)
    except ValueError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)
    click.echo(f"Migrated chain {chain!r} to head.")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
