"""CLI entry point for pallet-delta."""

from __future__ import annotations

import json
import logging
import sys
from datetime import date, datetime, timedelta, timezone, tzinfo
from pathlib import Path

import click
from pydantic import ValidationError

from pallet_delta.config import DEFAULT_DB_PATH, EngineSettings
from pallet_delta.db import EventStore
from pallet_delta.errors import EngineError
from pallet_delta.models import DerivedRecord, NewBreak, NewEvent

db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    help="Path to SQLite database",
)


def format_seconds(seconds: int | float | None) -> str:
    """Format a delta in seconds as 'Xm YYs', 'Ys' or '-' for missing.

    Args:
        seconds: Delta in seconds, possibly negative or None.

    Returns:
        Formatted duration string.
    """
    if seconds is None:
        return "-"
    sign = "-" if seconds < 0 else ""
    total = abs(int(round(seconds)))
    minutes, secs = divmod(total, 60)
    if minutes:
        return f"{sign}{minutes}m {secs:02d}s"
    return f"{sign}{secs}s"


def parse_day(value: str | None, tz: tzinfo = timezone.utc) -> date:
    """Parse YYYY-MM-DD, 'today' or 'yesterday' (default: yesterday).

    Relative days are taken in tz, the zone daily summaries are built in.
    """
    today = datetime.now(tz).date()
    if value is None or value == "yesterday":
        return today - timedelta(days=1)
    if value == "today":
        return today
    return datetime.strptime(value, "%Y-%m-%d").date()


def record_to_json(record: DerivedRecord, *, legacy_alias: bool = False) -> dict:
    """Serialize a derived record, optionally adding the legacy delta_sec alias."""
    data = record.model_dump(mode="json")
    if legacy_alias:
        data["delta_sec"] = record.net_delta_seconds
    return data


def _open_existing(db: Path, settings: EngineSettings) -> EventStore:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)
    return EventStore.open(db, settings=settings)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging verbosity",
)
@click.pass_context
def main(ctx: click.Context, log_level: str) -> None:
    """Pallet delta engine CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.obj = EngineSettings.from_env()


@main.command("append")
@db_option
@click.pass_obj
def append_command(settings: EngineSettings, db: Path) -> None:
    """Append events from stdin (JSONL format) and derive their deltas.

    Each line is an object with occurred_at, partition_key and optional id
    and attributes. Invalid lines are reported and skipped.

    Example usage:
        cat pallets.jsonl | pallet-delta append
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    appended = 0
    valid_count = 0
    has_input = False

    with EventStore.open(db, settings=settings) as store:
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                event = NewEvent.model_validate(json.loads(stripped))
                valid_count += 1
                store.append_event(event)
                appended += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
            except EngineError as e:
                click.echo(f"Warning: line {line_number}: {e}", err=True)

    click.echo(f"Appended {appended} events")

    if has_input and valid_count == 0:
        sys.exit(1)


@main.command("add-break")
@db_option
@click.option("--start", "start", required=True, help="ISO 8601 break start (with offset)")
@click.option("--end", "end", required=True, help="ISO 8601 break end (with offset)")
@click.option("--partition", "partition_key", default=None, help="Limit break to one partition")
@click.option("--operator", default=None, help="Who took the break")
@click.option("--type", "break_type", default=None, help="Break type (lunch, coffee, ...)")
@click.pass_obj
def add_break_command(
    settings: EngineSettings,
    db: Path,
    start: str,
    end: str,
    partition_key: str | None,
    operator: str | None,
    break_type: str | None,
) -> None:
    """Record a break interval excluded from working time."""
    db.parent.mkdir(parents=True, exist_ok=True)
    try:
        brk = NewBreak(
            start=start,
            end=end,
            partition_key=partition_key,
            operator=operator,
            break_type=break_type,
        )
    except ValidationError as e:
        click.echo(f"Invalid break: {e}", err=True)
        sys.exit(1)

    with EventStore.open(db, settings=settings) as store:
        store.add_break(brk)
    click.echo(f"Added break {brk.id}")


@main.command("recompute")
@db_option
@click.option("--partition", "partition_key", default=None, help="Only rebuild this partition")
@click.pass_obj
def recompute_command(settings: EngineSettings, db: Path, partition_key: str | None) -> None:
    """Rebuild derived records from raw events."""
    with _open_existing(db, settings) as store:
        result = store.recompute(partition_key)
    click.echo(
        f"Recomputed {result.records_written} records in "
        f"{result.partitions_processed} partition(s) ({result.duration_ms} ms)"
    )


@main.command("flag")
@db_option
@click.option("--threshold", type=int, default=None, help="Net delta threshold in seconds")
@click.pass_obj
def flag_command(settings: EngineSettings, db: Path, threshold: int | None) -> None:
    """Flag records whose net delta exceeds the threshold."""
    with _open_existing(db, settings) as store:
        result = store.flag_anomalies(threshold)
    click.echo(f"Flagged {result.updated_count} anomalies")


@main.command("aggregate")
@db_option
@click.option("--date", "day", default=None, help="Day to aggregate (YYYY-MM-DD, default: yesterday)")
@click.pass_obj
def aggregate_command(settings: EngineSettings, db: Path, day: str | None) -> None:
    """Rebuild daily per-partition summaries for one day."""
    try:
        summary_day = parse_day(day, settings.tz)
    except ValueError:
        click.echo(f"Invalid date format: {day}. Use YYYY-MM-DD.", err=True)
        sys.exit(1)

    with _open_existing(db, settings) as store:
        result = store.aggregate_day(summary_day)
    click.echo(
        f"Aggregated {result.partitions_processed} partition(s) for "
        f"{summary_day.isoformat()} ({result.duration_ms} ms)"
    )


@main.command("check")
@db_option
@click.pass_obj
def check_command(settings: EngineSettings, db: Path) -> None:
    """Check derived records for consistency violations."""
    with _open_existing(db, settings) as store:
        findings = store.check_consistency()

    if not findings:
        click.echo("No consistency violations")
        return

    for finding in findings:
        click.echo(f"{finding.kind}: {finding.event_id} [{finding.partition_key}] {finding.detail}")
    click.echo(f"{len(findings)} consistency violation(s)", err=True)
    sys.exit(1)


@main.command("records")
@db_option
@click.option("--partition", "partition_key", default=None, help="Filter by partition")
@click.option("--limit", type=int, help="Maximum number of records to output")
@click.option("--legacy-alias", is_flag=True, help="Include delta_sec mirroring net delta")
@click.pass_obj
def records_command(
    settings: EngineSettings,
    db: Path,
    partition_key: str | None,
    limit: int | None,
    legacy_alias: bool,
) -> None:
    """Output derived records in JSONL format."""
    with _open_existing(db, settings) as store:
        for record in store.get_derived_records(partition_key=partition_key, limit=limit):
            click.echo(json.dumps(record_to_json(record, legacy_alias=legacy_alias)))


@main.command("summaries")
@db_option
@click.option("--since", default=None, help="First day (YYYY-MM-DD)")
@click.option("--partition", "partition_key", default=None, help="Filter by partition")
@click.pass_obj
def summaries_command(
    settings: EngineSettings,
    db: Path,
    since: str | None,
    partition_key: str | None,
) -> None:
    """Output stored daily summaries in JSONL format."""
    start = None
    if since is not None:
        try:
            start = parse_day(since, settings.tz)
        except ValueError:
            click.echo(f"Invalid date format: {since}. Use YYYY-MM-DD.", err=True)
            sys.exit(1)

    with _open_existing(db, settings) as store:
        for summary in store.get_daily_summaries(start=start, partition_key=partition_key):
            click.echo(json.dumps(summary.model_dump(mode="json")))


@main.command("summary")
@db_option
@click.argument("partition_key")
@click.pass_obj
def summary_command(settings: EngineSettings, db: Path, partition_key: str) -> None:
    """Show net delta statistics for one partition."""
    with _open_existing(db, settings) as store:
        summary = store.partition_summary(partition_key)

    if summary is None:
        click.echo(f"No deltas for {partition_key}")
        return

    click.echo(f"Partition: {summary.partition_key}")
    click.echo(f"  Gaps:      {summary.event_count}")
    click.echo(f"  Average:   {format_seconds(summary.avg_net_delta_seconds)}")
    click.echo(f"  Min:       {format_seconds(summary.min_net_delta_seconds)}")
    click.echo(f"  Max:       {format_seconds(summary.max_net_delta_seconds)}")
    click.echo(f"  Anomalies: {summary.anomaly_count}")


@main.command("breaks-impact")
@db_option
@click.option("--partition", "partition_key", default=None, help="Filter by partition")
@click.option("--limit", type=int, default=20, help="Maximum number of rows")
@click.pass_obj
def breaks_impact_command(
    settings: EngineSettings,
    db: Path,
    partition_key: str | None,
    limit: int,
) -> None:
    """Show how much of each recent gap was spent on breaks."""
    with _open_existing(db, settings) as store:
        rows = store.break_impact(partition_key=partition_key, limit=limit)

    if not rows:
        click.echo("No deltas recorded")
        return

    click.echo("Occurred at            Partition        Gross    Breaks   Net      Break %")
    for row in rows:
        partition = row.partition_key
        if len(partition) > 16:
            partition = partition[:13] + "..."
        click.echo(
            f"{row.occurred_at.strftime('%Y-%m-%d %H:%M:%S')}    {partition:<16} "
            f"{format_seconds(row.gross_delta_seconds):>8} {format_seconds(row.break_overlap_seconds):>8} "
            f"{format_seconds(row.net_delta_seconds):>8} {row.break_percentage:>6.2f}"
        )


@main.command("status")
@db_option
@click.pass_obj
def status_command(settings: EngineSettings, db: Path) -> None:
    """Show store status.

    Displays row counts and the last event time for each partition.
    """
    with _open_existing(db, settings) as store:
        counts = store.count_rows()
        partitions = store.get_last_event_per_partition()

    click.echo(f"Database: {db}")
    click.echo()
    click.echo(f"Events:          {counts['events']}")
    click.echo(f"Derived records: {counts['derived_records']}")
    click.echo(f"Breaks:          {counts['breaks']}")
    click.echo(f"Daily summaries: {counts['daily_summaries']}")

    if not partitions:
        click.echo()
        click.echo("No events recorded")
        return

    click.echo()
    click.echo("Last event per partition:")
    for partition in partitions:
        click.echo(
            f"  {partition['partition_key']}: {partition['last_occurred_at']} "
            f"({partition['event_count']} events)"
        )


if __name__ == "__main__":
    main()
