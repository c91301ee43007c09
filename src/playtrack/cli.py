"""CLI entry point for playtrack."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from pydantic import ValidationError

from playtrack.backup import SavedataArchiver
from playtrack.db import StatsStore
from playtrack.events import SessionEnded, parse_event
from playtrack.stats import StatisticsReconciler
from playtrack.tracker import PlaytimeTracker, ThresholdGate

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "playtrack" / "playtrack.db"
DEFAULT_BACKUP_ROOT = Path.home() / ".local" / "share" / "playtrack" / "backups"


def format_play_time(minutes: int) -> str:
    """Format minutes as 'Xh Ym', 'Ym', or fractional hours from 100h up.

    Args:
        minutes: Duration in whole minutes.

    Returns:
        Formatted duration string.
    """
    if not minutes:
        return "0m"
    hours, mins = divmod(minutes, 60)
    if hours >= 100:
        return f"{int(minutes / 60 * 10) / 10:.1f}h"
    if hours == 0:
        return f"{mins}m"
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


def format_last_played(timestamp: int | None, *, now: datetime | None = None) -> str:
    """Format a Unix timestamp as relative time (e.g., '3 days ago').

    Args:
        timestamp: Unix epoch seconds, or None if never played.
        now: Optional current time for testing (defaults to now).
    """
    if timestamp is None:
        return "never"
    if now is None:
        now = datetime.now()
    seconds = (now - datetime.fromtimestamp(timestamp)).total_seconds()
    if seconds < 60:
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def parse_local_time(value: str) -> int:
    """Parse an ISO 8601 timestamp into Unix seconds; naive values are local time."""
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"Invalid timestamp: {value}. Use ISO 8601.")
    return int(dt.timestamp())


def _open_reconciler(db: Path) -> tuple[StatsStore, StatisticsReconciler]:
    db.parent.mkdir(parents=True, exist_ok=True)
    store = StatsStore.open(db)
    return store, StatisticsReconciler(store)


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="PLAYTRACK_DB",
    show_envvar=True,
    help="Path to SQLite database",
)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logs.")
def main(verbose: bool) -> None:
    """Play-session tracker and playtime statistics."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@main.group("activity")
def activity_group() -> None:
    """Manage tracked activities."""


@activity_group.command("add")
@click.argument("name")
@click.option("--savepath", type=click.Path(path_type=Path), help="Save-data directory to back up")
@click.option("--auto-backup", is_flag=True, help="Back up save data after every session")
@db_option
def activity_add(name: str, savepath: Path | None, auto_backup: bool, db: Path) -> None:
    """Register an activity and print its ID."""
    if auto_backup and savepath is None:
        click.echo("--auto-backup requires --savepath", err=True)
        sys.exit(1)
    db.parent.mkdir(parents=True, exist_ok=True)
    with StatsStore.open(db) as store:
        activity_id = store.add_activity(
            name,
            savepath=str(savepath) if savepath is not None else None,
            auto_backup=auto_backup,
        )
    click.echo(str(activity_id))


@activity_group.command("list")
@db_option
def activity_list(db: Path) -> None:
    """List tracked activities."""
    _require_db(db)
    with StatsStore.open(db) as store:
        activities = store.get_activities()
    if not activities:
        click.echo("No activities")
        return
    for activity in activities:
        backup = f"  backup: {activity.savepath}" if activity.auto_backup else ""
        click.echo(f"{activity.id:>4}  {activity.name}{backup}")


@main.command("record")
@click.argument("activity_id", type=int)
@click.option("--start", required=True, help="Session start (ISO 8601, local if naive)")
@click.option("--end", required=True, help="Session end (ISO 8601, local if naive)")
@db_option
def record_command(activity_id: int, start: str, end: str, db: Path) -> None:
    """Record a finished session and update statistics."""
    start_time = parse_local_time(start)
    end_time = parse_local_time(end)
    if end_time <= start_time:
        click.echo(f"Invalid interval: --end must be after --start ({end} <= {start})", err=True)
        sys.exit(1)
    if not ThresholdGate().accept(end_time - start_time):
        click.echo(f"Session shorter than {ThresholdGate.min_seconds}s; not recorded", err=True)
        sys.exit(1)

    store, reconciler = _open_reconciler(db)
    with store:
        if store.get_activity(activity_id) is None:
            click.echo(f"Activity {activity_id} not found", err=True)
            sys.exit(1)
        session = reconciler.record_session(activity_id, start_time, end_time)
    click.echo(f"Recorded {format_play_time(session.duration)} on {session.date}")


@main.command("replay")
@db_option
@click.option(
    "--backup-root",
    type=click.Path(path_type=Path),
    default=DEFAULT_BACKUP_ROOT,
    envvar="PLAYTRACK_BACKUP_ROOT",
    show_envvar=True,
    help="Directory for automatic save-data backups",
)
def replay_command(db: Path, backup_root: Path) -> None:
    """Feed lifecycle events (JSONL on stdin) through the tracker.

    Each line is a start, update or end event, e.g.:

        {"kind": "end", "activityId": 1, "startTime": 1737840000,
         "endTime": 1737842400, "totalMinutes": 40, "totalSeconds": 2400}
    """
    replayed = 0
    invalid = 0
    has_input = False
    recorded: list[tuple[int, int]] = []

    store, reconciler = _open_reconciler(db)
    with store:
        tracker = PlaytimeTracker(
            reconciler,
            get_activity=store.get_activity,
            backup=SavedataArchiver(backup_root),
            on_session_end=lambda activity_id, minutes: recorded.append((activity_id, minutes)),
            threaded=False,
        )
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                event = parse_event(stripped)
            except ValidationError as e:
                invalid += 1
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
                continue
            tracker.submit(event)
            replayed += 1
            if isinstance(event, SessionEnded):
                activity_id, minutes = recorded[-1]
                if minutes == 0:
                    click.echo(f"Line {line_number}: session of activity {activity_id} not recorded")

    click.echo(f"Replayed {replayed} events ({invalid} invalid)")

    # Exit code 1 if we had input but no valid events (all lines were errors)
    if has_input and replayed == 0:
        sys.exit(1)


@main.command("stats")
@click.argument("activity_id", type=int)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@db_option
def stats_command(activity_id: int, output_json: bool, db: Path) -> None:
    """Show playtime statistics for an activity."""
    _require_db(db)
    store, reconciler = _open_reconciler(db)
    with store:
        stats = reconciler.get_formatted_stats(activity_id)

    if output_json:
        click.echo(json.dumps(stats.model_dump(), indent=2))
        return

    click.echo(f"Total:    {format_play_time(stats.total_minutes)}")
    click.echo(f"Today:    {format_play_time(stats.today_minutes)}")
    click.echo(f"Sessions: {stats.session_count}")
    click.echo(f"Last played: {format_last_played(stats.last_played)}")
    click.echo()
    click.echo("By day:")
    for bucket in stats.daily_stats:
        click.echo(f"  {bucket.date}  {format_play_time(bucket.playtime):>9}")


@main.command("sessions")
@click.argument("activity_id", type=int)
@click.option("--limit", type=int, default=10, help="Maximum number of sessions to output")
@click.option("--offset", type=int, default=0, help="Number of sessions to skip")
@db_option
def sessions_command(activity_id: int, limit: int, offset: int, db: Path) -> None:
    """List recorded sessions as JSONL, most recent first."""
    _require_db(db)
    store, reconciler = _open_reconciler(db)
    with store:
        for session in reconciler.get_sessions(activity_id, limit, offset):
            click.echo(session.model_dump_json())


@main.command("recompute")
@click.argument("activity_id", type=int)
@db_option
def recompute_command(activity_id: int, db: Path) -> None:
    """Rebuild an activity's statistics from its full session history."""
    _require_db(db)
    store, reconciler = _open_reconciler(db)
    with store:
        stats = reconciler.recompute(activity_id)
    click.echo(
        f"Activity {activity_id}: {stats.session_count} sessions, "
        f"{format_play_time(stats.total_time)} total"
    )


if __name__ == "__main__":
    main()
