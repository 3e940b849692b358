"""CLI entry point for Spotify listening history."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from spotify_history.analytics import SpotifyAnalytics
from spotify_history.db import HistoryStore
from spotify_history.errors import HistoryError, IoError

DEFAULT_DB_PATH = Path("spotify_history.db")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def format_duration(ms: int) -> str:
    """Format milliseconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        ms: Duration in milliseconds.

    Returns:
        Formatted duration string.
    """
    if ms < 60_000:
        return "<1m" if ms > 0 else "0m"
    total_minutes = ms // 60_000
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def format_error_chain(error: BaseException) -> str:
    """Render an exception and its causes, outermost first."""
    lines = [f"Error: {error}"]
    cause = error.__cause__
    while cause is not None:
        lines.append(f"  Caused by: {cause}")
        cause = cause.__cause__
    return "\n".join(lines)


def _fail(error: HistoryError) -> NoReturn:
    click.echo(format_error_chain(error), err=True)
    sys.exit(1)


def _echo_artists(artists: list[tuple[str, int]]) -> None:
    if not artists:
        click.echo("No artists recorded")
        return
    click.echo("Top artists:")
    for rank, (artist, ms_played) in enumerate(artists, 1):
        # Truncate long names
        display_name = artist if len(artist) <= 30 else artist[:27] + "..."
        click.echo(f"  {rank:>3}. {display_name:<30} {format_duration(ms_played):>10}")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    envvar="SPOTIFY_HISTORY_LOG",
    show_default=True,
    help="Logging level (env: SPOTIFY_HISTORY_LOG)",
)
def main(log_level: str) -> None:
    """Spotify listening history CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("parse")
@click.option(
    "-p",
    "--path",
    type=click.Path(path_type=Path),
    required=True,
    help="Directory of extended streaming history JSON files",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="SPOTIFY_HISTORY_DB",
    help="Path to SQLite database (env: SPOTIFY_HISTORY_DB)",
)
@click.option(
    "--top/--no-top",
    default=True,
    help="Show the current top 10 artists before importing",
)
@click.option(
    "--dedupe",
    is_flag=True,
    help="Save every imported event not already stored, instead of only filling an empty database",
)
def parse_command(path: Path, db: Path, top: bool, dedupe: bool) -> None:
    """Import a directory of streaming history files into the database.

    Every .json file directly inside PATH is parsed and merged; other files
    and subdirectories are skipped. Without --dedupe, imported events are
    only saved when the database was empty before the run.

    Example:
        spotify-history parse --path ~/Downloads/my_spotify_data
        spotify-history parse -p ./export --dedupe --no-top
    """
    try:
        # Ensure database directory exists
        try:
            db.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoError(db.parent, "cannot create database directory") from e

        with HistoryStore.open(db) as store:
            analytics = SpotifyAnalytics.create(store)
            if top:
                _echo_artists(analytics.top_n_artists(10))
            imported = analytics.import_directory(path)
            saved = analytics.persist_new() if dedupe else analytics.persist()
    except HistoryError as e:
        _fail(e)

    click.echo(f"Imported {imported} events, saved {saved}")


@main.command("top")
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="SPOTIFY_HISTORY_DB",
    help="Path to SQLite database (env: SPOTIFY_HISTORY_DB)",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="Number of artists to show",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output as JSON",
)
def top_command(db: Path, limit: int, output_json: bool) -> None:
    """Show artists ranked by total listening time."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    try:
        with HistoryStore.open(db) as store:
            artists = SpotifyAnalytics.create(store).top_n_artists(limit)
    except HistoryError as e:
        _fail(e)

    if output_json:
        output = [{"artist": artist, "ms_played": ms_played} for artist, ms_played in artists]
        click.echo(json.dumps(output, indent=2))
    else:
        _echo_artists(artists)


@main.command("status")
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="SPOTIFY_HISTORY_DB",
    help="Path to SQLite database (env: SPOTIFY_HISTORY_DB)",
)
def status_command(db: Path) -> None:
    """Show how much history the database holds."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    try:
        with HistoryStore.open(db) as store:
            count = store.count()
            time_range = store.time_range()
    except HistoryError as e:
        _fail(e)

    click.echo(f"Database: {db}")
    click.echo(f"Total events: {count}")
    if time_range is not None:
        first, last = time_range
        click.echo(f"First played: {first.strftime('%Y-%m-%d %H:%M:%S')} UTC")
        click.echo(f"Last played:  {last.strftime('%Y-%m-%d %H:%M:%S')} UTC")


if __name__ == "__main__":
    main()
