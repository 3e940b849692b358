"""SQLite store for Spotify listening history."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from spotify_history.errors import StorageError

logger = logging.getLogger(__name__)

U64_MAX = 2**64 - 1


class ListeningEvent(BaseModel):
    """One playback record from a Spotify extended streaming history export.

    Track metadata uses the export's ``master_metadata_*`` and ``spotify_*``
    keys on the wire and in the database, and short attribute names in code.
    Either form is accepted on input.
    """

    model_config = ConfigDict(populate_by_name=True)

    ts: datetime
    username: str | None = None
    platform: str | None = None
    ms_played: int = Field(default=0, ge=0, le=U64_MAX)
    conn_country: str | None = None
    ip_addr_decrypted: str | None = None
    user_agent_decrypted: str | None = None
    track_name: str | None = Field(default=None, alias="master_metadata_track_name")
    album_artist_name: str | None = Field(
        default=None, alias="master_metadata_album_artist_name"
    )
    album_name: str | None = Field(default=None, alias="master_metadata_album_album_name")
    track_uri: str | None = Field(default=None, alias="spotify_track_uri")
    episode_name: str | None = None
    episode_show_name: str | None = None
    episode_uri: str | None = Field(default=None, alias="spotify_episode_uri")
    reason_start: str | None = None
    reason_end: str | None = None
    shuffle: bool | None = None
    skipped: bool | None = None
    offline: bool | None = None
    offline_timestamp: int | None = Field(default=None, ge=0, le=U64_MAX)
    incognito_mode: bool | None = None

    @field_validator("ts")
    @classmethod
    def _normalize_ts(cls, value: datetime) -> datetime:
        # Naive timestamps in exports are UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("ms_played", mode="before")
    @classmethod
    def _default_ms_played(cls, value: Any) -> Any:
        return 0 if value is None else value

    def to_row(self) -> dict[str, Any]:
        """Return column values keyed by column name."""
        row = self.model_dump(by_alias=True)
        row["ts"] = self.ts.isoformat()
        return row

    def compute_id(self) -> str:
        """Compute deterministic ID from content hash.

        Every field takes part, so two plays differing only in e.g.
        ``reason_end`` get different IDs.
        """
        content = json.dumps(self.to_row(), sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()[:32]


TABLE = "spotify_history"

# Column order of the export; each migration must keep existing columns
COLUMNS = (
    "ts",
    "username",
    "platform",
    "ms_played",
    "conn_country",
    "ip_addr_decrypted",
    "user_agent_decrypted",
    "master_metadata_track_name",
    "master_metadata_album_artist_name",
    "master_metadata_album_album_name",
    "spotify_track_uri",
    "episode_name",
    "episode_show_name",
    "spotify_episode_uri",
    "reason_start",
    "reason_end",
    "shuffle",
    "skipped",
    "offline",
    "offline_timestamp",
    "incognito_mode",
)


@dataclass(frozen=True)
class Migration:
    """A versioned schema change. ``down`` is only used by rollback tooling."""

    up: str
    down: str | None = None


MIGRATIONS = [
    Migration(
        up="""
        CREATE TABLE spotify_history (
            ts DATETIME NOT NULL,
            username TEXT,
            platform TEXT,
            ms_played UNSIGNED BIG INT,
            conn_country TEXT,
            ip_addr_decrypted TEXT,
            user_agent_decrypted TEXT,
            master_metadata_track_name TEXT,
            master_metadata_album_artist_name TEXT,
            master_metadata_album_album_name TEXT,
            spotify_track_uri TEXT,
            episode_name TEXT,
            episode_show_name TEXT,
            spotify_episode_uri TEXT,
            reason_start TEXT,
            reason_end TEXT,
            shuffle BOOLEAN,
            skipped BOOLEAN,
            offline BOOLEAN,
            offline_timestamp UNSIGNED BIG INT,
            incognito_mode BOOLEAN
        );
        """,
        down="DROP TABLE spotify_history;",
    ),
]

INSERT_SQL = (
    f"INSERT INTO {TABLE} ({', '.join(COLUMNS)}) "
    f"VALUES ({', '.join(':' + column for column in COLUMNS)})"
)


class HistoryStore:
    """SQLite-backed listening history store.

    Not thread-safe. Assumes a single process owns the database file.
    """

    def __init__(self, conn: sqlite3.Connection, path: str = ":memory:") -> None:
        self._conn = conn
        self._path = path
        try:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._migrate()
        except sqlite3.Error as e:
            self._conn.close()
            raise StorageError(f"Failed to open database {path}") from e
        except StorageError:
            self._conn.close()
            raise

    def __enter__(self) -> "HistoryStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @classmethod
    def open(cls, path: Path) -> HistoryStore:
        """Open or create a database at the given path."""
        try:
            conn = sqlite3.connect(path)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open database {path}") from e
        conn.row_factory = sqlite3.Row
        return cls(conn, str(path))

    @classmethod
    def open_in_memory(cls) -> HistoryStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def schema_version(self) -> int:
        """Return the number of migrations applied to this database."""
        try:
            return self._conn.execute("PRAGMA user_version").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read schema version of {self._path}") from e

    def _migrate(self) -> None:
        """Apply pending migrations in order."""
        current = self.schema_version()
        if current > len(MIGRATIONS):
            raise StorageError(
                f"Database {self._path} is at schema version {current}, "
                f"newer than supported version {len(MIGRATIONS)}"
            )
        for version in range(current + 1, len(MIGRATIONS) + 1):
            logger.info("Applying migration %d to %s", version, self._path)
            self._run_migration(MIGRATIONS[version - 1].up, version)

    def _run_migration(self, sql: str, version: int) -> None:
        """Run a migration script and record the resulting version atomically."""
        try:
            self._conn.executescript(
                f"BEGIN;\n{sql}\nPRAGMA user_version = {int(version)};\nCOMMIT;"
            )
        except sqlite3.Error:
            if self._conn.in_transaction:
                self._conn.rollback()
            raise

    def migrate_down(self, target: int) -> None:
        """Revert migrations until the schema is at ``target`` version.

        Rollback tooling only; never called during normal operation.

        Raises:
            StorageError: If the target is out of range, a migration has no
                down script, or a down script fails.
        """
        current = self.schema_version()
        if not 0 <= target <= current:
            raise StorageError(f"Cannot migrate {self._path} from version {current} down to {target}")
        for version in range(current, target, -1):
            migration = MIGRATIONS[version - 1]
            if migration.down is None:
                raise StorageError(f"Migration {version} is not reversible")
            logger.info("Reverting migration %d on %s", version, self._path)
            try:
                self._run_migration(migration.down, version - 1)
            except sqlite3.Error as e:
                raise StorageError(f"Failed to revert migration {version}") from e

    def load_all(self) -> list[ListeningEvent]:
        """Load every stored event, in whatever order SQLite yields them.

        Raises:
            StorageError: If any row cannot be read or validated. No partial
                result is returned.
        """
        try:
            rows = self._conn.execute(f"SELECT * FROM {TABLE}").fetchall()
            return [ListeningEvent.model_validate(dict(row)) for row in rows]
        except (sqlite3.Error, ValidationError) as e:
            raise StorageError(f"Failed to load listening history from {self._path}") from e

    def insert(self, event: ListeningEvent) -> None:
        """Insert one event and commit.

        Raises:
            StorageError: If the row cannot be written. The message includes
                the offending record.
        """
        try:
            self._conn.execute(INSERT_SQL, event.to_row())
            self._conn.commit()
        except (sqlite3.Error, OverflowError) as e:
            raise StorageError(f"Failed to insert {event!r}") from e

    def count(self) -> int:
        """Return the number of stored events."""
        try:
            return self._conn.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count events in {self._path}") from e

    def time_range(self) -> tuple[datetime, datetime] | None:
        """Return the earliest and latest ``ts`` stored, or None if empty."""
        try:
            row = self._conn.execute(f"SELECT MIN(ts), MAX(ts) FROM {TABLE}").fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to query {self._path}") from e
        if row[0] is None:
            return None
        return datetime.fromisoformat(row[0]), datetime.fromisoformat(row[1])
