"""In-memory listening history with import, save and artist rankings."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from spotify_history.db import U64_MAX, HistoryStore, ListeningEvent
from spotify_history.errors import IoError, ParseError

logger = logging.getLogger(__name__)

MIN_TS = datetime.min.replace(tzinfo=timezone.utc)
MAX_TS = datetime.max.replace(tzinfo=timezone.utc)

_HISTORY_FILE = TypeAdapter(list[ListeningEvent])


class SpotifyAnalytics:
    """Working set of listening events loaded from a HistoryStore.

    The set only grows: events are appended by ``merge`` and the import
    methods, never removed. ``max_ts`` and ``min_ts`` are taken from the
    events loaded at construction and do not move afterwards. An empty store
    gives ``max_ts = MIN_TS`` and ``min_ts = MAX_TS``.

    Not thread-safe.
    """

    def __init__(self, store: HistoryStore, history: Iterable[ListeningEvent]) -> None:
        self._store = store
        self._history = list(history)
        self._loaded_count = len(self._history)
        self.max_ts = max((event.ts for event in self._history), default=MIN_TS)
        self.min_ts = min((event.ts for event in self._history), default=MAX_TS)

    @classmethod
    def create(cls, store: HistoryStore) -> SpotifyAnalytics:
        """Load all stored events into a new working set."""
        history = store.load_all()
        logger.info("Loaded %d events from %s", len(history), store.path)
        return cls(store, history)

    def __len__(self) -> int:
        return len(self._history)

    @property
    def history(self) -> list[ListeningEvent]:
        """Copy of the working set in insertion order."""
        return list(self._history)

    def merge(self, events: Iterable[ListeningEvent]) -> int:
        """Append events to the working set without deduplication.

        Returns:
            Number of events appended.
        """
        before = len(self._history)
        self._history.extend(events)
        return len(self._history) - before

    def import_file(self, path: Path) -> int:
        """Parse one streaming history JSON file and merge its events.

        Raises:
            IoError: If the file cannot be read.
            ParseError: If the file is not a JSON array of listening events.
                Nothing from the file is merged.
        """
        try:
            data = path.read_bytes()
        except OSError as e:
            raise IoError(path, "cannot read file") from e

        try:
            events = _HISTORY_FILE.validate_json(data)
        except ValidationError as e:
            message = f"not a valid streaming history file ({e.error_count()} errors)"
            raise ParseError(path, message) from e

        added = self.merge(events)
        logger.info("Imported %d events from %s", added, path)
        return added

    def import_directory(self, dir_path: Path) -> int:
        """Import every ``.json`` file directly inside ``dir_path``.

        Entries are visited in name order. Subdirectories and other files
        are skipped. The first failing file aborts the walk, so files after
        it are not merged.

        Returns:
            Number of events merged.
        """
        try:
            entries = sorted(dir_path.iterdir())
        except OSError as e:
            raise IoError(dir_path, "cannot list directory") from e

        total = 0
        for path in entries:
            if not path.is_file():
                logger.info("Ignoring dir %s", path)
                continue
            if path.suffix != ".json":
                logger.info("Ignoring non-json file %s", path)
                continue
            total += self.import_file(path)
        return total

    def persist(self) -> int:
        """Write events with ``max_ts < ts < min_ts`` to the store.

        Both bounds come from the same loaded set, so this only writes when
        the store was empty at load time; after that every call is a no-op.
        Use ``persist_new`` to add events to a non-empty store.

        Each insert commits on its own. A failure stops the loop and leaves
        earlier rows in place.

        Returns:
            Number of rows written.
        """
        written = 0
        for event in self._history:
            if event.ts > self.max_ts and event.ts < self.min_ts:
                self._store.insert(event)
                written += 1
        logger.info("Saved %d events to %s", written, self._store.path)
        return written

    def persist_new(self) -> int:
        """Write merged events whose content is not already stored.

        Identity is ``ListeningEvent.compute_id()``. Events repeated within
        the merged batch are written once.

        Returns:
            Number of rows written.
        """
        seen = {event.compute_id() for event in self._history[: self._loaded_count]}
        written = 0
        for event in self._history[self._loaded_count :]:
            event_id = event.compute_id()
            if event_id in seen:
                continue
            self._store.insert(event)
            seen.add(event_id)
            written += 1
        logger.info("Saved %d new events to %s", written, self._store.path)
        return written

    def top_artists(self) -> list[tuple[str, int]]:
        """Total ms played per album artist, highest first.

        Events without an artist (podcast episodes) are left out. Totals
        saturate at U64_MAX.
        """
        totals: dict[str, int] = {}
        for event in self._history:
            artist = event.album_artist_name
            if artist is None:
                continue
            totals[artist] = min(totals.get(artist, 0) + event.ms_played, U64_MAX)
        return sorted(totals.items(), key=lambda item: item[1], reverse=True)

    def top_n_artists(self, n: int = 10) -> list[tuple[str, int]]:
        """First ``n`` entries of ``top_artists``."""
        if n < 0:
            raise ValueError(f"n must be non-negative, got {n}")
        return self.top_artists()[:n]
