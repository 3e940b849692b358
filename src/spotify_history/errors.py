"""Exceptions raised by the history store and importer."""

from __future__ import annotations

from pathlib import Path


class HistoryError(Exception):
    """Base exception for listening history errors."""

    pass


class StorageError(HistoryError):
    """Raised when the database cannot be opened, migrated, read or written."""

    pass


class ParseError(HistoryError):
    """Raised when an import file is not valid streaming history JSON."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class IoError(HistoryError):
    """Raised when an import path cannot be read."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
