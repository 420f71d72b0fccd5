"""Typed errors raised across tokscan layers."""

from __future__ import annotations

from pathlib import Path


class TokscanError(Exception):
    """Base error for tokscan."""


class FileAccessError(TokscanError):
    """A session file could not be read (missing, locked, timed out)."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class ParseError(TokscanError):
    """A session file could not be interpreted as a whole."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cannot parse {path}: {reason}")
        self.path = path
        self.reason = reason


class CacheSchemaError(TokscanError):
    """Persisted cache data does not match the expected version or shape."""


class PricingFetchError(TokscanError):
    """No pricing table could be obtained."""


class CurrencyFetchError(TokscanError):
    """Exchange rates could not be fetched."""


class UsageError(TokscanError):
    """Invalid caller input, surfaced verbatim."""
