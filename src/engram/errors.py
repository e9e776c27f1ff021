"""Typed errors raised by the engram store.

The storage layer translates :mod:`sqlite3` and OS errors into these types
so that callers (the hook dispatcher in particular) can decide per error
class whether to degrade, reject, or abort.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for every error raised by the store."""


class StoreUnavailable(StoreError):
    """The store file cannot be opened, or its lock could not be acquired in time."""


class Corrupt(StoreError):
    """The store file is not a readable engram database.

    Raised for unreadable or malformed files, a missing schema, or a schema
    written by a newer version.  The operation is aborted; the caller should
    reinitialise the store or restore it from a backup.
    """


class ValidationError(StoreError, ValueError):
    """Malformed input rejected before touching the database."""


class InvalidKey(ValidationError):
    """A pattern key (or causal link endpoint) was empty or blank."""
