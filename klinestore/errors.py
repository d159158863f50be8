"""Exception taxonomy.

ValidationError  : malformed input (window, symbol, timeframe, candle values);
                   raised before any I/O.
TransportError   : archive download or REST call failed; aborts the fetch step.
ParseError       : malformed archive row; fatal for that month, handled like a
                   TransportError by callers.
StorageError     : database read/write failure, chained to the driver error.
BackfillConflictError
                 : a second run was requested for a symbol that is already
                   being backfilled.
"""
from __future__ import annotations


class KlineStoreError(Exception):
    """Base class for all errors raised by klinestore."""


class ValidationError(KlineStoreError, ValueError):
    """Rejected input."""


class TransportError(KlineStoreError):
    """Upstream exchange request failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ParseError(TransportError):
    """A row in an archive file could not be parsed.

    Attributes
    ----------
    source : str
        Archive URL or file name the row came from.
    line : int
        1-based line number of the offending row.
    """

    def __init__(self, source: str, line: int, reason: str) -> None:
        self.source = source
        self.line   = line
        self.reason = reason
        super().__init__(f"{source}:{line}: {reason}")


class StorageError(KlineStoreError):
    """Database operation failed."""


class BackfillConflictError(KlineStoreError):
    """A backfill for the same symbol is already running."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"A backfill for {symbol} is already running")
