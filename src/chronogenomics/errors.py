"""
Error taxonomy for ChronoGenomics.

Storage errors propagate to the immediate caller, per-entry parse errors are
swallowed at listing boundaries, and analysis failures end up as Errored records.
"""

from typing import Optional


class ChronoGenomicsError(Exception):
    """Base class for all ChronoGenomics errors."""


class NotFound(ChronoGenomicsError):
    """Raised when a record id is unknown to the store."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Analysis {record_id} not found")
        self.record_id = record_id


class InvalidState(ChronoGenomicsError):
    """Raised when an operation is not valid for the record's current status."""

    def __init__(self, record_id: str, status: Optional[str], message: Optional[str] = None) -> None:
        super().__init__(message or f"Analysis {record_id} is {status}, expected pending")
        self.record_id = record_id
        self.status = status


class StorageUnavailable(ChronoGenomicsError):
    """Raised when the persistence backend cannot be reached."""


class MalformedRecord(ChronoGenomicsError):
    """A stored value could not be parsed. Soft, per entry."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Malformed value under {key}: {reason}")
        self.key = key
        self.reason = reason


class UserRejected(ChronoGenomicsError):
    """The caller aborted an authorization step."""


class AnalysisCancelled(ChronoGenomicsError):
    """A running analysis was cancelled before it wrote a result."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Analysis {record_id} was cancelled")
        self.record_id = record_id
