"""
Exception hierarchy for the evidence sync pipeline.

Which errors fail a job and which are absorbed is decided by the phase that
raises them: per-item fetch errors and classification parse errors are
recovered locally, everything else propagates to the job runner.
"""


class SyncError(Exception):
    """Base class for all sync pipeline errors."""
    pass


class ConfigurationError(SyncError):
    """Missing credentials or an empty criterion catalog. Raised before discovery starts."""
    pass


class SourceError(SyncError):
    """A search request against the reference source failed."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class PerItemFetchError(SyncError):
    """Fetching the full record for a single reference failed."""

    def __init__(self, identifier: str, message: str, status: int = 0):
        super().__init__(f"{identifier}: {message}")
        self.identifier = identifier
        self.status = status


class ClassificationError(SyncError):
    """The classification service returned an error that is not a rate limit."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RateLimitError(ClassificationError):
    """The classification service signalled a rate limit."""

    def __init__(self, message: str = "rate limited", status: int = 429, retry_after=None):
        super().__init__(message, status)
        self.retry_after = retry_after


class ClassificationParseError(SyncError):
    """A classification response (or one entry of it) did not validate."""
    pass


class PersistenceError(SyncError):
    """A durable store write failed."""
    pass


class JobStateError(SyncError):
    """A terminal job was mutated, or a job id does not exist."""
    pass
