"""
Exception types for the pool surveillance engine.

Only fetch failures and invalid configuration are raised as exceptions.
Arithmetic edge cases (zero totals, empty or short series) are resolved to
neutral values inside the analyzers and never surface here.
"""
from typing import Optional


class SurveillanceError(Exception):
    """Base class for engine errors."""


class ProviderError(SurveillanceError):
    """A pool state provider fetch failed, timed out or returned bad data."""

    def __init__(self, pool_address: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{pool_address}: {message}")
        self.pool_address = pool_address
        self.message = message
        self.cause = cause


class ConfigurationError(SurveillanceError):
    """Invalid threshold or interval values. Fatal at startup."""


class StaleSnapshotError(SurveillanceError):
    """A snapshot not newer than the stored one was offered for replacement."""

    def __init__(self, pool_address: str, captured_at, stored_at):
        self.pool_address = pool_address
        self.captured_at = captured_at
        self.stored_at = stored_at
        super().__init__(
            f"Stale snapshot for {pool_address}: captured {captured_at.isoformat()}, "
            f"stored {stored_at.isoformat()}"
        )
