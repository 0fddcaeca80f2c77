"""Custom exceptions for yieldlens.

Missing rates, prices and metadata are not errors: they resolve through
forward-fill or documented defaults. Only the cases below raise.
"""


class YieldLensError(Exception):
    """Base exception for all yieldlens errors."""


class StoreUnavailableError(YieldLensError):
    """Raised when the event/rate store cannot be reached or queried."""


class DependencyUnavailableError(YieldLensError):
    """Raised when a live protocol dependency (pool, oracle, backstop) fails to load."""

    def __init__(self, pool_id: str, component: str, reason: str) -> None:
        super().__init__(f"{component} unavailable for pool {pool_id}: {reason}")
        self.pool_id = pool_id
        self.component = component
        self.reason = reason


class UnknownActionError(YieldLensError):
    """Raised when a stored event carries an action_type outside the known set."""
