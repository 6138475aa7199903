"""Error taxonomy for the monitor.

Lower layers raise these and never retry; the poll timer is the only
retry mechanism.
"""

from typing import Optional


class ConfigError(Exception):
    """Malformed or missing configuration. Fatal at startup."""


class StoreError(Exception):
    """Base error for failures talking to the job store."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConnectError(StoreError):
    """Store unreachable while connecting or switching connections."""

    def __init__(self, message: str, profile_name: Optional[str] = None):
        super().__init__(message)
        self.profile_name = profile_name


class QueryError(StoreError):
    """A read failed during steady-state operation."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class SubscriptionError(StoreError):
    """LISTEN/UNLISTEN failed. The monitor degrades to polling only."""


class DecodeError(ValueError):
    """A notification payload could not be decoded."""

    def __init__(self, message: str, payload: str = ""):
        super().__init__(message)
        self.payload = payload
