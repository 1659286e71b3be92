"""
Exception hierarchy for the fedjoin engine.

Every backend-facing error carries the identity of the datasource it came
from so that failures can be attributed in logs.
"""

from typing import Optional


class FedJoinError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(FedJoinError):
    """Invalid catalog entry, unknown datasource type or unknown relation."""


class BackendError(FedJoinError):
    """An error raised while talking to one datasource."""

    def __init__(self, datasource_id: str, message: str, cause: Optional[BaseException] = None):
        self.datasource_id = datasource_id
        self.cause = cause
        super().__init__(f"[{datasource_id}] {message}")


class BackendConnectionError(BackendError):
    """Backend unreachable or credentials rejected."""


class ExecutionError(BackendError):
    """The query reached the backend but the backend reported a failure."""


class JoinError(FedJoinError):
    """One branch of a join relation failed."""

    def __init__(
        self,
        relation_id: str,
        message: str,
        branch_index: Optional[int] = None,
        datasource_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.relation_id = relation_id
        self.branch_index = branch_index
        self.datasource_id = datasource_id
        self.cause = cause
        location = relation_id
        if branch_index is not None:
            location = f"{relation_id}#{branch_index}"
        if datasource_id:
            location = f"{location} ({datasource_id})"
        super().__init__(f"[{location}] {message}")


class CacheStoreError(FedJoinError):
    """The cache backend is unavailable. Callers treat this as a miss."""
