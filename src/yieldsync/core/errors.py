"""
YieldSync error taxonomy.

Every error carries optional task/asset/operator context so that the
operation boundary can log enough to reproduce the failure.
"""

from typing import Optional


class YieldSyncError(Exception):
    """Base class for all YieldSync core errors."""

    def __init__(
        self,
        message: str,
        task_id: Optional[int] = None,
        asset: Optional[str] = None,
        operator: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.asset = asset
        self.operator = operator

    def context(self) -> dict:
        return {
            "task_id": self.task_id,
            "asset": self.asset,
            "operator": self.operator,
        }

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            **self.context(),
        }


class ValidationError(YieldSyncError):
    """Malformed or out-of-range input."""


class InvalidRangeError(ValidationError):
    """Yield rate outside the hard submission bounds."""


class UnknownEntityError(ValidationError):
    """Referenced task, challenge, position or asset does not exist."""


class DuplicateSubmissionError(YieldSyncError):
    """Operator already submitted in the current round."""


class StaleDataError(YieldSyncError):
    """Evidence older than the asset's staleness threshold."""


class QuorumNotReachedError(YieldSyncError):
    """No cluster reached the quorum threshold."""


class WindowExpiredError(YieldSyncError):
    """Operation attempted outside its response/challenge window."""


class AlreadyChallengedError(YieldSyncError):
    """A challenge for this task already exists."""


class InsufficientStakeError(YieldSyncError):
    """Slashing would take an operator's stake below zero."""


class AttestationInvalidError(YieldSyncError):
    """Signature did not verify against the operator's key."""


class ExternalFetchError(YieldSyncError):
    """Ground-truth or registry lookup failed."""
