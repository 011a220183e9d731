from __future__ import annotations

from typing import Any


class BackendError(RuntimeError):
    """Base class for every error the workflow backend reports to its callers."""

    code = "internal"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(BackendError):
    code = "not_found"


class DuplicateNameError(BackendError):
    code = "duplicate_name"


class DuplicateJobError(BackendError):
    code = "duplicate_job"


class ConcurrentClaimError(BackendError):
    """Another writer changed the job between our read and our conditional write.

    Expected under contention; the runner should move on to another candidate.
    """

    code = "claim_conflict"


class InvalidStateError(BackendError):
    code = "invalid_state"


class InvalidPropertyError(BackendError):
    code = "invalid_property"


class InvalidArgumentError(BackendError):
    code = "invalid_argument"


class StoreUnavailableError(BackendError):
    code = "store_unavailable"
