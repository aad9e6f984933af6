"""Exception taxonomy for the readiness engine.

NotFound is deliberately absent: single-case lookups return ``None`` and batch
operations omit unknown ids. An unsatisfied requirement is an output value, never
an error.
"""
from datetime import date
from typing import Optional


class ReadinessError(Exception):
    """Base class for readiness engine errors."""


class InvalidInputError(ReadinessError):
    """Malformed dates, unknown granularity, missing filters. Raised before any store access."""


class RecomputeFailure(ReadinessError):
    """A recompute aborted; the previously cached rows for the scope are still in place."""

    def __init__(self, facility_id: str, scheduled_date: date, message: str):
        self.facility_id = facility_id
        self.scheduled_date = scheduled_date
        super().__init__(f"Readiness recompute failed for facility {facility_id} on {scheduled_date}: {message}")


class RecomputeBudgetExceeded(RecomputeFailure):
    """The date's case/inventory volume or elapsed time exceeded the configured budget."""


class AllocationDeadlineExceeded(ReadinessError):
    """Raised by the allocator when its wall-clock deadline passes mid-run."""

    def __init__(self, processed_cases: int, total_cases: int):
        self.processed_cases = processed_cases
        self.total_cases = total_cases
        super().__init__(f"Allocation deadline exceeded after {processed_cases}/{total_cases} cases")


class AttestationError(ReadinessError):
    """Base class for attestation flow rejections."""

    status_code: int = 400


class AttestationNotFound(AttestationError):
    status_code = 404


class AttestationAlreadyVoided(AttestationError):
    status_code = 400


class AttestationNotAllowed(AttestationError):
    """Role or case state does not permit this attestation action."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
