"""Storage interfaces for document generation jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from docgen.jobs.models import JobRecord, JobTransition


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, *, request_json: str, request_hash: str, correlation_id: str, priority: float | None = None) -> str:
    """Insert a QUEUED job and return its id; a duplicate hash raises IdempotencyConflictError."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def find_leasable(self, *, now: datetime, limit: int) -> list[JobRecord]:
    """Return jobs eligible for leasing, highest priority then oldest first."""

  async def try_lease(self, job: JobRecord, *, locked_until: datetime) -> JobRecord | None:
    """Atomically move a job to PROCESSING with a lease; None when another claimant won."""

  async def renew_lease(self, job_id: str, *, locked_until: datetime) -> None:
    """Extend the lease of a job this process holds."""

  async def apply_transition(self, job_id: str, transition: JobTransition) -> None:
    """Persist the outcome of a processing attempt."""

  async def find_succeeded_by_hash(self, request_hash: str, *, since: datetime, exclude_job_id: str | None = None) -> JobRecord | None:
    """Return a SUCCEEDED job with this hash created at or after since."""

  async def find_by_hash(self, request_hash: str) -> JobRecord | None:
    """Return any job carrying this hash."""
