"""Domain models for queued document generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["QUEUED", "PROCESSING", "SUCCEEDED", "FAILED", "CANCELED"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "FAILED", "CANCELED"})


@dataclass
class JobRecord:
  """One Generated_Document__c row as seen by the scheduler."""

  job_id: str
  status: JobStatus
  request_json: str | None = None
  attempts: int = 0
  request_hash: str | None = None
  correlation_id: str | None = None
  locked_until: datetime | None = None
  scheduled_retry_time: datetime | None = None
  output_file_id: str | None = None
  merged_docx_file_id: str | None = None
  error: str | None = None
  priority: float | None = None
  created_at: datetime | None = None
  last_modified: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES

  def is_leasable(self, now: datetime) -> bool:
    """Mirror of the lease query predicate, used by in-memory repositories."""
    if self.scheduled_retry_time is not None and self.scheduled_retry_time > now:
      return False
    if self.status == "QUEUED":
      return True
    return self.status == "PROCESSING" and (self.locked_until is None or self.locked_until < now)


@dataclass
class JobTransition:
  """Field writes produced by the state machine for a single job.

  Every attribute is written as-is, so None clears the field on the record.
  """

  status: JobStatus
  attempts: int
  locked_until: datetime | None = None
  scheduled_retry_time: datetime | None = None
  output_file_id: str | None = None
  merged_docx_file_id: str | None = None
  error: str | None = None
  extra_fields: dict[str, Any] = field(default_factory=dict)
  retried: bool = False
