"""Job state machine: compute the writes that finish one processing attempt."""

from __future__ import annotations

from datetime import datetime, timedelta

from docgen.core.errors import DocgenError
from docgen.jobs.models import JobRecord, JobTransition

# Delay before retry number N (1-based).
RETRY_BACKOFF: tuple[timedelta, ...] = (timedelta(seconds=60), timedelta(seconds=300), timedelta(seconds=900))


def compute_backoff(attempts: int) -> timedelta:
  """Return the retry delay after the given number of failed attempts."""
  if attempts < 1:
    raise ValueError("attempts must be at least 1")
  index = min(attempts, len(RETRY_BACKOFF)) - 1
  return RETRY_BACKOFF[index]


def parent_lookup_fields(parents: dict[str, str | None], overrides: dict[str, str] | None = None) -> dict[str, str]:
  """Map relation keys to job lookup fields.

  An explicit override wins; otherwise ``AccountId`` maps to ``Account__c``.
  Null parent ids and keys without a mapping are skipped.
  """
  overrides = overrides or {}
  fields: dict[str, str] = {}
  for key, value in parents.items():
    if not value:
      continue
    if key in overrides:
      fields[overrides[key]] = value
    elif key.endswith("Id") and len(key) > 2:
      fields[f"{key[:-2]}__c"] = value
  return fields


def success_transition(job: JobRecord, *, output_file_id: str, merged_docx_file_id: str | None = None, lookup_fields: dict[str, str] | None = None) -> JobTransition:
  return JobTransition(status="SUCCEEDED", attempts=job.attempts + 1, output_file_id=output_file_id, merged_docx_file_id=merged_docx_file_id, extra_fields=dict(lookup_fields or {}))


def failure_transition(job: JobRecord, error: DocgenError, *, now: datetime, max_attempts: int) -> JobTransition:
  """Schedule a retry for retryable errors within budget, otherwise fail the job."""
  new_attempts = job.attempts + 1
  if error.retryable and new_attempts <= max_attempts:
    # Retry-pending: stays PROCESSING with no lease until the retry time passes.
    return JobTransition(status="PROCESSING", attempts=new_attempts, scheduled_retry_time=now + compute_backoff(new_attempts), error=error.to_error_text(), retried=True)

  return JobTransition(status="FAILED", attempts=new_attempts, error=error.to_error_text())
