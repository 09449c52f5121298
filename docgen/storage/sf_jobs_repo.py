"""Jobs repository backed by Generated_Document__c rows on the platform."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any

from docgen.core.errors import IdempotencyConflictError, RemoteApiError
from docgen.jobs.models import JobRecord, JobTransition
from docgen.sf.api import RemoteClient

logger = logging.getLogger(__name__)

SOBJECT = "Generated_Document__c"

_SELECT_FIELDS = (
  "Id",
  "Status__c",
  "RequestJSON__c",
  "Attempts__c",
  "CorrelationId__c",
  "RequestHash__c",
  "LockedUntil__c",
  "ScheduledRetryTime__c",
  "OutputFileId__c",
  "MergedDocxFileId__c",
  "Error__c",
  "Priority__c",
  "CreatedDate",
  "LastModifiedDate",
)


def format_soql_datetime(value: datetime) -> str:
  """Render a datetime as an unquoted SOQL literal in UTC."""
  return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_api_datetime(value: datetime | None) -> str | None:
  if value is None:
    return None
  return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def parse_api_datetime(raw: str | None) -> datetime | None:
  """Parse platform timestamps such as 2024-05-01T10:00:00.000+0000."""
  if not raw:
    return None
  normalized = raw.replace("Z", "+00:00")
  # Rewrite +0000 as +00:00 for fromisoformat.
  if len(normalized) >= 5 and normalized[-5] in "+-" and normalized[-3] != ":":
    normalized = f"{normalized[:-2]}:{normalized[-2:]}"
  return datetime.fromisoformat(normalized)


def _quote(value: str) -> str:
  escaped = value.replace("\\", "\\\\").replace("'", "\\'")
  return f"'{escaped}'"


def record_to_job(record: dict[str, Any]) -> JobRecord:
  return JobRecord(
    job_id=record["Id"],
    status=record.get("Status__c") or "QUEUED",
    request_json=record.get("RequestJSON__c"),
    attempts=int(record.get("Attempts__c") or 0),
    request_hash=record.get("RequestHash__c"),
    correlation_id=record.get("CorrelationId__c"),
    locked_until=parse_api_datetime(record.get("LockedUntil__c")),
    scheduled_retry_time=parse_api_datetime(record.get("ScheduledRetryTime__c")),
    output_file_id=record.get("OutputFileId__c"),
    merged_docx_file_id=record.get("MergedDocxFileId__c"),
    error=record.get("Error__c"),
    priority=record.get("Priority__c"),
    created_at=parse_api_datetime(record.get("CreatedDate")),
    last_modified=record.get("LastModifiedDate"),
  )


def transition_to_fields(transition: JobTransition) -> dict[str, Any]:
  fields: dict[str, Any] = {
    "Status__c": transition.status,
    "Attempts__c": transition.attempts,
    "LockedUntil__c": format_api_datetime(transition.locked_until),
    "ScheduledRetryTime__c": format_api_datetime(transition.scheduled_retry_time),
    "Error__c": transition.error,
  }
  # Output ids are only written on success so retries never erase them.
  if transition.output_file_id is not None:
    fields["OutputFileId__c"] = transition.output_file_id
  if transition.merged_docx_file_id is not None:
    fields["MergedDocxFileId__c"] = transition.merged_docx_file_id
  fields.update(transition.extra_fields)
  return fields


class PlatformJobsRepository:
  """JobsRepository implementation over the platform REST API."""

  def __init__(self, client: RemoteClient) -> None:
    self._client = client

  async def create_job(self, *, request_json: str, request_hash: str, correlation_id: str, priority: float | None = None) -> str:
    fields: dict[str, Any] = {"Status__c": "QUEUED", "RequestJSON__c": request_json, "RequestHash__c": request_hash, "CorrelationId__c": correlation_id, "Attempts__c": 0}
    if priority is not None:
      fields["Priority__c"] = priority
    try:
      return await self._client.create_record(SOBJECT, fields, correlation_id=correlation_id)
    except RemoteApiError as exc:
      # RequestHash__c is a unique external id.
      if exc.error_code == "DUPLICATE_VALUE":
        raise IdempotencyConflictError(f"A job with request hash {request_hash} already exists", context={"requestHash": request_hash}) from exc
      raise

  async def get_job(self, job_id: str) -> JobRecord | None:
    records = await self._client.query(f"SELECT {', '.join(_SELECT_FIELDS)} FROM {SOBJECT} WHERE Id = {_quote(job_id)} LIMIT 1")
    return record_to_job(records[0]) if records else None

  async def find_leasable(self, *, now: datetime, limit: int) -> list[JobRecord]:
    now_literal = format_soql_datetime(now)
    soql = (
      f"SELECT {', '.join(_SELECT_FIELDS)} FROM {SOBJECT} "
      f"WHERE (Status__c = 'QUEUED' OR (Status__c = 'PROCESSING' AND (LockedUntil__c = null OR LockedUntil__c < {now_literal}))) "
      f"AND (ScheduledRetryTime__c = null OR ScheduledRetryTime__c <= {now_literal}) "
      f"ORDER BY Priority__c DESC NULLS LAST, CreatedDate ASC LIMIT {int(limit)}"
    )
    records = await self._client.query(soql)
    return [record_to_job(record) for record in records]

  async def try_lease(self, job: JobRecord, *, locked_until: datetime) -> JobRecord | None:
    headers_value = None
    modified = parse_api_datetime(job.last_modified)
    if modified is not None:
      headers_value = format_datetime(modified.astimezone(timezone.utc), usegmt=True)

    lease_value = format_api_datetime(locked_until)
    try:
      await self._client.update_record(SOBJECT, job.job_id, {"Status__c": "PROCESSING", "LockedUntil__c": lease_value}, if_unmodified_since=headers_value, correlation_id=job.correlation_id)
    except RemoteApiError as exc:
      if exc.status_code == 412:
        logger.debug("Lease lost for job %s (record modified since poll).", job.job_id)
        return None
      raise

    # Confirm the lease survived writes landing within the same second.
    current = await self.get_job(job.job_id)
    if current is None or current.status != "PROCESSING" or format_api_datetime(current.locked_until) != lease_value:
      logger.debug("Lease for job %s was overwritten by another claimant.", job.job_id)
      return None
    return current

  async def renew_lease(self, job_id: str, *, locked_until: datetime) -> None:
    await self._client.update_record(SOBJECT, job_id, {"LockedUntil__c": format_api_datetime(locked_until)})

  async def apply_transition(self, job_id: str, transition: JobTransition) -> None:
    await self._client.update_record(SOBJECT, job_id, transition_to_fields(transition))

  async def find_succeeded_by_hash(self, request_hash: str, *, since: datetime, exclude_job_id: str | None = None) -> JobRecord | None:
    soql = f"SELECT {', '.join(_SELECT_FIELDS)} FROM {SOBJECT} WHERE RequestHash__c = {_quote(request_hash)} AND Status__c = 'SUCCEEDED' AND CreatedDate >= {format_soql_datetime(since)}"
    if exclude_job_id:
      soql += f" AND Id != {_quote(exclude_job_id)}"
    soql += " ORDER BY CreatedDate DESC LIMIT 1"
    records = await self._client.query(soql)
    return record_to_job(records[0]) if records else None

  async def find_by_hash(self, request_hash: str) -> JobRecord | None:
    records = await self._client.query(f"SELECT {', '.join(_SELECT_FIELDS)} FROM {SOBJECT} WHERE RequestHash__c = {_quote(request_hash)} LIMIT 1")
    return record_to_job(records[0]) if records else None
