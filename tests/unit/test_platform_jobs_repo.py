from __future__ import annotations

from datetime import datetime, timezone

import pytest

from docgen.core.errors import IdempotencyConflictError, RemoteApiError
from docgen.jobs.models import JobRecord, JobTransition
from docgen.storage.sf_jobs_repo import PlatformJobsRepository, parse_api_datetime, record_to_job, transition_to_fields

LOCK = datetime(2024, 5, 1, 10, 2, tzinfo=timezone.utc)


class StubClient:
  def __init__(self) -> None:
    self.queries: list[str] = []
    self.updates: list[tuple[str, str, dict, str | None]] = []
    self.records: list[dict] = []
    self.update_error: RemoteApiError | None = None
    self.create_error: RemoteApiError | None = None

  async def query(self, soql: str, *, correlation_id: str | None = None) -> list[dict]:
    self.queries.append(soql)
    return self.records

  async def update_record(self, sobject: str, record_id: str, fields: dict, *, if_unmodified_since: str | None = None, correlation_id: str | None = None) -> None:
    if self.update_error is not None:
      raise self.update_error
    self.updates.append((sobject, record_id, fields, if_unmodified_since))

  async def create_record(self, sobject: str, fields: dict, *, correlation_id: str | None = None) -> str:
    if self.create_error is not None:
      raise self.create_error
    return "a0B000000000001AAA"


def _job() -> JobRecord:
  return JobRecord(job_id="a0B000000000001AAA", status="QUEUED", last_modified="2024-05-01T10:00:00.000+0000")


def test_parse_api_datetime_accepts_platform_offsets() -> None:
  expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

  assert parse_api_datetime("2024-05-01T10:00:00.000+0000") == expected
  assert parse_api_datetime("2024-05-01T10:00:00.000Z") == expected
  assert parse_api_datetime(None) is None


def test_record_to_job_maps_fields() -> None:
  job = record_to_job({"Id": "a0B000000000001AAA", "Status__c": "PROCESSING", "Attempts__c": 2.0, "RequestHash__c": "abc", "LockedUntil__c": "2024-05-01T10:02:00.000+0000"})

  assert job.attempts == 2
  assert job.locked_until == LOCK
  assert job.status == "PROCESSING"


def test_transition_fields_clear_lease_and_keep_outputs_on_retry() -> None:
  fields = transition_to_fields(JobTransition(status="PROCESSING", attempts=1, scheduled_retry_time=LOCK, error="[CONVERSION_TIMEOUT] convert: slow"))

  assert fields["LockedUntil__c"] is None
  assert fields["ScheduledRetryTime__c"] == "2024-05-01T10:02:00.000Z"
  assert "OutputFileId__c" not in fields


@pytest.mark.anyio
async def test_lease_query_orders_by_priority_then_age() -> None:
  client = StubClient()
  repo = PlatformJobsRepository(client)

  await repo.find_leasable(now=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc), limit=20)

  soql = client.queries[0]
  assert "LockedUntil__c < 2024-05-01T10:00:00Z" in soql
  assert "ScheduledRetryTime__c <= 2024-05-01T10:00:00Z" in soql
  assert soql.endswith("ORDER BY Priority__c DESC NULLS LAST, CreatedDate ASC LIMIT 20")


@pytest.mark.anyio
async def test_try_lease_is_conditional_and_confirmed() -> None:
  client = StubClient()
  client.records = [{"Id": "a0B000000000001AAA", "Status__c": "PROCESSING", "LockedUntil__c": "2024-05-01T10:02:00.000+0000"}]
  repo = PlatformJobsRepository(client)

  leased = await repo.try_lease(_job(), locked_until=LOCK)

  assert leased is not None and leased.locked_until == LOCK
  _, _, fields, precondition = client.updates[0]
  assert fields == {"Status__c": "PROCESSING", "LockedUntil__c": "2024-05-01T10:02:00.000Z"}
  assert precondition == "Wed, 01 May 2024 10:00:00 GMT"


@pytest.mark.anyio
async def test_try_lease_returns_none_when_precondition_fails() -> None:
  client = StubClient()
  client.update_error = RemoteApiError(412, "precondition failed")

  assert await PlatformJobsRepository(client).try_lease(_job(), locked_until=LOCK) is None


@pytest.mark.anyio
async def test_try_lease_returns_none_when_overwritten() -> None:
  client = StubClient()
  client.records = [{"Id": "a0B000000000001AAA", "Status__c": "PROCESSING", "LockedUntil__c": "2024-05-01T10:02:05.000+0000"}]

  assert await PlatformJobsRepository(client).try_lease(_job(), locked_until=LOCK) is None


@pytest.mark.anyio
async def test_duplicate_hash_on_create_is_conflict() -> None:
  client = StubClient()
  client.create_error = RemoteApiError(400, "duplicate value found", error_code="DUPLICATE_VALUE")

  with pytest.raises(IdempotencyConflictError):
    await PlatformJobsRepository(client).create_job(request_json="{}", request_hash="abc", correlation_id="cid")
