"""Shared fixtures: environment, in-memory job repository and document builders."""

from __future__ import annotations

import io
import os
import tempfile
import zipfile
from dataclasses import replace
from datetime import datetime

# Settings are read from the environment; keep tests off real credentials and log paths.
os.environ.setdefault("DOCGEN_LOG_DIR", tempfile.mkdtemp(prefix="docgen-test-logs-"))
os.environ["SFDX_AUTH_URL"] = "force://test-client:test-secret:test-refresh@example.my.salesforce.com"
os.environ.pop("DOCGEN_API_TOKEN", None)
os.environ.pop("DOCGEN_POLLER_ENABLED", None)

import pymupdf  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from docgen.config import get_settings  # noqa: E402
from docgen.jobs.models import JobRecord, JobTransition  # noqa: E402
from docgen.main import app  # noqa: E402

get_settings.cache_clear()

_DOCUMENT_XML = (
  '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
  '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
  "<w:body>{body}</w:body></w:document>"
)


class InMemoryJobsRepo:
  """In-memory jobs repository mirroring the platform-backed one."""

  def __init__(self) -> None:
    self.jobs: dict[str, JobRecord] = {}
    self.transitions: list[tuple[str, JobTransition]] = []
    self.renewals: list[str] = []
    self.lost_leases: set[str] = set()
    self._counter = 0

  def add(self, record: JobRecord) -> JobRecord:
    self.jobs[record.job_id] = record
    return record

  async def create_job(self, *, request_json: str, request_hash: str, correlation_id: str, priority: float | None = None) -> str:
    self._counter += 1
    job_id = f"a0B{self._counter:015d}"
    self.jobs[job_id] = JobRecord(job_id=job_id, status="QUEUED", request_json=request_json, request_hash=request_hash, correlation_id=correlation_id, priority=priority)
    return job_id

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self.jobs.get(job_id)

  async def find_leasable(self, *, now: datetime, limit: int) -> list[JobRecord]:
    return [job for job in self.jobs.values() if job.is_leasable(now)][:limit]

  async def try_lease(self, job: JobRecord, *, locked_until: datetime) -> JobRecord | None:
    if job.job_id in self.lost_leases:
      return None
    leased = replace(self.jobs[job.job_id], status="PROCESSING", locked_until=locked_until)
    self.jobs[job.job_id] = leased
    return leased

  async def renew_lease(self, job_id: str, *, locked_until: datetime) -> None:
    self.renewals.append(job_id)
    self.jobs[job_id] = replace(self.jobs[job_id], locked_until=locked_until)

  async def apply_transition(self, job_id: str, transition: JobTransition) -> None:
    self.transitions.append((job_id, transition))
    current = self.jobs[job_id]
    self.jobs[job_id] = replace(
      current,
      status=transition.status,
      attempts=transition.attempts,
      locked_until=transition.locked_until,
      scheduled_retry_time=transition.scheduled_retry_time,
      error=transition.error,
      output_file_id=transition.output_file_id if transition.output_file_id is not None else current.output_file_id,
      merged_docx_file_id=transition.merged_docx_file_id if transition.merged_docx_file_id is not None else current.merged_docx_file_id,
    )

  async def find_succeeded_by_hash(self, request_hash: str, *, since: datetime, exclude_job_id: str | None = None) -> JobRecord | None:
    for job in self.jobs.values():
      if job.request_hash != request_hash or job.status != "SUCCEEDED" or job.job_id == exclude_job_id:
        continue
      if job.created_at is not None and job.created_at < since:
        continue
      return job
    return None

  async def find_by_hash(self, request_hash: str) -> JobRecord | None:
    return next((job for job in self.jobs.values() if job.request_hash == request_hash), None)


def build_docx(body: str) -> bytes:
  """Minimal DOCX package with the given w:body content."""
  output = io.BytesIO()
  with zipfile.ZipFile(output, "w") as package:
    package.writestr("[Content_Types].xml", '<?xml version="1.0"?><Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types"/>')
    package.writestr("word/document.xml", _DOCUMENT_XML.format(body=body))
  return output.getvalue()


def build_pdf(*texts: str) -> bytes:
  """PDF with one page per text."""
  document = pymupdf.open()
  try:
    for text in texts:
      page = document.new_page()
      page.insert_text((72, 72), text)
    return document.tobytes()
  finally:
    document.close()


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def docx_factory():
  return build_docx


@pytest.fixture
def pdf_factory():
  return build_pdf


@pytest.fixture
async def async_client():
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
