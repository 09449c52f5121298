from __future__ import annotations

from dataclasses import replace

import pytest

from docgen.api.deps import get_interactive
from docgen.config import get_settings
from docgen.core.errors import ConversionTimeoutError, LinkError
from docgen.jobs.models import JobRecord
from docgen.jobs.pipeline import PipelineResult
from docgen.main import app
from docgen.services.interactive import InteractiveService
from docgen.sf.auth import AuthToken, TokenSource

ENVELOPE = {"templateId": "068000000000001AAA", "outputFormat": "PDF", "data": {"name": "Ada"}, "parents": {"AccountId": "001000000000001AAA"}}


class StaticTokenManager:
  async def get_token(self) -> AuthToken:
    return AuthToken(value="tok", expires_at=float("inf"), source=TokenSource.REFRESH_TOKEN, instance_url="https://acme.my.salesforce.com")


class ScriptedPipeline:
  def __init__(self, result: PipelineResult | None = None, error: Exception | None = None) -> None:
    self.result = result or PipelineResult(output_file_id="068000000000099AAA")
    self.error = error
    self.correlation_ids: list[str] = []
    self.hashes: list[str] = []

  async def render_and_store(self, envelope, *, request_hash: str, correlation_id: str, exclude_job_id: str | None = None) -> PipelineResult:
    self.correlation_ids.append(correlation_id)
    self.hashes.append(request_hash)
    if self.error is not None:
      raise self.error
    return self.result


def _install(jobs_repo, pipeline: ScriptedPipeline) -> InteractiveService:
  service = InteractiveService(pipeline=pipeline, jobs_repo=jobs_repo, token_manager=StaticTokenManager())
  app.dependency_overrides[get_interactive] = lambda: service
  return service


@pytest.mark.anyio
async def test_generate_returns_download_link_and_echoes_correlation_id(async_client, jobs_repo) -> None:
  pipeline = ScriptedPipeline(PipelineResult(output_file_id="068000000000099AAA", merged_docx_file_id="068000000000098AAA", link_errors=[LinkError("Link to 006 failed")]))
  _install(jobs_repo, pipeline)

  response = await async_client.post("/generate", json=ENVELOPE, headers={"x-correlation-id": "req-123"})

  assert response.status_code == 200
  assert response.headers["x-correlation-id"] == "req-123"
  body = response.json()
  assert body["downloadUrl"] == "https://acme.my.salesforce.com/sfc/servlet.shepherd/version/download/068000000000099AAA"
  assert body["outputFileId"] == "068000000000099AAA"
  assert body["mergedDocxDownloadUrl"].endswith("/068000000000098AAA")
  assert body["correlationId"] == "req-123"
  assert body["reused"] is False
  assert body["linkErrors"] == ["Link to 006 failed"]
  assert pipeline.correlation_ids == ["req-123"]


@pytest.mark.anyio
async def test_generate_generates_correlation_id_when_missing(async_client, jobs_repo) -> None:
  _install(jobs_repo, ScriptedPipeline())

  response = await async_client.post("/generate", json=ENVELOPE)

  assert response.status_code == 200
  assert response.headers["x-correlation-id"] == response.json()["correlationId"]


@pytest.mark.anyio
async def test_generate_maps_engine_errors(async_client, jobs_repo) -> None:
  jobs_repo.add(JobRecord(job_id="a0B000000000001AAA", status="PROCESSING", attempts=0))
  _install(jobs_repo, ScriptedPipeline(error=ConversionTimeoutError(60000, phase="convert")))

  response = await async_client.post("/generate", json={**ENVELOPE, "generatedDocumentId": "a0B000000000001AAA"}, headers={"x-correlation-id": "req-err"})

  assert response.status_code == 504
  assert response.json() == {"code": "CONVERSION_TIMEOUT", "message": "Conversion exceeded 60000ms", "retryable": True, "phase": "convert", "correlationId": "req-err"}
  # The interactive path records the failure without scheduling a retry.
  tracked = jobs_repo.jobs["a0B000000000001AAA"]
  assert tracked.status == "FAILED"
  assert tracked.attempts == 1
  assert tracked.scheduled_retry_time is None


@pytest.mark.anyio
async def test_generate_marks_tracking_job_succeeded(async_client, jobs_repo) -> None:
  jobs_repo.add(JobRecord(job_id="a0B000000000002AAA", status="PROCESSING"))
  _install(jobs_repo, ScriptedPipeline())

  response = await async_client.post("/generate", json={**ENVELOPE, "jobId": "a0B000000000002AAA"})

  assert response.status_code == 200
  assert jobs_repo.jobs["a0B000000000002AAA"].status == "SUCCEEDED"
  assert jobs_repo.jobs["a0B000000000002AAA"].output_file_id == "068000000000099AAA"


@pytest.mark.anyio
async def test_generate_accepts_hash_stamped_by_caller(async_client, jobs_repo) -> None:
  pipeline = ScriptedPipeline()
  _install(jobs_repo, pipeline)

  response = await async_client.post("/generate", json={**ENVELOPE, "requestHash": "ui-stamped-hash"})

  assert response.status_code == 200
  assert pipeline.hashes == ["ui-stamped-hash"]


@pytest.mark.anyio
async def test_generate_rejects_invalid_envelope(async_client, jobs_repo) -> None:
  pipeline = ScriptedPipeline()
  _install(jobs_repo, pipeline)

  response = await async_client.post("/generate", json={"templateStrategy": "ConcatenateTemplates", "templates": []})

  assert response.status_code == 400
  body = response.json()
  assert body["code"] == "VALIDATION"
  assert body["retryable"] is False
  assert pipeline.correlation_ids == []


@pytest.mark.anyio
async def test_generate_requires_bearer_token_when_configured(async_client, jobs_repo) -> None:
  _install(jobs_repo, ScriptedPipeline())
  app.dependency_overrides[get_settings] = lambda: replace(get_settings(), api_token="s3cret")

  missing = await async_client.post("/generate", json=ENVELOPE)
  wrong = await async_client.post("/generate", json=ENVELOPE, headers={"Authorization": "Bearer nope"})
  accepted = await async_client.post("/generate", json=ENVELOPE, headers={"Authorization": "Bearer s3cret"})

  assert missing.status_code == 401
  assert wrong.status_code == 401
  assert "correlationId" in wrong.json()
  assert accepted.status_code == 200
