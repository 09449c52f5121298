from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from docgen.api.models import parse_envelope
from docgen.core.errors import ConversionFailedError, DocgenError, LinkError
from docgen.jobs.idempotency import IdempotencyGate
from docgen.jobs.models import JobRecord
from docgen.jobs.pipeline import DocumentPipeline
from docgen.sf.files import UploadedFile, UploadResult
from docgen.templates.composite import AssembledDocument

NOW = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class FakeAssembler:
  def __init__(self, document: AssembledDocument | None = None, error: Exception | None = None) -> None:
    self.document = document or AssembledDocument(output=b"%PDF", merged_docx=b"PK")
    self.error = error
    self.calls = 0

  async def assemble(self, envelope, correlation_id: str) -> AssembledDocument:
    self.calls += 1
    if self.error is not None:
      raise self.error
    return self.document


class FakeFiles:
  def __init__(self, error: Exception | None = None) -> None:
    self.error = error
    self.uploads: list[tuple[bytes, str, bytes | None]] = []

  async def upload_and_link(self, output: bytes, file_name: str, parents, *, merged_docx: bytes | None = None, correlation_id: str | None = None) -> UploadResult:
    if self.error is not None:
      raise self.error
    self.uploads.append((output, file_name, merged_docx))
    merged = UploadedFile("068000000000002AAA", "069000000000002AAA") if merged_docx is not None else None
    return UploadResult(output=UploadedFile("068000000000001AAA", "069000000000001AAA"), merged_docx=merged, link_errors=[LinkError("Link to 001 failed")])


def _pipeline(jobs_repo, assembler: FakeAssembler, files: FakeFiles) -> DocumentPipeline:
  return DocumentPipeline(assembler=assembler, files=files, gate=IdempotencyGate(jobs_repo), clock=lambda: NOW)


@pytest.mark.anyio
async def test_pipeline_uploads_output_and_requested_intermediate(jobs_repo) -> None:
  files = FakeFiles()
  envelope = parse_envelope({"templateId": "068000000000009AAA", "outputFileName": "Quote", "options": {"returnIntermediateToCaller": True}})

  result = await _pipeline(jobs_repo, FakeAssembler(), files).render_and_store(envelope, request_hash="h", correlation_id="cid")

  assert files.uploads == [(b"%PDF", "Quote.pdf", b"PK")]
  assert result.output_file_id == "068000000000001AAA"
  assert result.merged_docx_file_id == "068000000000002AAA"
  assert [error.message for error in result.link_errors] == ["Link to 001 failed"]


@pytest.mark.anyio
async def test_pipeline_skips_intermediate_unless_requested(jobs_repo) -> None:
  files = FakeFiles()
  envelope = parse_envelope({"templateId": "068000000000009AAA"})

  result = await _pipeline(jobs_repo, FakeAssembler(), files).render_and_store(envelope, request_hash="h", correlation_id="cid")

  assert files.uploads[0][2] is None
  assert result.merged_docx_file_id is None


@pytest.mark.anyio
async def test_pipeline_reuses_recent_success(jobs_repo) -> None:
  jobs_repo.add(JobRecord(job_id="a0B000000000001AAA", status="SUCCEEDED", request_hash="h", output_file_id="068000000000077AAA", created_at=NOW - timedelta(hours=1)))
  assembler, files = FakeAssembler(), FakeFiles()
  envelope = parse_envelope({"templateId": "068000000000009AAA"})

  result = await _pipeline(jobs_repo, assembler, files).render_and_store(envelope, request_hash="h", correlation_id="cid")

  assert result.reused is True
  assert result.reused_from_job_id == "a0B000000000001AAA"
  assert result.output_file_id == "068000000000077AAA"
  assert assembler.calls == 0
  assert files.uploads == []


@pytest.mark.anyio
async def test_pipeline_tags_errors_with_phase(jobs_repo) -> None:
  envelope = parse_envelope({"templateId": "068000000000009AAA"})

  with pytest.raises(ConversionFailedError) as assemble_error:
    await _pipeline(jobs_repo, FakeAssembler(error=ConversionFailedError("exit 1")), FakeFiles()).render_and_store(envelope, request_hash="h", correlation_id="cid")
  with pytest.raises(DocgenError) as upload_error:
    await _pipeline(jobs_repo, FakeAssembler(), FakeFiles(error=OSError("socket closed"))).render_and_store(envelope, request_hash="h", correlation_id="cid")

  assert assemble_error.value.phase == "assemble"
  assert upload_error.value.phase == "upload"
  assert upload_error.value.retryable is True
  assert isinstance(upload_error.value.__cause__, OSError)
