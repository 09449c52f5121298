"""Render-and-store pipeline shared by the batch and interactive paths."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from docgen.api.models import DocgenEnvelope
from docgen.core.errors import LinkError, classify_error
from docgen.jobs.idempotency import IdempotencyGate
from docgen.sf.files import FileService
from docgen.templates.composite import CompositeAssembler

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


@dataclass
class PipelineResult:
  output_file_id: str
  merged_docx_file_id: str | None = None
  reused: bool = False
  reused_from_job_id: str | None = None
  link_errors: list[LinkError] = field(default_factory=list)


class DocumentPipeline:
  """idempotency -> assemble (fetch, merge, convert) -> upload -> link."""

  def __init__(self, *, assembler: CompositeAssembler, files: FileService, gate: IdempotencyGate, clock: Callable[[], datetime] = utcnow) -> None:
    self._assembler = assembler
    self._files = files
    self._gate = gate
    self._clock = clock

  async def render_and_store(self, envelope: DocgenEnvelope, *, request_hash: str, correlation_id: str, exclude_job_id: str | None = None) -> PipelineResult:
    """Produce and upload the document, or reuse a recent identical result."""
    phase = "idempotency"
    try:
      reusable = await self._gate.find_reusable(request_hash, now=self._clock(), exclude_job_id=exclude_job_id)
      if reusable is not None:
        return PipelineResult(output_file_id=reusable.output_file_id, merged_docx_file_id=reusable.merged_docx_file_id, reused=True, reused_from_job_id=reusable.job_id)

      phase = "assemble"
      document = await self._assembler.assemble(envelope, correlation_id)

      phase = "upload"
      # A caller asking for the intermediate gets it as a stored file with its own download link.
      store_docx = document.merged_docx if envelope.wants_intermediate() else None
      upload = await self._files.upload_and_link(document.output, envelope.resolved_file_name(), envelope.parents, merged_docx=store_docx, correlation_id=correlation_id)
    except Exception as exc:
      error = classify_error(exc, phase)
      if error is exc:
        raise
      raise error from exc

    for link_error in upload.link_errors:
      logger.warning("Non-fatal link failure correlation_id=%s: %s", correlation_id, link_error.message)

    return PipelineResult(
      output_file_id=upload.output.content_version_id,
      merged_docx_file_id=upload.merged_docx.content_version_id if upload.merged_docx else None,
      link_errors=upload.link_errors,
    )
