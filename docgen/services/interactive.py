"""Synchronous single-document generation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from docgen.api.models import GenerateResponse, parse_envelope
from docgen.core.errors import DocgenError, classify_error
from docgen.jobs.idempotency import resolve_request_hash
from docgen.jobs.models import JobRecord, JobTransition
from docgen.jobs.pipeline import DocumentPipeline, utcnow
from docgen.jobs.state import parent_lookup_fields, success_transition
from docgen.sf.auth import TokenManager
from docgen.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


def build_download_url(instance_url: str, content_version_id: str) -> str:
  return f"{instance_url.rstrip('/')}/sfc/servlet.shepherd/version/download/{content_version_id}"


class InteractiveService:
  """Run the pipeline inline and optionally mirror the outcome onto a tracking job row."""

  def __init__(self, *, pipeline: DocumentPipeline, jobs_repo: JobsRepository, token_manager: TokenManager, lookup_overrides: dict[str, str] | None = None, clock: Callable[[], datetime] = utcnow) -> None:
    self._pipeline = pipeline
    self._jobs_repo = jobs_repo
    self._tokens = token_manager
    self._lookup_overrides = lookup_overrides or {}
    self._clock = clock

  async def generate(self, payload: Any, correlation_id: str) -> GenerateResponse:
    envelope = parse_envelope(payload)
    tracking_job = await self._load_tracking_job(envelope.job_id)
    request_hash = resolve_request_hash(envelope, tracking_job.request_hash if tracking_job is not None else None)

    try:
      result = await self._pipeline.render_and_store(envelope, request_hash=request_hash, correlation_id=correlation_id, exclude_job_id=envelope.job_id)
    except Exception as exc:
      error = classify_error(exc, "generate")
      if tracking_job is not None:
        # No retries on the interactive path: the caller gets the error now.
        await self._write_status(tracking_job, JobTransition(status="FAILED", attempts=tracking_job.attempts + 1, error=error.to_error_text()))
      if error is exc:
        raise
      raise error from exc

    if tracking_job is not None:
      lookup_fields = parent_lookup_fields(envelope.parents, self._lookup_overrides)
      await self._write_status(tracking_job, success_transition(tracking_job, output_file_id=result.output_file_id, merged_docx_file_id=result.merged_docx_file_id, lookup_fields=lookup_fields))

    token = await self._tokens.get_token()
    logger.info("Generated document %s correlation_id=%s reused=%s", result.output_file_id, correlation_id, result.reused)
    return GenerateResponse(
      download_url=build_download_url(token.instance_url, result.output_file_id),
      output_file_id=result.output_file_id,
      merged_docx_file_id=result.merged_docx_file_id,
      merged_docx_download_url=build_download_url(token.instance_url, result.merged_docx_file_id) if result.merged_docx_file_id else None,
      correlation_id=correlation_id,
      reused=result.reused,
      link_errors=[link_error.message for link_error in result.link_errors],
    )

  async def _load_tracking_job(self, job_id: str | None) -> JobRecord | None:
    if not job_id:
      return None
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      logger.warning("Tracking job %s not found; status will not be recorded.", job_id)
    return job

  async def _write_status(self, job: JobRecord, transition: JobTransition) -> None:
    try:
      await self._jobs_repo.apply_transition(job.job_id, transition)
    except DocgenError as exc:
      # The document outcome stands even if the tracking row cannot be updated.
      logger.error("Failed to update tracking job %s to %s: %s", job.job_id, transition.status, exc.message)
