"""Processing of one leased job from envelope to terminal or retry state."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from docgen.api.models import parse_envelope
from docgen.core.errors import DocgenError, classify_error
from docgen.core.logging import bind_correlation_id, reset_correlation_id
from docgen.jobs.idempotency import resolve_request_hash
from docgen.jobs.models import JobRecord, JobTransition
from docgen.jobs.pipeline import DocumentPipeline, utcnow
from docgen.jobs.state import failure_transition, parent_lookup_fields, success_transition
from docgen.storage.jobs_repo import JobsRepository
from docgen.utils.ids import resolve_correlation_id

JobOutcome = Literal["succeeded", "retried", "failed", "skipped"]


@dataclass(frozen=True)
class JobProcessResult:
  """Outcome of one processing attempt, consumed by the scheduler's counters."""

  job_id: str
  outcome: JobOutcome
  error: DocgenError | None = None


class JobProcessor:
  """Drive a leased job through the pipeline and persist the resulting transition."""

  def __init__(self, *, jobs_repo: JobsRepository, pipeline: DocumentPipeline, max_attempts: int = 3, lookup_overrides: dict[str, str] | None = None, clock: Callable[[], datetime] = utcnow) -> None:
    self._jobs_repo = jobs_repo
    self._pipeline = pipeline
    self._max_attempts = max_attempts
    self._lookup_overrides = lookup_overrides or {}
    self._clock = clock
    self._logger = logging.getLogger(__name__)

  async def process_job(self, job: JobRecord, *, before_finalize: Callable[[], Awaitable[None]] | None = None) -> JobProcessResult:
    """Process one leased job; before_finalize runs right before the outcome is written."""
    correlation_id = resolve_correlation_id(job.correlation_id)
    token = bind_correlation_id(correlation_id)
    try:
      return await self._process(job, correlation_id, before_finalize)
    finally:
      reset_correlation_id(token)

  async def _process(self, job: JobRecord, correlation_id: str, before_finalize: Callable[[], Awaitable[None]] | None) -> JobProcessResult:
    self._logger.info("Processing job %s (attempt %d)", job.job_id, job.attempts + 1)
    try:
      envelope = parse_envelope(job.request_json or "")
      # The stored hash column is what the uniqueness constraint and lookups use.
      request_hash = resolve_request_hash(envelope, job.request_hash)
      result = await self._pipeline.render_and_store(envelope, request_hash=request_hash, correlation_id=correlation_id, exclude_job_id=job.job_id)
    except Exception as exc:
      error = classify_error(exc, "process")
      transition = failure_transition(job, error, now=self._clock(), max_attempts=self._max_attempts)
      if not await self._finalize(job, transition, before_finalize):
        return JobProcessResult(job_id=job.job_id, outcome="skipped")
      if transition.retried:
        self._logger.warning("Job %s failed with %s; retry %d scheduled at %s", job.job_id, error.code.value, transition.attempts, transition.scheduled_retry_time.isoformat() if transition.scheduled_retry_time else "-")
        return JobProcessResult(job_id=job.job_id, outcome="retried", error=error)
      self._logger.error("Job %s failed permanently with %s after %d attempt(s): %s", job.job_id, error.code.value, transition.attempts, error.message)
      return JobProcessResult(job_id=job.job_id, outcome="failed", error=error)

    lookup_fields = parent_lookup_fields(envelope.parents, self._lookup_overrides)
    transition = success_transition(job, output_file_id=result.output_file_id, merged_docx_file_id=result.merged_docx_file_id, lookup_fields=lookup_fields)
    if not await self._finalize(job, transition, before_finalize):
      return JobProcessResult(job_id=job.job_id, outcome="skipped")
    if result.reused:
      self._logger.info("Job %s reused output %s from job %s", job.job_id, result.output_file_id, result.reused_from_job_id)
    else:
      self._logger.info("Job %s succeeded with output %s", job.job_id, result.output_file_id)
    return JobProcessResult(job_id=job.job_id, outcome="succeeded")

  async def _finalize(self, job: JobRecord, transition: JobTransition, before_finalize: Callable[[], Awaitable[None]] | None = None) -> bool:
    """Write the transition unless an external actor canceled the job meanwhile."""
    if before_finalize is not None:
      await before_finalize()
    current = await self._jobs_repo.get_job(job.job_id)
    if current is not None and current.status == "CANCELED":
      self._logger.info("Job %s was canceled during processing; leaving it canceled.", job.job_id)
      return False
    await self._jobs_repo.apply_transition(job.job_id, transition)
    return True
