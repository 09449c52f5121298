"""Queue documents for the batch scheduler."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from docgen.api.models import EnqueueResponse, parse_envelope
from docgen.core.errors import IdempotencyConflictError
from docgen.jobs.idempotency import IdempotencyGate, resolve_request_hash
from docgen.jobs.pipeline import utcnow
from docgen.storage.jobs_repo import JobsRepository
from docgen.utils.ids import resolve_correlation_id

logger = logging.getLogger(__name__)


class EnqueueService:
  """Validate an envelope, stamp its hash and insert a QUEUED job row."""

  def __init__(self, *, jobs_repo: JobsRepository, gate: IdempotencyGate, clock: Callable[[], datetime] = utcnow) -> None:
    self._jobs_repo = jobs_repo
    self._gate = gate
    self._clock = clock

  async def enqueue(self, payload: Any, *, correlation_id: str | None = None, priority: float | None = None) -> EnqueueResponse:
    envelope = parse_envelope(payload)
    request_hash = resolve_request_hash(envelope)
    correlation_id = resolve_correlation_id(correlation_id)

    # A recent success is returned instead of queueing the same work again.
    reusable = await self._gate.find_reusable(request_hash, now=self._clock())
    if reusable is not None:
      return EnqueueResponse(job_id=reusable.job_id, request_hash=request_hash, correlation_id=reusable.correlation_id or correlation_id, status=reusable.status)

    # Only SUCCEEDED rows are reused; any other row with this hash blocks the insert.
    existing = await self._jobs_repo.find_by_hash(request_hash)
    if existing is not None:
      raise IdempotencyConflictError(f"Job {existing.job_id} with this request hash is {existing.status}", context={"jobId": existing.job_id, "status": existing.status})

    stored = envelope.model_dump(mode="json", by_alias=True, exclude={"job_id"})
    stored["requestHash"] = request_hash
    job_id = await self._jobs_repo.create_job(request_json=json.dumps(stored, separators=(",", ":"), ensure_ascii=False), request_hash=request_hash, correlation_id=correlation_id, priority=priority)
    logger.info("Queued job %s hash=%s", job_id, request_hash[:12])
    return EnqueueResponse(job_id=job_id, request_hash=request_hash, correlation_id=correlation_id, status="QUEUED")
