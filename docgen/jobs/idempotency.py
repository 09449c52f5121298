"""Request hashing and reuse of recent successful results."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from docgen.api.models import DocgenEnvelope
from docgen.jobs.models import JobRecord
from docgen.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


def canonical_json(value: Any) -> str:
  """Serialize with sorted keys and no whitespace so equal trees hash equally."""
  return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_request_hash(envelope: DocgenEnvelope) -> str:
  """sha256 over template ids, output format and the sha256 of the data tree."""
  data_hash = hashlib.sha256(canonical_json(envelope.data).encode("utf-8")).hexdigest()
  template_part = ",".join(envelope.template_ids())
  material = f"{template_part}|{envelope.output_format}|{data_hash}"
  return hashlib.sha256(material.encode("utf-8")).hexdigest()


def resolve_request_hash(envelope: DocgenEnvelope, stored: str | None = None) -> str:
  """Pick the idempotency key: the stored column, then the supplied hash, then a local digest.

  Upstream enqueuers stamp hashes with their own serialization, so a supplied key
  is authoritative even when it differs from compute_request_hash.
  """
  supplied = stored or envelope.request_hash
  computed = compute_request_hash(envelope)
  if not supplied:
    return computed
  if supplied != computed:
    logger.debug("Supplied request hash %s differs from local digest %s; keeping the supplied key", supplied[:12], computed[:12])
  return supplied


class IdempotencyGate:
  """Find a SUCCEEDED job with the same hash inside the reuse window."""

  def __init__(self, repo: JobsRepository, *, window: timedelta = DEFAULT_WINDOW) -> None:
    self._repo = repo
    self.window = window

  async def find_reusable(self, request_hash: str, *, now: datetime, exclude_job_id: str | None = None) -> JobRecord | None:
    match = await self._repo.find_succeeded_by_hash(request_hash, since=now - self.window, exclude_job_id=exclude_job_id)
    if match is None or not match.output_file_id:
      return None
    logger.info("Request hash %s already produced %s in job %s", request_hash[:12], match.output_file_id, match.job_id)
    return match
