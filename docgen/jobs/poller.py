"""Polling scheduler that leases queued jobs and processes them with bounded parallelism.

Exclusivity between scheduler instances comes from the lease write on the job
row, not from anything in-process: a job is only processed by the instance whose
conditional lease update succeeded, and a lease that is not renewed expires so
another instance can reclaim the job.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from docgen.core.logging import bind_correlation_id
from docgen.jobs.models import JobRecord
from docgen.jobs.pipeline import utcnow
from docgen.jobs.worker import JobProcessor, JobProcessResult
from docgen.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class PollerStateError(RuntimeError):
  """Raised when start/stop is called in the wrong state."""


@dataclass
class PollerStats:
  is_running: bool = False
  queue_depth: int = 0
  last_poll_time: datetime | None = None
  started_at: float | None = None
  in_flight: int = 0
  total_processed: int = 0
  total_succeeded: int = 0
  total_failed: int = 0
  total_retries: int = 0

  def uptime_seconds(self) -> int:
    if not self.is_running or self.started_at is None:
      return 0
    return int(time.monotonic() - self.started_at)

  def as_status(self) -> dict[str, object]:
    return {"isRunning": self.is_running, "queueDepth": self.queue_depth, "lastPollTime": self.last_poll_time.isoformat() if self.last_poll_time else None}

  def as_dict(self) -> dict[str, object]:
    return {
      **self.as_status(),
      "inFlight": self.in_flight,
      "uptimeSeconds": self.uptime_seconds(),
      "totalProcessed": self.total_processed,
      "totalSucceeded": self.total_succeeded,
      "totalFailed": self.total_failed,
      "totalRetries": self.total_retries,
    }


class JobPoller:
  """Lease batches of jobs on an adaptive interval and run them through a JobProcessor."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    processor: JobProcessor,
    batch_size: int = 20,
    max_concurrency: int = 8,
    lock_ttl_ms: int = 120_000,
    active_interval_ms: int = 15_000,
    idle_interval_ms: int = 60_000,
    clock: Callable[[], datetime] = utcnow,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._processor = processor
    self.batch_size = batch_size
    self.max_concurrency = max_concurrency
    self.lock_ttl = timedelta(milliseconds=lock_ttl_ms)
    self.active_interval = active_interval_ms / 1000
    self.idle_interval = idle_interval_ms / 1000
    self._clock = clock
    self._stats = PollerStats()
    self._slots = asyncio.Semaphore(max_concurrency)
    self._stop_event: asyncio.Event | None = None
    self._loop_task: asyncio.Task[None] | None = None
    self._batch_tasks: set[asyncio.Task[None]] = set()
    self._found_work = False

  @property
  def is_running(self) -> bool:
    return self._stats.is_running

  def stats(self) -> PollerStats:
    return PollerStats(**vars(self._stats))

  def next_interval(self) -> float:
    """Seconds to sleep before the next poll."""
    return self.active_interval if self._found_work else self.idle_interval

  async def start(self) -> None:
    if self._stats.is_running:
      raise PollerStateError("Poller is already running")
    self._stop_event = asyncio.Event()
    self._stats.is_running = True
    self._stats.started_at = time.monotonic()
    self._loop_task = asyncio.create_task(self._run(), name="docgen-poller")
    logger.info("Poller started (batch=%d concurrency=%d lock_ttl=%ss)", self.batch_size, self.max_concurrency, self.lock_ttl.total_seconds())

  async def stop(self) -> None:
    """Stop leasing new work, then wait for every in-flight job to finish."""
    if not self._stats.is_running or self._stop_event is None:
      raise PollerStateError("Poller is not running")
    self._stop_event.set()
    if self._loop_task is not None:
      await self._loop_task
      self._loop_task = None

    if self._batch_tasks:
      logger.info("Waiting for %d in-flight job(s) to finish", self._stats.in_flight)
      await asyncio.gather(*self._batch_tasks, return_exceptions=True)

    self._stats.is_running = False
    logger.info("Poller stopped")

  async def _run(self) -> None:
    assert self._stop_event is not None
    # Tasks copy the starting context; do not inherit a request's correlation id.
    bind_correlation_id("poller")
    while not self._stop_event.is_set():
      try:
        await self.poll_once()
      except Exception:  # noqa: BLE001
        logger.error("Poll cycle failed", exc_info=True)
      # Sleep until the next tick, waking early on stop().
      with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(self._stop_event.wait(), timeout=self.next_interval())

  async def poll_once(self) -> int:
    """Lease one batch and hand it to a background batch task; returns jobs leased."""
    now = self._clock()
    self._stats.last_poll_time = now
    capacity = self.batch_size - self._stats.in_flight
    if capacity <= 0:
      logger.debug("Poll skipped; %d jobs already in flight", self._stats.in_flight)
      self._found_work = True
      return 0

    candidates = await self._jobs_repo.find_leasable(now=now, limit=capacity)
    self._stats.queue_depth = len(candidates)
    self._found_work = bool(candidates)
    if not candidates:
      logger.debug("No jobs to process")
      return 0

    leased: list[JobRecord] = []
    for candidate in candidates:
      job = await self._lease(candidate)
      if job is not None:
        leased.append(job)

    logger.info("Leased %d of %d candidate job(s)", len(leased), len(candidates))
    if leased:
      self._stats.in_flight += len(leased)
      task = asyncio.create_task(self._run_batch(leased))
      self._batch_tasks.add(task)
      task.add_done_callback(self._batch_tasks.discard)
    return len(leased)

  async def _lease(self, candidate: JobRecord) -> JobRecord | None:
    try:
      job = await self._jobs_repo.try_lease(candidate, locked_until=self._clock() + self.lock_ttl)
    except Exception:  # noqa: BLE001
      logger.warning("Failed to lease job %s", candidate.job_id, exc_info=True)
      return None
    if job is None:
      logger.debug("Job %s was leased by another scheduler; skipping", candidate.job_id)
    return job

  async def _run_batch(self, jobs: list[JobRecord]) -> None:
    results = await asyncio.gather(*(self._run_job(job) for job in jobs), return_exceptions=True)
    for job, result in zip(jobs, results):
      if isinstance(result, BaseException):
        # The transition was not written; the lease expires and the job is reclaimed.
        logger.error("Job %s could not be finalized: %s", job.job_id, result, exc_info=result)
        continue
      self._record(result)
    logger.info("Batch complete: processed=%d succeeded=%d failed=%d retries=%d", self._stats.total_processed, self._stats.total_succeeded, self._stats.total_failed, self._stats.total_retries)

  def _record(self, result: JobProcessResult) -> None:
    if result.outcome == "skipped":
      return
    self._stats.total_processed += 1
    if result.outcome == "succeeded":
      self._stats.total_succeeded += 1
    elif result.outcome == "retried":
      self._stats.total_retries += 1
    else:
      self._stats.total_failed += 1

  async def _run_job(self, job: JobRecord) -> JobProcessResult:
    keeper = asyncio.create_task(self._keep_lease(job.job_id))

    async def _stop_keeper() -> None:
      # A renewal racing the final write would re-set LockedUntil.
      keeper.cancel()
      with contextlib.suppress(asyncio.CancelledError):
        await keeper

    try:
      async with self._slots:
        return await self._processor.process_job(job, before_finalize=_stop_keeper)
    finally:
      await _stop_keeper()
      self._stats.in_flight -= 1

  async def _keep_lease(self, job_id: str) -> None:
    """Renew the lease every half TTL while the job waits or runs."""
    interval = self.lock_ttl.total_seconds() / 2
    while True:
      await asyncio.sleep(interval)
      try:
        await self._jobs_repo.renew_lease(job_id, locked_until=self._clock() + self.lock_ttl)
        logger.debug("Renewed lease for job %s", job_id)
      except Exception:  # noqa: BLE001
        logger.warning("Failed to renew lease for job %s", job_id, exc_info=True)
