"""Process-wide service graph built once at startup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import httpx

from docgen.config import Settings
from docgen.convert.pool import ConversionPool
from docgen.jobs.idempotency import IdempotencyGate
from docgen.jobs.pipeline import DocumentPipeline
from docgen.jobs.poller import JobPoller
from docgen.jobs.worker import JobProcessor
from docgen.services.enqueue import EnqueueService
from docgen.services.interactive import InteractiveService
from docgen.sf.api import RemoteClient
from docgen.sf.auth import TokenManager
from docgen.sf.files import FileService
from docgen.storage.jobs_repo import JobsRepository
from docgen.storage.sf_jobs_repo import PlatformJobsRepository
from docgen.templates.cache import TemplateCache
from docgen.templates.composite import CompositeAssembler
from docgen.templates.merge import MergeFunction, default_merge
from docgen.templates.service import TemplateService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
  settings: Settings
  http_client: httpx.AsyncClient
  token_manager: TokenManager
  client: RemoteClient
  jobs_repo: JobsRepository
  template_cache: TemplateCache
  conversion_pool: ConversionPool
  poller: JobPoller
  interactive: InteractiveService
  enqueue: EnqueueService

  async def aclose(self) -> None:
    if self.poller.is_running:
      await self.poller.stop()
    await self.http_client.aclose()


def build_container(settings: Settings, *, http_client: httpx.AsyncClient | None = None, merge: MergeFunction = default_merge) -> ServiceContainer:
  """Wire every component; raises ConfigurationError when auth is not configured."""
  http_client = http_client or httpx.AsyncClient(timeout=settings.sf_request_timeout_seconds)
  token_manager = TokenManager.from_settings(settings, http_client=http_client)
  client = RemoteClient(http_client=http_client, token_manager=token_manager, api_version=settings.sf_api_version)
  jobs_repo = PlatformJobsRepository(client)

  template_cache = TemplateCache(settings.template_cache_max_bytes)
  conversion_pool = ConversionPool(max_concurrent=settings.conversion_max_concurrent, workdir=settings.conversion_workdir, command=settings.soffice_binary, default_timeout_ms=settings.conversion_timeout_ms)
  assembler = CompositeAssembler(TemplateService(client, template_cache), conversion_pool, merge=merge, conversion_timeout_ms=settings.conversion_timeout_ms)
  gate = IdempotencyGate(jobs_repo, window=timedelta(hours=settings.idempotency_window_hours))
  pipeline = DocumentPipeline(assembler=assembler, files=FileService(client), gate=gate)

  processor = JobProcessor(jobs_repo=jobs_repo, pipeline=pipeline, max_attempts=settings.max_attempts, lookup_overrides=settings.parent_lookup_fields)
  poller = JobPoller(
    jobs_repo=jobs_repo,
    processor=processor,
    batch_size=settings.poll_batch_size,
    max_concurrency=settings.poll_max_concurrency,
    lock_ttl_ms=settings.lock_ttl_ms,
    active_interval_ms=settings.poll_active_interval_ms,
    idle_interval_ms=settings.poll_idle_interval_ms,
  )

  logger.info("Services wired (auth=%s, api=%s, conversions=%d)", token_manager.source.value, settings.sf_api_version, settings.conversion_max_concurrent)
  return ServiceContainer(
    settings=settings,
    http_client=http_client,
    token_manager=token_manager,
    client=client,
    jobs_repo=jobs_repo,
    template_cache=template_cache,
    conversion_pool=conversion_pool,
    poller=poller,
    interactive=InteractiveService(pipeline=pipeline, jobs_repo=jobs_repo, token_manager=token_manager, lookup_overrides=settings.parent_lookup_fields),
    enqueue=EnqueueService(jobs_repo=jobs_repo, gate=gate),
  )
