"""Operational control of the in-process job scheduler."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from docgen.api.deps import get_poller, get_services
from docgen.core.container import ServiceContainer
from docgen.core.security import require_api_token
from docgen.jobs.poller import JobPoller, PollerStateError

router = APIRouter(dependencies=[Depends(require_api_token)])
logger = logging.getLogger(__name__)


@router.post("/start")
async def start_worker(poller: JobPoller = Depends(get_poller)) -> dict[str, Any]:  # noqa: B008
  try:
    await poller.start()
  except PollerStateError as exc:
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
  logger.info("Poller started via control surface")
  return poller.stats().as_status()


@router.post("/stop")
async def stop_worker(poller: JobPoller = Depends(get_poller)) -> dict[str, Any]:  # noqa: B008
  """Stop leasing and wait for in-flight jobs to drain."""
  try:
    await poller.stop()
  except PollerStateError as exc:
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
  logger.info("Poller stopped via control surface")
  return poller.stats().as_status()


@router.get("/status")
async def worker_status(poller: JobPoller = Depends(get_poller)) -> dict[str, Any]:  # noqa: B008
  return poller.stats().as_status()


@router.get("/stats")
async def worker_stats(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:  # noqa: B008
  """Scheduler counters plus conversion pool and template cache figures."""
  return {
    **services.poller.stats().as_dict(),
    "conversionPool": services.conversion_pool.stats().as_dict(),
    "templateCache": services.template_cache.stats().as_dict(),
  }
