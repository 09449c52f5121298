"""Shared FastAPI dependencies resolving services from the application container."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from docgen.core.container import ServiceContainer
from docgen.jobs.poller import JobPoller
from docgen.services.enqueue import EnqueueService
from docgen.services.interactive import InteractiveService
from docgen.storage.jobs_repo import JobsRepository
from docgen.utils.ids import resolve_correlation_id


def get_services(request: Request) -> ServiceContainer:
  """Return the container built during startup."""
  services = getattr(request.app.state, "services", None)
  if services is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
  return services


def get_interactive(request: Request) -> InteractiveService:
  return get_services(request).interactive


def get_enqueue(request: Request) -> EnqueueService:
  return get_services(request).enqueue


def get_jobs_repo(request: Request) -> JobsRepository:
  return get_services(request).jobs_repo


def get_poller(request: Request) -> JobPoller:
  return get_services(request).poller


def get_correlation_id(request: Request) -> str:
  """Correlation id bound by the middleware for this request."""
  return resolve_correlation_id(getattr(request.state, "correlation_id", None))
