import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from docgen.api.deps import get_correlation_id, get_enqueue, get_jobs_repo
from docgen.api.models import EnqueueResponse, JobStatusResponse
from docgen.core.security import require_api_token
from docgen.services.enqueue import EnqueueService
from docgen.storage.jobs_repo import JobsRepository

router = APIRouter(dependencies=[Depends(require_api_token)])
logger = logging.getLogger("docgen.api.routes.jobs")


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(  # noqa: B008
  payload: dict[str, Any] = Body(...),  # noqa: B008
  priority: float | None = Query(default=None),  # noqa: B008
  correlation_id: str = Depends(get_correlation_id),  # noqa: B008
  enqueue: EnqueueService = Depends(get_enqueue),  # noqa: B008
) -> EnqueueResponse:
  """Queue a document for the batch scheduler."""
  return await enqueue.enqueue(payload, correlation_id=correlation_id, priority=priority)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, jobs_repo: JobsRepository = Depends(get_jobs_repo)) -> JobStatusResponse:  # noqa: B008
  """Fetch the current state of a queued job."""
  job = await jobs_repo.get_job(job_id)
  if job is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

  return JobStatusResponse(
    job_id=job.job_id,
    status=job.status,
    attempts=job.attempts,
    output_file_id=job.output_file_id,
    merged_docx_file_id=job.merged_docx_file_id,
    error=job.error,
    scheduled_retry_time=job.scheduled_retry_time.isoformat() if job.scheduled_retry_time else None,
    correlation_id=job.correlation_id,
  )
