import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from docgen.api.deps import get_correlation_id, get_interactive
from docgen.api.models import GenerateResponse
from docgen.core.security import require_api_token
from docgen.services.interactive import InteractiveService

router = APIRouter()
logger = logging.getLogger("docgen.api.routes.generate")


@router.post("", response_model=GenerateResponse, dependencies=[Depends(require_api_token)])
async def generate_document(  # noqa: B008
  payload: dict[str, Any] = Body(...),  # noqa: B008
  correlation_id: str = Depends(get_correlation_id),  # noqa: B008
  interactive: InteractiveService = Depends(get_interactive),  # noqa: B008
) -> GenerateResponse:
  """Render, convert and upload one document while the caller waits."""
  # Envelope validation happens in the service so errors carry the engine's error codes.
  return await interactive.generate(payload, correlation_id)
