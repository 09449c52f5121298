import logging
import shutil

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from docgen.api.deps import get_services
from docgen.core.container import ServiceContainer
from docgen.core.errors import DocgenError

router = APIRouter()
logger = logging.getLogger("docgen.api.routes.health")


@router.get("/healthz", include_in_schema=False)
async def healthz() -> dict[str, str]:
  """Return a simple liveness status."""
  return {"status": "ok", "version": "0.1.0"}


@router.get("/readyz", include_in_schema=False)
async def readyz(services: ServiceContainer = Depends(get_services)) -> JSONResponse:  # noqa: B008
  """Report ready only when a platform token can be acquired and the converter is installed."""
  checks: dict[str, str] = {}

  try:
    await services.token_manager.get_token()
    checks["auth"] = "ok"
  except DocgenError as exc:
    logger.warning("Readiness auth check failed: %s", exc.message)
    checks["auth"] = exc.code.value

  converter = services.settings.soffice_binary[0]
  checks["converter"] = "ok" if shutil.which(converter) else "missing"

  ready = all(value == "ok" for value in checks.values())
  return JSONResponse(status_code=200 if ready else 503, content={"status": "ready" if ready else "not_ready", "checks": checks})
