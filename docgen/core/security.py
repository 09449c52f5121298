from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docgen.config import Settings, get_settings

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer(auto_error=False)


async def require_api_token(
  credentials: HTTPAuthorizationCredentials | None = Depends(security_scheme),  # noqa: B008
  settings: Settings = Depends(get_settings),  # noqa: B008
) -> None:
  """Reject callers without the shared bearer token when one is configured."""
  # An unset token leaves the API open for local development.
  if not settings.api_token:
    return

  if credentials is None or not secrets.compare_digest(credentials.credentials.encode("utf-8"), settings.api_token.encode("utf-8")):
    logger.warning("Rejected request with missing or invalid API token")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"})
