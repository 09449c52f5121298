"""Template retrieval through the process-wide cache."""

from __future__ import annotations

import logging

from docgen.core.errors import RemoteApiError, TemplateNotFoundError
from docgen.sf.api import RemoteClient
from docgen.templates.cache import TemplateCache

logger = logging.getLogger(__name__)


class TemplateService:
  """Serve template bytes from the cache, downloading ContentVersions on a miss."""

  def __init__(self, client: RemoteClient, cache: TemplateCache) -> None:
    self._client = client
    self.cache = cache

  async def get_template(self, template_id: str, correlation_id: str | None = None) -> bytes:
    async def _download() -> bytes:
      logger.info("Template %s not cached; downloading", template_id)
      try:
        data = await self._client.download_content_version(template_id, correlation_id=correlation_id)
      except RemoteApiError as exc:
        # An unknown or malformed id is permanent.
        if exc.status_code in (400, 404):
          raise TemplateNotFoundError(template_id, phase="fetch") from exc
        raise
      if not data:
        raise TemplateNotFoundError(template_id, phase="fetch")
      return data

    return await self.cache.get_or_fetch(template_id, _download)
