"""File upload and record linking on the platform."""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field

import httpx

from docgen.core.errors import DocgenError, LinkError, UploadError
from docgen.sf.api import RemoteClient

logger = logging.getLogger(__name__)

_EXTENSION_PATTERN = re.compile(r"\.(pdf|docx)$", re.IGNORECASE)
_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{15,18}$")


@dataclass(frozen=True)
class UploadedFile:
  content_version_id: str
  content_document_id: str


@dataclass
class UploadResult:
  output: UploadedFile
  merged_docx: UploadedFile | None = None
  linked_parent_ids: list[str] = field(default_factory=list)
  link_errors: list[LinkError] = field(default_factory=list)


def with_extension(file_name: str, extension: str) -> str:
  """Return file_name with its .pdf/.docx suffix replaced by extension."""
  stem = _EXTENSION_PATTERN.sub("", file_name)
  return f"{stem}.{extension}"


class FileService:
  """Upload generated files as ContentVersions and link them to parent records."""

  def __init__(self, client: RemoteClient) -> None:
    self._client = client

  async def upload_content_version(self, data: bytes, file_name: str, *, correlation_id: str | None = None) -> UploadedFile:
    """Create a ContentVersion and resolve its ContentDocumentId."""
    payload = {"Title": _EXTENSION_PATTERN.sub("", file_name), "PathOnClient": file_name, "VersionData": base64.b64encode(data).decode("ascii")}
    try:
      content_version_id = await self._client.create_record("ContentVersion", payload, correlation_id=correlation_id)
      records = await self._client.query(f"SELECT Id, ContentDocumentId FROM ContentVersion WHERE Id = '{content_version_id}' LIMIT 1", correlation_id=correlation_id)
    except DocgenError as exc:
      # Keep the remote client's retry verdict: 4xx stays permanent.
      raise UploadError(f"ContentVersion upload failed for {file_name}: {exc.message}", retryable=exc.retryable, context={"fileSize": len(data)}) from exc
    except httpx.TransportError as exc:
      raise UploadError(f"ContentVersion upload failed for {file_name}: {type(exc).__name__}: {exc}", retryable=True, context={"fileSize": len(data)}) from exc

    if not records or not records[0].get("ContentDocumentId"):
      raise UploadError(f"ContentDocumentId not populated for ContentVersion {content_version_id}")

    logger.info("Uploaded %s (%d bytes) as ContentVersion %s", file_name, len(data), content_version_id)
    return UploadedFile(content_version_id=content_version_id, content_document_id=records[0]["ContentDocumentId"])

  async def link_to_parents(self, content_document_id: str, parent_ids: list[str | None], *, correlation_id: str | None = None) -> tuple[list[str], list[LinkError]]:
    """Link a document to each non-null parent; failures are collected, not raised."""
    linked: list[str] = []
    errors: list[LinkError] = []
    for parent_id in parent_ids:
      if not parent_id:
        continue
      if not _ID_PATTERN.match(parent_id):
        errors.append(LinkError(f"Parent id {parent_id!r} is not a record id", phase="link", context={"parentId": parent_id}))
        continue
      try:
        await self._client.create_record("ContentDocumentLink", {"ContentDocumentId": content_document_id, "LinkedEntityId": parent_id, "ShareType": "V", "Visibility": "AllUsers"}, correlation_id=correlation_id)
      except (DocgenError, httpx.TransportError) as exc:
        reason = exc.message if isinstance(exc, DocgenError) else f"{type(exc).__name__}: {exc}"
        logger.warning("Failed to link ContentDocument %s to %s: %s", content_document_id, parent_id, reason)
        errors.append(LinkError(f"Link to {parent_id} failed: {reason}", phase="link", context={"parentId": parent_id}))
        continue
      linked.append(parent_id)
    return linked, errors

  async def upload_and_link(self, output: bytes, file_name: str, parents: dict[str, str | None], *, merged_docx: bytes | None = None, correlation_id: str | None = None) -> UploadResult:
    """Upload the output (and optional merged DOCX) and link the output to parents."""
    uploaded = await self.upload_content_version(output, file_name, correlation_id=correlation_id)
    result = UploadResult(output=uploaded)

    if merged_docx is not None:
      result.merged_docx = await self.upload_content_version(merged_docx, with_extension(file_name, "docx"), correlation_id=correlation_id)

    linked, errors = await self.link_to_parents(uploaded.content_document_id, list(parents.values()), correlation_id=correlation_id)
    result.linked_parent_ids = linked
    result.link_errors = errors
    return result
