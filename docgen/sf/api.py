"""Authenticated REST client for the platform API with retry policy.

Retry policy per call:

- transport errors and 5xx responses are retried after 1s, 2s and 4s;
- a 401 invalidates the cached token and the call is replayed once;
- any other 4xx is returned to the caller immediately as RemoteApiError.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from docgen.core.errors import AuthError, RemoteApiError
from docgen.sf.auth import TokenManager

logger = logging.getLogger(__name__)

RETRY_DELAYS_SECONDS: tuple[float, ...] = (1.0, 2.0, 4.0)


def _extract_error(response: httpx.Response) -> tuple[str, str | None]:
  """Pull the platform's error message and errorCode out of a failed response."""
  try:
    payload = response.json()
  except ValueError:
    return response.text[:500] or response.reason_phrase, None

  # The platform returns a list of {message, errorCode} objects.
  if isinstance(payload, list) and payload and isinstance(payload[0], dict):
    first = payload[0]
    return str(first.get("message") or response.reason_phrase), first.get("errorCode")
  if isinstance(payload, dict):
    return str(payload.get("message") or payload.get("error_description") or payload.get("error") or response.reason_phrase), payload.get("errorCode") or payload.get("error")
  return response.reason_phrase, None


class RemoteClient:
  """Thin wrapper over httpx.AsyncClient that signs and retries platform calls."""

  def __init__(
    self,
    *,
    http_client: httpx.AsyncClient,
    token_manager: TokenManager,
    api_version: str = "v59.0",
    retry_delays: tuple[float, ...] = RETRY_DELAYS_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._http = http_client
    self._tokens = token_manager
    self.api_version = api_version
    self._retry_delays = retry_delays
    self._sleep = sleep

  def _resolve_url(self, instance_url: str, path: str) -> str:
    if path.startswith("http://") or path.startswith("https://"):
      return path
    if path.startswith("/services/"):
      return f"{instance_url}{path}"
    return f"{instance_url}/services/data/{self.api_version}{path}"

  async def request(
    self,
    method: str,
    path: str,
    *,
    json: Any = None,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    correlation_id: str | None = None,
  ) -> httpx.Response:
    """Send one logical request, applying the retry policy."""
    auth_replayed = False
    attempt = 0
    while True:
      token = await self._tokens.get_token()
      request_headers = {"Authorization": f"Bearer {token.value}", "Accept": "application/json"}
      if correlation_id:
        request_headers["X-Correlation-Id"] = correlation_id
      if headers:
        request_headers.update(headers)

      url = self._resolve_url(token.instance_url, path)
      try:
        response = await self._http.request(method, url, json=json, params=params, headers=request_headers)
      except httpx.TransportError as exc:
        if attempt >= len(self._retry_delays):
          logger.error("Platform request %s %s failed after %d attempts: %s", method, path, attempt + 1, exc)
          raise
        delay = self._retry_delays[attempt]
        attempt += 1
        logger.warning("Platform request %s %s transport error (%s); retry %d/%d in %.1fs", method, path, type(exc).__name__, attempt, len(self._retry_delays), delay)
        await self._sleep(delay)
        continue

      if response.is_success:
        return response

      status_code = response.status_code
      if status_code == 401:
        # Stale or revoked token: re-authenticate and replay once.
        self._tokens.invalidate()
        if auth_replayed:
          message, _ = _extract_error(response)
          raise AuthError(f"Platform rejected refreshed credentials: {message}")
        auth_replayed = True
        logger.info("Platform request %s %s returned 401; refreshing token and replaying.", method, path)
        continue

      if status_code >= 500 and attempt < len(self._retry_delays):
        delay = self._retry_delays[attempt]
        attempt += 1
        logger.warning("Platform request %s %s returned %s; retry %d/%d in %.1fs", method, path, status_code, attempt, len(self._retry_delays), delay)
        await self._sleep(delay)
        continue

      message, error_code = _extract_error(response)
      raise RemoteApiError(status_code, f"{method} {path} failed with HTTP {status_code}: {message}", error_code=error_code)

  async def query(self, soql: str, *, correlation_id: str | None = None) -> list[dict[str, Any]]:
    """Run a query and follow pagination until all records are collected."""
    response = await self.request("GET", "/query", params={"q": soql}, correlation_id=correlation_id)
    payload = response.json()
    records: list[dict[str, Any]] = list(payload.get("records", []))
    next_url = payload.get("nextRecordsUrl")
    while next_url:
      response = await self.request("GET", next_url, correlation_id=correlation_id)
      payload = response.json()
      records.extend(payload.get("records", []))
      next_url = payload.get("nextRecordsUrl")
    return records

  async def create_record(self, sobject: str, fields: dict[str, Any], *, correlation_id: str | None = None) -> str:
    """Create a record and return its id."""
    response = await self.request("POST", f"/sobjects/{sobject}", json=fields, correlation_id=correlation_id)
    payload = response.json()
    record_id = payload.get("id")
    if not record_id:
      raise RemoteApiError(response.status_code, f"Create {sobject} returned no id", retryable=True)
    return record_id

  async def update_record(self, sobject: str, record_id: str, fields: dict[str, Any], *, if_unmodified_since: str | None = None, correlation_id: str | None = None) -> None:
    """Patch a record; a conditional header turns lost races into HTTP 412."""
    headers = {"If-Unmodified-Since": if_unmodified_since} if if_unmodified_since else None
    await self.request("PATCH", f"/sobjects/{sobject}/{record_id}", json=fields, headers=headers, correlation_id=correlation_id)

  async def get_record(self, sobject: str, record_id: str, fields: list[str], *, correlation_id: str | None = None) -> dict[str, Any]:
    response = await self.request("GET", f"/sobjects/{sobject}/{record_id}", params={"fields": ",".join(fields)}, correlation_id=correlation_id)
    return response.json()

  async def download_content_version(self, content_version_id: str, *, correlation_id: str | None = None) -> bytes:
    """Download the binary body of a ContentVersion."""
    response = await self.request("GET", f"/sobjects/ContentVersion/{content_version_id}/VersionData", headers={"Accept": "*/*"}, correlation_id=correlation_id)
    return response.content
