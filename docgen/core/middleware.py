import logging
import time
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

from docgen.core.logging import bind_correlation_id, reset_correlation_id
from docgen.utils.ids import resolve_correlation_id

logger = logging.getLogger("docgen.core.middleware")

CORRELATION_HEADER = "x-correlation-id"


def _normalize_headers(scope: Scope) -> dict[str, str]:
  """Normalize scope headers into a lower-cased mapping."""
  return {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in scope.get("headers", [])}


def _build_request_url(scope: Scope) -> str:
  """Build a readable URL path for logging without relying on Request bodies."""
  path = scope.get("path", "")
  query_string = scope.get("query_string", b"")
  if query_string:
    return f"{path}?{query_string.decode('latin-1')}"

  return path


class CorrelationIdMiddleware:
  """Bind a correlation id to every request, echo it back, and log request timing."""

  def __init__(self, app: ASGIApp) -> None:
    """Store the downstream ASGI application."""
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    # Skip non-HTTP scopes to avoid interfering with websocket or lifespan events.
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    # Reuse the caller's correlation id so logs join up across services.
    headers = _normalize_headers(scope)
    correlation_id = resolve_correlation_id(headers.get(CORRELATION_HEADER))
    scope.setdefault("state", {})["correlation_id"] = correlation_id
    token = bind_correlation_id(correlation_id)

    start_time = time.time()
    method = scope.get("method", "UNKNOWN")
    url = _build_request_url(scope)
    logger.info("Incoming request %s %s", method, url)

    status_code: int | None = None

    async def send_wrapper(message: dict[str, Any]) -> None:
      nonlocal status_code
      if message.get("type") == "http.response.start":
        status_code = message.get("status")
        response_headers = MutableHeaders(scope=message)
        if CORRELATION_HEADER not in response_headers:
          response_headers[CORRELATION_HEADER] = correlation_id

      await send(message)

    try:
      await self.app(scope, receive, send_wrapper)
    finally:
      process_time = (time.time() - start_time) * 1000
      logger.info("Response status=%s (took %.2fms)", status_code or 0, process_time)
      reset_correlation_id(token)


class SecurityHeadersMiddleware:
  """Middleware to strip sensitive headers from responses."""

  def __init__(self, app: ASGIApp) -> None:
    """Store the downstream ASGI application."""
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    """Intercept response headers to remove sensitive information."""
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    async def send_wrapper(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        if "x-powered-by" in headers:
          del headers["x-powered-by"]
        if "server" in headers:
          del headers["server"]

      await send(message)

    await self.app(scope, receive, send_wrapper)
