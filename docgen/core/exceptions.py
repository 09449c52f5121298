import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from docgen.core.errors import DocgenError

logger = logging.getLogger("docgen.core.exceptions")


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Serialize exception instances explicitly to avoid leaking non-serializable objects.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _correlation_id(request: Request) -> str | None:
  return getattr(request.state, "correlation_id", None)


def _error_payload(detail: Any, *, correlation_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if correlation_id:
    payload["correlationId"] = correlation_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    # Remove nested input values from context payloads as well.
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


async def docgen_error_handler(request: Request, exc: DocgenError) -> JSONResponse:
  """Map a classified engine error onto its HTTP status and structured body."""
  correlation_id = _correlation_id(request)
  if exc.http_status >= 500:
    logger.error("Request failed path=%s code=%s phase=%s retryable=%s", request.url.path, exc.code.value, exc.phase, exc.retryable, exc_info=exc)
  else:
    logger.warning("Request rejected path=%s code=%s phase=%s: %s", request.url.path, exc.code.value, exc.phase, exc.message)
  return JSONResponse(status_code=exc.http_status, content=exc.to_payload(correlation_id))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  correlation_id = _correlation_id(request)
  logger.error("Unhandled exception path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=exc)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", correlation_id=correlation_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  correlation_id = _correlation_id(request)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger.warning("Request validation failed path=%s method=%s errors=%s", request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, correlation_id=correlation_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from docgen.config import get_settings

  settings = get_settings()
  correlation_id = _correlation_id(request)
  headers = getattr(exc, "headers", None)
  # Do not expose `exc.detail` to callers for server-side failures.
  if exc.status_code >= 500:
    logger.error("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", correlation_id=correlation_id), headers=headers)

  if settings.log_http_4xx:
    logger.warning("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, correlation_id=correlation_id), headers=headers)
