"""Error taxonomy shared by the batch and interactive paths.

Every failure that reaches a job record or an HTTP response is a DocgenError.
Lower layers raise the specific subclass closest to the failure; anything else
is converted exactly once by classify_error, which also stamps the pipeline
phase the failure happened in.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx

_MAX_ERROR_TEXT = 32_000


class ErrorCode(str, Enum):
  VALIDATION = "VALIDATION"
  TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
  TEMPLATE_MERGE_FAILED = "TEMPLATE_MERGE_FAILED"
  CONVERSION_TIMEOUT = "CONVERSION_TIMEOUT"
  CONVERSION_FAILED = "CONVERSION_FAILED"
  UPLOAD_FAILED = "UPLOAD_FAILED"
  LINK_FAILED = "LINK_FAILED"
  AUTH_FAILED = "AUTH_FAILED"
  IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
  REMOTE_API = "REMOTE_API"
  CONFIGURATION = "CONFIGURATION"
  UNKNOWN = "UNKNOWN"


class DocgenError(Exception):
  """Base error carrying a code, retry hint, HTTP status and pipeline phase."""

  code: ErrorCode = ErrorCode.UNKNOWN
  retryable: bool = True
  http_status: int = 500

  def __init__(self, message: str, *, retryable: bool | None = None, http_status: int | None = None, phase: str | None = None, context: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.message = message
    if retryable is not None:
      self.retryable = retryable
    if http_status is not None:
      self.http_status = http_status
    self.phase = phase
    self.context = context or {}

  def to_error_text(self) -> str:
    """Render the error for the job record's error field."""
    prefix = f"[{self.code.value}]"
    body = f"{self.phase}: {self.message}" if self.phase else self.message
    return f"{prefix} {body}"[:_MAX_ERROR_TEXT]

  def to_payload(self, correlation_id: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"code": self.code.value, "message": self.message, "retryable": self.retryable}
    if self.phase:
      payload["phase"] = self.phase
    if correlation_id:
      payload["correlationId"] = correlation_id
    return payload


class ValidationError(DocgenError):
  code = ErrorCode.VALIDATION
  retryable = False
  http_status = 400


class TemplateNotFoundError(DocgenError):
  code = ErrorCode.TEMPLATE_NOT_FOUND
  retryable = False
  http_status = 404

  def __init__(self, template_id: str, **kwargs: Any) -> None:
    super().__init__(f"Template {template_id} not found", context={"templateId": template_id}, **kwargs)
    self.template_id = template_id


class TemplateMergeError(DocgenError):
  code = ErrorCode.TEMPLATE_MERGE_FAILED
  retryable = False
  http_status = 422


class ConversionTimeoutError(DocgenError):
  code = ErrorCode.CONVERSION_TIMEOUT
  retryable = True
  http_status = 504

  def __init__(self, timeout_ms: int, **kwargs: Any) -> None:
    super().__init__(f"Conversion exceeded {timeout_ms}ms", context={"timeoutMs": timeout_ms}, **kwargs)
    self.timeout_ms = timeout_ms


class ConversionFailedError(DocgenError):
  code = ErrorCode.CONVERSION_FAILED
  retryable = True
  http_status = 502


class UploadError(DocgenError):
  code = ErrorCode.UPLOAD_FAILED
  retryable = True
  http_status = 502


class LinkError(DocgenError):
  code = ErrorCode.LINK_FAILED
  retryable = False
  http_status = 502


class AuthError(DocgenError):
  code = ErrorCode.AUTH_FAILED
  retryable = True
  http_status = 502


class IdempotencyConflictError(DocgenError):
  code = ErrorCode.IDEMPOTENCY_CONFLICT
  retryable = False
  http_status = 409


class ConfigurationError(DocgenError):
  code = ErrorCode.CONFIGURATION
  retryable = False
  http_status = 500


class RemoteApiError(DocgenError):
  """Non-2xx response from the platform API that the client did not recover from."""

  code = ErrorCode.REMOTE_API
  http_status = 502

  def __init__(self, status_code: int, message: str, *, error_code: str | None = None, **kwargs: Any) -> None:
    kwargs.setdefault("retryable", status_code >= 500)
    super().__init__(message, context={"statusCode": status_code, "errorCode": error_code}, **kwargs)
    self.status_code = status_code
    self.error_code = error_code


def classify_error(exc: BaseException, phase: str | None = None) -> DocgenError:
  """Convert any exception into a DocgenError, recording the phase once."""
  if isinstance(exc, DocgenError):
    # Keep the innermost phase; outer layers only fill it when unset.
    if exc.phase is None:
      exc.phase = phase
    return exc

  # Transport failures are transient by nature.
  if isinstance(exc, httpx.TransportError):
    error: DocgenError = DocgenError(f"Network error: {type(exc).__name__}: {exc}", retryable=True, phase=phase)
  elif isinstance(exc, asyncio.TimeoutError):
    error = DocgenError("Operation timed out", retryable=True, phase=phase)
  else:
    error = DocgenError(f"{type(exc).__name__}: {exc}", retryable=True, phase=phase)

  error.__cause__ = exc
  return error
