"""Bounded pool of headless LibreOffice conversions.

Each conversion runs in its own temporary directory with its own LibreOffice
user profile, so parallel soffice processes never share state. At most
``max_concurrent`` processes run at once; further callers wait in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from docgen.core.errors import ConversionFailedError, ConversionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_MAX_CONCURRENT = 8

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class ConversionPoolStats:
  active_jobs: int = 0
  queued_jobs: int = 0
  completed_jobs: int = 0
  failed_jobs: int = 0
  total_conversions: int = 0
  max_concurrent: int = DEFAULT_MAX_CONCURRENT

  def as_dict(self) -> dict[str, int]:
    return {
      "activeJobs": self.active_jobs,
      "queuedJobs": self.queued_jobs,
      "completedJobs": self.completed_jobs,
      "failedJobs": self.failed_jobs,
      "totalConversions": self.total_conversions,
      "maxConcurrent": self.max_concurrent,
    }


class ConversionPool:
  """Run soffice conversions with admission control and guaranteed cleanup."""

  def __init__(self, *, max_concurrent: int = DEFAULT_MAX_CONCURRENT, workdir: str | None = None, command: tuple[str, ...] = ("soffice",), default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
    if max_concurrent <= 0:
      raise ValueError("max_concurrent must be positive")
    self.max_concurrent = max_concurrent
    self.workdir = workdir
    self.command = command
    self.default_timeout_ms = default_timeout_ms
    self._slots = asyncio.Semaphore(max_concurrent)
    self._stats = ConversionPoolStats(max_concurrent=max_concurrent)

  def stats(self) -> ConversionPoolStats:
    return ConversionPoolStats(**vars(self._stats))

  async def convert(self, data: bytes, correlation_id: str, *, target_format: str = "pdf", timeout_ms: int | None = None) -> bytes:
    """Convert a DOCX payload, waiting for a free slot first."""
    timeout_ms = timeout_ms or self.default_timeout_ms
    self._stats.queued_jobs += 1
    try:
      await self._slots.acquire()
    finally:
      self._stats.queued_jobs -= 1

    self._stats.active_jobs += 1
    self._stats.total_conversions += 1
    started = time.monotonic()
    try:
      result = await self._convert_in_workdir(data, correlation_id, target_format, timeout_ms)
    except BaseException:
      self._stats.failed_jobs += 1
      logger.error("Conversion failed correlation_id=%s after %.0fms", correlation_id, (time.monotonic() - started) * 1000)
      raise
    else:
      self._stats.completed_jobs += 1
      logger.info("Conversion completed correlation_id=%s in %.0fms (%d -> %d bytes)", correlation_id, (time.monotonic() - started) * 1000, len(data), len(result))
      return result
    finally:
      self._stats.active_jobs -= 1
      self._slots.release()

  async def _convert_in_workdir(self, data: bytes, correlation_id: str, target_format: str, timeout_ms: int) -> bytes:
    if self.workdir:
      Path(self.workdir).mkdir(parents=True, exist_ok=True)
    prefix = f"docgen-{_SAFE_NAME.sub('', correlation_id)[:40]}-"
    with tempfile.TemporaryDirectory(prefix=prefix, dir=self.workdir) as job_dir:
      job_path = Path(job_dir)
      input_path = job_path / "input.docx"
      input_path.write_bytes(data)
      await self._run_converter(input_path, job_path, target_format, timeout_ms, correlation_id)
      output_path = job_path / f"input.{target_format}"
      if not output_path.is_file():
        raise ConversionFailedError(f"Converter produced no {target_format} output", phase="convert")
      return output_path.read_bytes()

  def build_command(self, input_path: Path, outdir: Path, target_format: str) -> list[str]:
    return [
      *self.command,
      "--headless",
      "--convert-to",
      target_format,
      "--outdir",
      str(outdir),
      f"-env:UserInstallation=file://{outdir}/.libreoffice-profile",
      str(input_path),
    ]

  async def _run_converter(self, input_path: Path, outdir: Path, target_format: str, timeout_ms: int, correlation_id: str) -> None:
    args = self.build_command(input_path, outdir, target_format)
    try:
      # Own process group so the timeout also kills soffice.bin children.
      process = await asyncio.create_subprocess_exec(*args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, start_new_session=True)
    except FileNotFoundError as exc:
      raise ConversionFailedError(f"Converter executable not found: {self.command[0]}", phase="convert") from exc

    try:
      _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
      logger.warning("Conversion timed out after %dms correlation_id=%s; killing pid %s", timeout_ms, correlation_id, process.pid)
      await _kill(process)
      raise ConversionTimeoutError(timeout_ms, phase="convert") from None
    except asyncio.CancelledError:
      await _kill(process)
      raise

    if process.returncode != 0:
      detail = stderr.decode("utf-8", errors="replace").strip()[-2000:]
      raise ConversionFailedError(f"Converter exited with code {process.returncode}: {detail}", phase="convert")


async def _kill(process: asyncio.subprocess.Process) -> None:
  if process.returncode is not None:
    return
  try:
    os.killpg(process.pid, signal.SIGKILL)
  except ProcessLookupError:
    pass
  except PermissionError:
    process.kill()
  await process.wait()
