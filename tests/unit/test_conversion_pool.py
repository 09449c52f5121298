from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from docgen.convert.pool import ConversionPool
from docgen.core.errors import ConversionFailedError, ConversionTimeoutError

FAKE_SOFFICE = Path(__file__).resolve().parents[1] / "fixtures" / "fake_soffice.py"


def _pool(tmp_path: Path, mode: str, **kwargs) -> ConversionPool:
  return ConversionPool(workdir=str(tmp_path), command=(sys.executable, str(FAKE_SOFFICE), f"--mode={mode}"), **kwargs)


def test_build_command_isolates_profile(tmp_path: Path) -> None:
  pool = ConversionPool(command=("soffice",))

  args = pool.build_command(tmp_path / "input.docx", tmp_path, "pdf")

  assert args[:5] == ["soffice", "--headless", "--convert-to", "pdf", "--outdir"]
  assert f"-env:UserInstallation=file://{tmp_path}/.libreoffice-profile" in args
  assert args[-1] == str(tmp_path / "input.docx")


@pytest.mark.anyio
async def test_successful_conversion_cleans_up(tmp_path: Path) -> None:
  pool = _pool(tmp_path, "ok")

  result = await pool.convert(b"DOCX", "cid/../1")

  assert result == b"%CONVERTED%DOCX"
  assert list(tmp_path.iterdir()) == []
  stats = pool.stats()
  assert stats.completed_jobs == 1
  assert stats.active_jobs == 0


@pytest.mark.anyio
async def test_converter_failure_reports_stderr(tmp_path: Path) -> None:
  pool = _pool(tmp_path, "fail")

  with pytest.raises(ConversionFailedError) as exc_info:
    await pool.convert(b"DOCX", "cid-2")

  assert "could not be loaded" in exc_info.value.message
  assert exc_info.value.retryable is True
  assert list(tmp_path.iterdir()) == []
  assert pool.stats().failed_jobs == 1


@pytest.mark.anyio
async def test_missing_output_is_failure(tmp_path: Path) -> None:
  pool = _pool(tmp_path, "empty")

  with pytest.raises(ConversionFailedError, match="no pdf output"):
    await pool.convert(b"DOCX", "cid-3")
  assert list(tmp_path.iterdir()) == []


@pytest.mark.anyio
async def test_timeout_kills_converter_and_cleans_up(tmp_path: Path) -> None:
  pool = _pool(tmp_path, "hang")

  with pytest.raises(ConversionTimeoutError) as exc_info:
    await pool.convert(b"DOCX", "cid-4", timeout_ms=300)

  assert exc_info.value.timeout_ms == 300
  assert exc_info.value.http_status == 504
  assert list(tmp_path.iterdir()) == []


@pytest.mark.anyio
async def test_missing_executable_is_failure(tmp_path: Path) -> None:
  pool = ConversionPool(workdir=str(tmp_path), command=(str(tmp_path / "no-such-soffice"),))

  with pytest.raises(ConversionFailedError, match="not found"):
    await pool.convert(b"DOCX", "cid-5")


@pytest.mark.anyio
async def test_concurrency_is_bounded(tmp_path: Path) -> None:
  pool = _pool(tmp_path, "slow", max_concurrent=2)

  tasks = [asyncio.create_task(pool.convert(f"DOC{index}".encode(), f"cid-{index}")) for index in range(5)]
  await asyncio.sleep(0.2)
  stats = pool.stats()
  assert stats.active_jobs == 2
  assert stats.queued_jobs == 3

  results = await asyncio.gather(*tasks)

  assert results == [f"%CONVERTED%DOC{index}".encode() for index in range(5)]
  assert pool.stats().total_conversions == 5
  assert pool.stats().as_dict()["maxConcurrent"] == 2
