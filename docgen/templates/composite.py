"""Resolve the template strategy and render the final document bytes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

from starlette.concurrency import run_in_threadpool

from docgen.api.models import DocgenEnvelope, TemplateRef
from docgen.convert.pool import ConversionPool
from docgen.core.errors import DocgenError, TemplateMergeError, ValidationError
from docgen.templates.concatenate import DocumentPart, concatenate_docx, concatenate_pdf
from docgen.templates.merge import MergeFunction, MergeOptions, default_merge
from docgen.templates.service import TemplateService

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _gather_all_or_cancel(coros: list[Awaitable[T]]) -> list[T]:
  """Await every coroutine in order; on the first failure cancel the rest and re-raise it."""
  tasks = [asyncio.ensure_future(coro) for coro in coros]
  try:
    await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
  finally:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
      task.cancel()
    if pending:
      # Let cancelled siblings release pool slots before the failure propagates.
      await asyncio.wait(pending)
  for task in tasks:
    error = None if task.cancelled() else task.exception()
    if error is not None:
      raise error
  return [task.result() for task in tasks]


@dataclass
class AssembledDocument:
  output: bytes
  merged_docx: bytes | None = None


class CompositeAssembler:
  """Fetch, merge, convert and join templates for one envelope."""

  def __init__(self, templates: TemplateService, pool: ConversionPool, *, merge: MergeFunction = default_merge, conversion_timeout_ms: int | None = None) -> None:
    self._templates = templates
    self._pool = pool
    self._merge = merge
    self._conversion_timeout_ms = conversion_timeout_ms

  async def assemble(self, envelope: DocgenEnvelope, correlation_id: str) -> AssembledDocument:
    options = MergeOptions(locale=envelope.locale, timezone=envelope.timezone)
    if envelope.is_composite:
      return await self._assemble_concatenated(envelope, options, correlation_id)
    return await self._assemble_single(envelope, options, correlation_id)

  async def _assemble_single(self, envelope: DocgenEnvelope, options: MergeOptions, correlation_id: str) -> AssembledDocument:
    assert envelope.template_id is not None
    template = await self._templates.get_template(envelope.template_id, correlation_id)
    merged = await self._merge_part(template, envelope.data, options, label=envelope.template_id)
    if envelope.output_format == "DOCX":
      return AssembledDocument(output=merged)

    pdf = await self._pool.convert(merged, correlation_id, timeout_ms=self._conversion_timeout_ms)
    return AssembledDocument(output=pdf, merged_docx=merged if envelope.wants_intermediate() else None)

  async def _assemble_concatenated(self, envelope: DocgenEnvelope, options: MergeOptions, correlation_id: str) -> AssembledDocument:
    refs = envelope.ordered_templates()
    # Fail before any fetch when a part has no data.
    for ref in refs:
      if ref.namespace not in envelope.data:
        raise ValidationError(f"Data namespace '{ref.namespace}' is missing for template {ref.template_id}", phase="assemble", context={"namespace": ref.namespace})

    logger.info("Assembling %d parts correlation_id=%s", len(refs), correlation_id)
    merged_parts = await _gather_all_or_cancel([self._render_part(ref, envelope.data[ref.namespace], options, correlation_id) for ref in refs])
    insert_breaks = envelope.options.insert_section_breaks

    if envelope.output_format == "DOCX":
      output = await run_in_threadpool(concatenate_docx, list(merged_parts), insert_section_breaks=insert_breaks)
      return AssembledDocument(output=output)

    converted = await _gather_all_or_cancel([self._convert_part(part, correlation_id) for part in merged_parts])
    # Results keep argument order, and concatenate_pdf re-sorts by sequence regardless.
    output = await run_in_threadpool(concatenate_pdf, list(converted))

    merged_docx = None
    if envelope.wants_intermediate():
      merged_docx = await run_in_threadpool(concatenate_docx, list(merged_parts), insert_section_breaks=insert_breaks)
    return AssembledDocument(output=output, merged_docx=merged_docx)

  async def _render_part(self, ref: TemplateRef, data: Any, options: MergeOptions, correlation_id: str) -> DocumentPart:
    template = await self._templates.get_template(ref.template_id, correlation_id)
    merged = await self._merge_part(template, data, options, label=f"{ref.namespace}/{ref.template_id}")
    return DocumentPart(data=merged, sequence=ref.sequence, namespace=ref.namespace)

  async def _convert_part(self, part: DocumentPart, correlation_id: str) -> DocumentPart:
    pdf = await self._pool.convert(part.data, f"{correlation_id}-{part.sequence}", timeout_ms=self._conversion_timeout_ms)
    return DocumentPart(data=pdf, sequence=part.sequence, namespace=part.namespace)

  async def _merge_part(self, template: bytes, data: Any, options: MergeOptions, *, label: str) -> bytes:
    try:
      return await self._merge(template, data, options)
    except DocgenError:
      raise
    except Exception as exc:
      raise TemplateMergeError(f"Merge failed for {label}: {type(exc).__name__}: {exc}", phase="merge") from exc
