"""Template merge: substitute data into a DOCX template.

The pipeline only depends on the MergeFunction signature, so a richer engine
can be injected. The bundled default replaces ``{{ dotted.path }}`` placeholders
that sit inside a single text run of the document, header and footer parts.
"""

from __future__ import annotations

import io
import re
import zipfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from xml.sax.saxutils import escape

from starlette.concurrency import run_in_threadpool

from docgen.core.errors import TemplateMergeError


@dataclass(frozen=True)
class MergeOptions:
  locale: str = "en-GB"
  timezone: str = "UTC"


MergeFunction = Callable[[bytes, Any, MergeOptions], Awaitable[bytes]]

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_MERGEABLE_PART = re.compile(r"^word/(document|header\d*|footer\d*|footnotes|endnotes)\.xml$")


def resolve_path(data: Any, path: str) -> Any:
  """Walk a dotted path through dicts and lists; missing segments resolve to None."""
  current = data
  for segment in path.split("."):
    if isinstance(current, dict):
      current = current.get(segment)
    elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
      current = current[int(segment)]
    else:
      return None
    if current is None:
      return None
  return current


def _format_value(value: Any) -> str:
  if value is None:
    return ""
  if isinstance(value, bool):
    return "Yes" if value else "No"
  if isinstance(value, (dict, list)):
    return ""
  return str(value)


def render_xml(xml: str, data: Any) -> str:
  return _PLACEHOLDER.sub(lambda match: escape(_format_value(resolve_path(data, match.group(1)))), xml)


def merge_docx(template: bytes, data: Any, options: MergeOptions) -> bytes:
  """Synchronous placeholder merge over the DOCX package."""
  try:
    source = zipfile.ZipFile(io.BytesIO(template))
  except zipfile.BadZipFile as exc:
    raise TemplateMergeError("Template is not a valid DOCX package", phase="merge") from exc

  output = io.BytesIO()
  with source, zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as target:
    if "word/document.xml" not in source.namelist():
      raise TemplateMergeError("Template is missing word/document.xml", phase="merge")
    for info in source.infolist():
      payload = source.read(info.filename)
      if _MERGEABLE_PART.match(info.filename):
        try:
          payload = render_xml(payload.decode("utf-8"), data).encode("utf-8")
        except UnicodeDecodeError as exc:
          raise TemplateMergeError(f"Template part {info.filename} is not UTF-8", phase="merge") from exc
      target.writestr(info, payload)
  return output.getvalue()


async def default_merge(template: bytes, data: Any, options: MergeOptions) -> bytes:
  """Run merge_docx off the event loop."""
  return await run_in_threadpool(merge_docx, template, data, options)
