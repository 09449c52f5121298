"""Join rendered parts into one document, in sequence order."""

from __future__ import annotations

import io
import logging
import re
import zipfile
from dataclasses import dataclass

import pymupdf

from docgen.core.errors import ConversionFailedError, TemplateMergeError

logger = logging.getLogger(__name__)

_BODY = re.compile(r"(<w:body(?:\s[^>]*)?>)(.*)(</w:body>)", re.DOTALL)
# Body-level section properties are the last child of w:body.
_TRAILING_SECT_PR = re.compile(r"<w:sectPr(?:\s[^>]*)?>(?:(?!<w:sectPr).)*?</w:sectPr>\s*$|<w:sectPr(?:\s[^>]*)?/>\s*$", re.DOTALL)
_NEXT_PAGE_SECT_PR = '<w:sectPr><w:type w:val="nextPage"/></w:sectPr>'


@dataclass(frozen=True)
class DocumentPart:
  data: bytes
  sequence: int
  namespace: str = ""


def order_parts(parts: list[DocumentPart]) -> list[DocumentPart]:
  """Ascending sequence; sorted() is stable so ties keep insertion order."""
  return sorted(parts, key=lambda part: part.sequence)


def _read_document_xml(part: DocumentPart) -> tuple[zipfile.ZipFile, str]:
  try:
    package = zipfile.ZipFile(io.BytesIO(part.data))
    return package, package.read("word/document.xml").decode("utf-8")
  except (zipfile.BadZipFile, KeyError, UnicodeDecodeError) as exc:
    raise TemplateMergeError(f"Invalid DOCX structure in part {part.namespace or part.sequence}", phase="assemble") from exc


def _split_body(xml: str, label: str) -> tuple[str, str, str]:
  match = _BODY.search(xml)
  if match is None:
    raise TemplateMergeError(f"Cannot extract body from part {label}", phase="assemble")
  return xml[: match.end(1)], match.group(2), xml[match.start(3) :]


def _with_section_break(body: str) -> str:
  """Turn a part's body-level sectPr into a paragraph-level section break."""
  match = _TRAILING_SECT_PR.search(body)
  if match is None:
    return f"{body}<w:p><w:pPr>{_NEXT_PAGE_SECT_PR}</w:pPr></w:p>"
  sect_pr = match.group(0).strip()
  if "<w:type " not in sect_pr and not sect_pr.endswith("/>"):
    sect_pr = re.sub(r"^(<w:sectPr(?:\s[^>]*)?>)", r'\1<w:type w:val="nextPage"/>', sect_pr)
  return f"{body[: match.start()]}<w:p><w:pPr>{sect_pr}</w:pPr></w:p>"


def _strip_section_properties(body: str) -> str:
  return _TRAILING_SECT_PR.sub("", body)


def concatenate_docx(parts: list[DocumentPart], *, insert_section_breaks: bool = True) -> bytes:
  """Append the bodies of later parts to the first part's package."""
  if not parts:
    raise TemplateMergeError("No parts provided for concatenation", phase="assemble")

  ordered = order_parts(parts)
  if len(ordered) == 1:
    return ordered[0].data

  packages: list[zipfile.ZipFile] = []
  try:
    bodies: list[str] = []
    head = tail = ""
    for index, part in enumerate(ordered):
      package, xml = _read_document_xml(part)
      packages.append(package)
      part_head, body, part_tail = _split_body(xml, part.namespace or str(part.sequence))
      if index == 0:
        head, tail = part_head, part_tail
      is_last = index == len(ordered) - 1
      if not is_last:
        body = _with_section_break(body) if insert_section_breaks else _strip_section_properties(body)
      bodies.append(body)

    combined = head + "".join(bodies) + tail
    output = io.BytesIO()
    base = packages[0]
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as target:
      for info in base.infolist():
        payload = combined.encode("utf-8") if info.filename == "word/document.xml" else base.read(info.filename)
        target.writestr(info, payload)
  finally:
    for package in packages:
      package.close()

  logger.info("Concatenated %d DOCX parts (%d bytes)", len(ordered), output.getbuffer().nbytes)
  return output.getvalue()


def concatenate_pdf(parts: list[DocumentPart]) -> bytes:
  """Append the pages of every part in sequence order."""
  if not parts:
    raise ConversionFailedError("No parts provided for PDF concatenation", retryable=False, phase="assemble")

  ordered = order_parts(parts)
  if len(ordered) == 1:
    return ordered[0].data

  merged = pymupdf.open()
  try:
    for part in ordered:
      try:
        source = pymupdf.open(stream=part.data, filetype="pdf")
      except (pymupdf.FileDataError, RuntimeError, ValueError) as exc:
        raise ConversionFailedError(f"Converted part {part.namespace or part.sequence} is not a readable PDF", phase="assemble") from exc
      with source:
        merged.insert_pdf(source)
    page_count = merged.page_count
    data = merged.tobytes()
  finally:
    merged.close()

  logger.info("Concatenated %d PDF parts (%d pages)", len(ordered), page_count)
  return data
