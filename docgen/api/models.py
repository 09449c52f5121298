from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from docgen.core.errors import ValidationError

TemplateStrategy = Literal["OwnTemplate", "ConcatenateTemplates"]
OutputFormat = Literal["PDF", "DOCX"]

_STRATEGY_ALIASES = {"owntemplate": "OwnTemplate", "concatenatetemplates": "ConcatenateTemplates"}


class _CamelModel(BaseModel):
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TemplateRef(_CamelModel):
  """One part of a composite document."""

  template_id: StrictStr = Field(min_length=1)
  namespace: StrictStr = Field(min_length=1)
  sequence: StrictInt = 0


class GenerationOptions(_CamelModel):
  store_merged_intermediate: bool = Field(default=False, validation_alias=AliasChoices("storeMergedIntermediate", "storeMergedDocx", "store_merged_intermediate"))
  return_intermediate_to_caller: bool = Field(default=False, validation_alias=AliasChoices("returnIntermediateToCaller", "returnDocxToBrowser", "return_intermediate_to_caller"))
  insert_section_breaks: bool = Field(default=True, validation_alias=AliasChoices("insertSectionBreaks", "insert_section_breaks"))


class DocgenEnvelope(_CamelModel):
  """Generation request shared by the interactive and batch paths."""

  template_id: StrictStr | None = Field(default=None, min_length=1)
  templates: list[TemplateRef] | None = None
  template_strategy: TemplateStrategy | None = None
  composite_document_id: StrictStr | None = None
  output_format: OutputFormat = "PDF"
  output_file_name: StrictStr | None = None
  locale: StrictStr = "en-GB"
  timezone: StrictStr = "UTC"
  options: GenerationOptions = Field(default_factory=GenerationOptions)
  data: dict[str, Any] = Field(default_factory=dict)
  parents: dict[str, StrictStr | None] = Field(default_factory=dict)
  request_hash: StrictStr | None = None
  job_id: StrictStr | None = Field(default=None, validation_alias=AliasChoices("jobId", "generatedDocumentId", "job_id"))

  @field_validator("template_strategy", mode="before")
  @classmethod
  def normalize_strategy(cls, value: Any) -> Any:
    # Accept the spaced spellings stored by older enqueuers.
    if isinstance(value, str):
      return _STRATEGY_ALIASES.get(value.replace(" ", "").lower(), value)
    return value

  @field_validator("output_format", mode="before")
  @classmethod
  def normalize_format(cls, value: Any) -> Any:
    if isinstance(value, str):
      return value.strip().upper()
    return value

  @model_validator(mode="after")
  def check_template_selection(self) -> DocgenEnvelope:
    templates = self.templates or []
    if self.template_strategy is None:
      self.template_strategy = "ConcatenateTemplates" if len(templates) > 1 else "OwnTemplate"

    if self.template_strategy == "ConcatenateTemplates":
      if not templates:
        raise ValueError("ConcatenateTemplates requires a non-empty templates list.")
      return self

    # OwnTemplate: one template receives the whole data tree.
    if self.template_id is None:
      if len(templates) != 1:
        raise ValueError("templateId is required unless exactly one template is listed.")
      self.template_id = templates[0].template_id
    return self

  @property
  def is_composite(self) -> bool:
    return self.template_strategy == "ConcatenateTemplates"

  def ordered_templates(self) -> list[TemplateRef]:
    """Composite parts by ascending sequence; ties keep list order."""
    return sorted(self.templates or [], key=lambda ref: ref.sequence)

  def template_ids(self) -> list[str]:
    if self.is_composite:
      return [ref.template_id for ref in self.ordered_templates()]
    return [self.template_id] if self.template_id else []

  def resolved_file_name(self) -> str:
    extension = self.output_format.lower()
    name = (self.output_file_name or "").strip() or "document"
    if name.lower().endswith((".pdf", ".docx")):
      name = name.rsplit(".", 1)[0]
    return f"{name}.{extension}"

  def wants_intermediate(self) -> bool:
    return self.output_format == "PDF" and (self.options.store_merged_intermediate or self.options.return_intermediate_to_caller)


def _describe_errors(exc: PydanticValidationError) -> str:
  parts = []
  for error in exc.errors():
    location = ".".join(str(item) for item in error.get("loc", ())) or "envelope"
    parts.append(f"{location}: {error.get('msg')}")
  return "; ".join(parts)


def parse_envelope(payload: Any) -> DocgenEnvelope:
  """Validate a raw envelope (dict or JSON text) into a DocgenEnvelope."""
  if isinstance(payload, (str, bytes)):
    try:
      payload = json.loads(payload)
    except json.JSONDecodeError as exc:
      raise ValidationError(f"Request JSON is not valid JSON: {exc.msg}", phase="parse") from exc

  if not isinstance(payload, dict):
    raise ValidationError("Request envelope must be a JSON object", phase="parse")

  try:
    return DocgenEnvelope.model_validate(payload)
  except PydanticValidationError as exc:
    raise ValidationError(_describe_errors(exc), phase="parse") from exc


class GenerateResponse(_CamelModel):
  download_url: str
  output_file_id: str
  merged_docx_file_id: str | None = None
  merged_docx_download_url: str | None = None
  correlation_id: str
  reused: bool = False
  link_errors: list[str] = Field(default_factory=list)


class EnqueueResponse(_CamelModel):
  job_id: str
  request_hash: str
  correlation_id: str
  status: str


class JobStatusResponse(_CamelModel):
  job_id: str
  status: str
  attempts: int
  output_file_id: str | None = None
  merged_docx_file_id: str | None = None
  error: str | None = None
  scheduled_retry_time: str | None = None
  correlation_id: str | None = None
