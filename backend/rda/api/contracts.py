from typing import Any

from pydantic import BaseModel, Field

from rda.review import MAX_BATCH_OVERRIDES, OverrideInput
from rda.schemas import SourceType
from rda.sections import SECTION_ORDER, SectionName


class GenerationCreateRequest(BaseModel):
    project_id: str = Field(..., min_length=1, max_length=160)
    template_id: str = Field(..., min_length=1, max_length=160)
    context: dict[str, Any]


class BatchOverridesRequest(BaseModel):
    overrides: list[OverrideInput] = Field(..., min_length=1, max_length=MAX_BATCH_OVERRIDES)
    edited_by: str | None = Field(default=None, max_length=160)


class OverrideRequest(OverrideInput):
    edited_by: str | None = Field(default=None, max_length=160)


class ReprocessRequest(BaseModel):
    sections: list[SectionName] = Field(..., min_length=1, max_length=len(SECTION_ORDER))
    reason: str | None = Field(default=None, max_length=500)


class ChunkPreviewRequest(BaseModel):
    text: str = Field(..., min_length=1)
    source_type: SourceType = "document"
    document_name: str = Field(default="preview", min_length=1, max_length=240)
    target_size: int | None = Field(default=None, ge=1)
    max_size: int | None = Field(default=None, ge=1)
    overlap: int | None = Field(default=None, ge=0)


class IngestSourceRequest(BaseModel):
    source_id: str = Field(..., min_length=1, max_length=160)
    text: str
    source_type: SourceType = "document"
    document_name: str = Field(..., min_length=1, max_length=240)
    document_id: str | None = None
    wiki_page_id: str | None = None


class IngestRequest(BaseModel):
    sources: list[IngestSourceRequest] = Field(..., min_length=1, max_length=100)
