from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SourceType = Literal["document", "wiki", "workitem", "sprint"]
ContentType = Literal["text", "table", "list", "code", "mixed"]
EvidenceSourceType = Literal["Document", "WikiPage", "WorkItem", "Sprint"]
FieldStatus = Literal["filled", "pending", "no_data"]
IssueSeverity = Literal["error", "warning", "info"]
IssueType = Literal[
    "missing",
    "inconsistent",
    "low_confidence",
    "format",
    "contradiction",
    "out_of_period",
    "invalid_reference",
]
GenerationStatus = Literal["queued", "processing", "completed", "failed", "cancelled"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


class UrlTypeEntry(BaseModel):
    url: str
    type: str


class ChunkMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_type: SourceType
    document_name: str = Field(..., min_length=1)
    document_id: str | None = None
    wiki_page_id: str | None = None
    section_heading: str | None = None
    content_type: ContentType = "text"
    position: int = Field(..., ge=0)
    urls: tuple[str, ...] = ()
    url_types: tuple[UrlTypeEntry, ...] = ()


class DocumentChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str = Field(..., min_length=1)
    chunk_index: int = Field(..., ge=0)
    token_count: int = Field(..., ge=0)
    metadata: ChunkMetadata


class ChunkInput(BaseModel):
    text: str
    source_type: SourceType
    document_name: str = Field(..., min_length=1)
    document_id: str | None = None
    wiki_page_id: str | None = None


class ChunkingOptions(BaseModel):
    target_size: int = Field(default=1000, ge=1)
    max_size: int = Field(default=1500, ge=1)
    overlap: int = Field(default=120, ge=0)
    separators: list[str] = Field(default_factory=lambda: ["\n## ", "\n### ", "\n\n", "\n", ". "], min_length=1)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ChunkingOptions":
        if self.max_size < self.target_size:
            raise ValueError("max_size must be greater than or equal to target_size")
        return self


class Evidence(BaseModel):
    source_type: EvidenceSourceType
    source_id: str = Field(..., min_length=1)
    source_name: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    snippet: str = Field(default="", max_length=300)
    url: str | None = None
    timestamp: str | None = None


class TokenUsage(BaseModel):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input + self.output

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)


class FieldResult(BaseModel):
    field_name: str = Field(..., min_length=1)
    value: Any = None
    evidence: list[Evidence] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    status: FieldStatus = "pending"
    context_used: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_evidence(self) -> "FieldResult":
        if self.status == "filled" and not self.evidence:
            raise ValueError(f"filled field '{self.field_name}' must carry at least one evidence entry")
        return self


class NormalizedFieldResult(FieldResult):
    original_value: Any = None
    normalized_value: Any = None
    normalization_notes: str | None = None


def _ensure_unique_names(fields: list[FieldResult], section_name: str) -> None:
    seen: set[str] = set()
    for field in fields:
        if field.field_name in seen:
            raise ValueError(f"duplicate field '{field.field_name}' in section '{section_name}'")
        seen.add(field.field_name)


class SectionExtraction(BaseModel):
    section_name: str = Field(..., min_length=1)
    fields: list[FieldResult] = Field(default_factory=list)
    chunks_queried: int = Field(default=0, ge=0)
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    duration: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_names(self) -> "SectionExtraction":
        _ensure_unique_names(self.fields, self.section_name)
        return self


class SectionNormalization(BaseModel):
    section_name: str = Field(..., min_length=1)
    fields: list[NormalizedFieldResult] = Field(default_factory=list)
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    duration: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_names(self) -> "SectionNormalization":
        _ensure_unique_names(self.fields, self.section_name)
        return self


class ExtractionOutput(BaseModel):
    sections: list[SectionExtraction] = Field(default_factory=list)
    total_tokens: TokenUsage = Field(default_factory=TokenUsage)
    total_duration: int = Field(default=0, ge=0)

    def all_fields(self) -> list[FieldResult]:
        return [field for section in self.sections for field in section.fields]


class NormalizationOutput(BaseModel):
    sections: list[SectionNormalization] = Field(default_factory=list)
    total_tokens: TokenUsage = Field(default_factory=TokenUsage)
    total_duration: int = Field(default=0, ge=0)

    def all_fields(self) -> list[NormalizedFieldResult]:
        return [field for section in self.sections for field in section.fields]


class ValidationIssue(BaseModel):
    field: str = Field(..., min_length=1)
    severity: IssueSeverity
    type: IssueType
    message: str = Field(..., min_length=1)
    suggestion: str = Field(..., min_length=1)
    auto_fixable: bool = False


class RetryRecommendation(BaseModel):
    sections: list[str] = Field(default_factory=list)
    reason: str


class ValidationReport(BaseModel):
    overall_score: float = Field(default=0.0, ge=0.0, le=1.0)
    total_fields: int = Field(default=0, ge=0)
    filled_fields: int = Field(default=0, ge=0)
    pending_fields: int = Field(default=0, ge=0)
    empty_fields: int = Field(default=0, ge=0)
    issues: list[ValidationIssue] = Field(default_factory=list)
    approved: bool = False
    retryable: bool = False
    retry_recommendations: RetryRecommendation | None = None
    duration: int = Field(default=0, ge=0)
    commentary: str | None = None


class PlaceholderInfo(BaseModel):
    name: str = Field(..., min_length=1)
    type: Literal["simple", "loop", "nested_loop"] = "simple"
    required: bool = False
    section: str = Field(..., min_length=1)
    description: str | None = None
    source_hint: str | None = None
    rules: list[str] = Field(default_factory=list)
    loop_variable: str | None = None
    child_placeholders: list["PlaceholderInfo"] = Field(default_factory=list)


class TeamMember(BaseModel):
    name: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    area: str = Field(..., min_length=1)


class ProjectObjective(BaseModel):
    description: str = Field(..., min_length=1)
    priority: Literal["alta", "media", "baixa"] = "media"


class ProjectContextData(BaseModel):
    project_name: str = Field(..., min_length=1)
    project_scope: str = Field(..., min_length=1)
    objectives: list[ProjectObjective] = Field(default_factory=list)
    team_members: list[TeamMember] = Field(default_factory=list)
    summary: str | None = None


class MonthlySnapshot(BaseModel):
    work_items_total: int = Field(default=0, ge=0)
    work_items_closed: int = Field(default=0, ge=0)
    work_items_active: int = Field(default=0, ge=0)
    sprints_count: int = Field(default=0, ge=0)
    wiki_pages_updated: int = Field(default=0, ge=0)
    chunks_created: int = Field(default=0, ge=0)


class AzureDevOpsRef(BaseModel):
    organization: str = Field(..., min_length=1)
    project: str = Field(..., min_length=1)
    team_name: str = Field(..., min_length=1)


class ChunkStats(BaseModel):
    document: int = Field(default=0, ge=0)
    wiki: int = Field(default=0, ge=0)
    workitem: int = Field(default=0, ge=0)
    sprint: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


def _assume_utc(value: datetime | None) -> datetime | None:
    # Tracker exports mix "...Z" and naive timestamps; naive ones are UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WorkItemSnapshot(BaseModel):
    id: str = Field(..., min_length=1)
    work_item_id: int
    title: str = Field(..., min_length=1)
    state: str = ""
    description: str | None = None
    assigned_to: str | None = None
    changed_date: datetime

    @field_validator("changed_date")
    @classmethod
    def changed_date_as_utc(cls, value: datetime) -> datetime:
        return _assume_utc(value)


class SprintSnapshot(BaseModel):
    id: str = Field(..., min_length=1)
    sprint_name: str = Field(..., min_length=1)
    start_date: datetime | None = None
    end_date: datetime | None = None
    total_work_items: int = Field(default=0, ge=0)
    completed_items: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_as_utc(cls, value: datetime | None) -> datetime | None:
        return _assume_utc(value)


class GenerationContext(BaseModel):
    project_id: str = Field(..., min_length=1)
    period_key: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    generation_id: str = Field(..., min_length=1)
    template_id: str = Field(..., min_length=1)
    template_path: str = Field(..., min_length=1)
    placeholders: list[PlaceholderInfo] = Field(default_factory=list)
    filling_guide: str = ""
    project_context: ProjectContextData
    monthly_snapshot: MonthlySnapshot = Field(default_factory=MonthlySnapshot)
    azure_devops: AzureDevOpsRef
    chunk_stats: ChunkStats = Field(default_factory=ChunkStats)
    work_items: list[WorkItemSnapshot] = Field(default_factory=list)
    sprints: list[SprintSnapshot] = Field(default_factory=list)


class FieldOverride(BaseModel):
    field_name: str = Field(..., min_length=1)
    section_name: str = Field(..., min_length=1)
    activity_index: int | None = Field(default=None, ge=0)
    responsible_index: int | None = Field(default=None, ge=0)
    original_value: Any = None
    new_value: Any = None
    reason: str | None = Field(default=None, max_length=500)
    edited_at: str = Field(..., min_length=1)
    edited_by: str | None = None


class StageTokens(BaseModel):
    extractor: TokenUsage = Field(default_factory=TokenUsage)
    normalizer: TokenUsage = Field(default_factory=TokenUsage)
    validator: TokenUsage = Field(default_factory=TokenUsage)
    total: int = Field(default=0, ge=0)


class StepDurations(BaseModel):
    extractor: int = Field(default=0, ge=0)
    normalizer: int = Field(default=0, ge=0)
    validator: int = Field(default=0, ge=0)
    formatter: int = Field(default=0, ge=0)
    render: int = Field(default=0, ge=0)


class GenerationMetadata(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_version: str
    schema_version: str
    template_id: str
    tokens_used: StageTokens = Field(default_factory=StageTokens)
    validation_report: ValidationReport
    total_duration: int = Field(default=0, ge=0)
    per_step: StepDurations = Field(default_factory=StepDurations)
    retry_count: int = Field(default=0, ge=0)
    generated_at: str


class GenerationRecord(BaseModel):
    """Durable state of one report generation.

    `partial_results` holds raw JSON slices (context, extraction, normalization,
    validation_report, placeholder_map, metadata, review). Slices are parsed by the
    stage that reads them so a malformed slice surfaces as that stage's error.
    """

    id: str
    project_id: str
    template_id: str
    status: GenerationStatus = "queued"
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = "queued"
    error_message: str | None = None
    partial_results: dict[str, Any] = Field(default_factory=dict)
    overrides: dict[str, FieldOverride] = Field(default_factory=dict)
    output_file_path: str | None = None
    version: int = 0
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_updates(self, **changes: Any) -> "GenerationRecord":
        return self.model_copy(update=changes, deep=True)

    def with_partial(self, patch: dict[str, Any], **changes: Any) -> "GenerationRecord":
        merged = {**self.partial_results, **patch}
        return self.model_copy(update={**changes, "partial_results": merged}, deep=True)
