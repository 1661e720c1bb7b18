from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from rda import db
from rda.config import Settings
from rda.observability import generation_scope
from rda.orchestrator import stored_slice
from rda.overrides import FieldKey, apply_overrides, get_field_value
from rda.placeholders import build_placeholder_map
from rda.rendering import DocumentRenderer, ManifestRenderer
from rda.reprocessing import ReprocessPreconditionError, ensure_not_running
from rda.schemas import (
    Evidence,
    ExtractionOutput,
    FieldOverride,
    FieldResult,
    GenerationContext,
    GenerationMetadata,
    GenerationRecord,
    NormalizationOutput,
    NormalizedFieldResult,
    ValidationIssue,
    ValidationReport,
)
from rda.sections import (
    ACTIVITY_FIELDS,
    REQUIRED_FIELDS,
    RESPONSIBLE_FIELDS,
    SCALAR_FIELDS,
    SECTION_LABELS,
    SECTION_ORDER,
    STEP_REVIEW_FINALIZED,
    section_for_field,
)
from rda.validation import is_filled

logger = logging.getLogger("rda.review")

MAX_BATCH_OVERRIDES = 50

SCALAR_LABELS: dict[str, str] = {
    "PROJETO_NOME": "Projeto",
    "ANO_BASE": "Ano Base",
    "COMPETENCIA": "Competencia",
    "COORDENADOR_TECNICO": "Coordenador Tecnico",
    "RESULTADOS_ALCANCADOS": "Resultados Alcancados",
}
REQUIRED_ACTIVITY_FIELDS = {"NOME_ATIVIDADE", "DESCRICAO_ATIVIDADE"}
REQUIRED_RESPONSIBLE_FIELDS = {"NOME_RESPONSAVEL"}


class OverrideTargetError(ValueError):
    """Raised when an override names a field that is not part of the review."""


class ReviewField(BaseModel):
    field_key: str
    field_name: str
    section_name: str
    activity_index: int | None = None
    responsible_index: int | None = None
    label: str
    value: Any = None
    original_value: Any = None
    confidence: float = 0.0
    status: Literal["filled", "pending"]
    evidence: list[Evidence] = Field(default_factory=list)
    issues: list[ValidationIssue] = Field(default_factory=list)
    has_override: bool = False
    override: FieldOverride | None = None
    is_required: bool = False
    field_type: Literal["simple", "activity", "responsible"]


class IssueCount(BaseModel):
    errors: int = 0
    warnings: int = 0
    info: int = 0


class ReviewSection(BaseModel):
    section_name: str
    label: str
    fields: list[ReviewField]
    section_score: float
    total_fields: int
    filled_fields: int
    pending_fields: int
    overridden_fields: int
    issue_count: IssueCount


class ReviewData(BaseModel):
    generation_id: str
    project_id: str
    period_key: str | None = None
    status: str
    overall_score: float
    sections: list[ReviewSection]
    validation_report: ValidationReport
    metadata: GenerationMetadata | None = None
    overrides: dict[str, FieldOverride]
    has_output: bool
    output_file_path: str | None = None
    quality_alert: bool
    edit_percentage: float
    created_at: str
    updated_at: str


class OverrideInput(BaseModel):
    field_key: str = Field(..., min_length=1)
    new_value: Any = None
    reason: str | None = Field(default=None, max_length=500)


class FinalizeResult(BaseModel):
    generation_id: str
    file_path: str
    edit_percentage: float
    quality_alert: bool


def match_issue(
    issue: ValidationIssue,
    field_name: str,
    activity_index: int | None = None,
    responsible_index: int | None = None,
) -> bool:
    target = issue.field.upper()
    if target == field_name:
        return True
    if field_name not in target:
        return False
    if activity_index is None:
        return True
    if f"[{activity_index}]" not in target:
        return False
    return responsible_index is None or f"[{responsible_index}]" in target


def label_for_field(field_name: str) -> str:
    if field_name in SCALAR_LABELS:
        return SCALAR_LABELS[field_name]
    return " ".join(part.capitalize() for part in field_name.lower().split("_"))


def _row_value(rows: Any, index: int, name: str) -> Any:
    if isinstance(rows, list) and index < len(rows) and isinstance(rows[index], dict):
        return rows[index].get(name)
    return None


class ReviewService:
    """Human review of a generation: field listing, overrides and final re-render."""

    def __init__(self, settings: Settings, *, renderer: DocumentRenderer | None = None) -> None:
        self._settings = settings
        self._renderer = renderer or ManifestRenderer(settings)

    def get_review_data(self, generation_id: str) -> ReviewData:
        record = db.require_generation(generation_id)
        return self._review_data(record)

    def save_override(
        self,
        generation_id: str,
        item: OverrideInput,
        edited_by: str | None = None,
    ) -> ReviewData:
        return self.save_batch_overrides(generation_id, [item], edited_by)

    def save_batch_overrides(
        self,
        generation_id: str,
        items: list[OverrideInput],
        edited_by: str | None = None,
    ) -> ReviewData:
        if not 1 <= len(items) <= MAX_BATCH_OVERRIDES:
            raise ValueError(f"Send between 1 and {MAX_BATCH_OVERRIDES} overrides per batch.")

        record = db.require_generation(generation_id)
        targets = {
            field.field_key: field for section in self._review_data(record).sections for field in section.fields
        }
        edited_at = datetime.now(timezone.utc).isoformat()
        overrides = dict(record.overrides)
        for item in items:
            target = targets.get(item.field_key)
            if target is None:
                raise OverrideTargetError(f"Campo nao encontrado para override: {item.field_key}")
            overrides[item.field_key] = FieldOverride(
                field_name=target.field_name,
                section_name=target.section_name,
                activity_index=target.activity_index,
                responsible_index=target.responsible_index,
                original_value=target.original_value,
                new_value=item.new_value,
                reason=item.reason,
                edited_at=edited_at,
                edited_by=edited_by,
            )

        with generation_scope(generation_id):
            saved = db.save_overrides(generation_id, overrides)
            logger.info(
                "overrides_saved",
                extra={"event": "overrides_saved", "count": len(items), "total_overrides": len(overrides)},
            )
        return self._review_data(saved)

    def remove_override(self, generation_id: str, field_key: str) -> ReviewData:
        record = db.require_generation(generation_id)
        if field_key not in record.overrides:
            return self._review_data(record)
        overrides = {key: value for key, value in record.overrides.items() if key != field_key}
        with generation_scope(generation_id):
            saved = db.save_overrides(generation_id, overrides)
            logger.info("override_removed", extra={"event": "override_removed", "field_key": field_key})
        return self._review_data(saved)

    def finalize_review(self, generation_id: str) -> FinalizeResult:
        record = db.require_generation(generation_id)
        ensure_not_running(record)
        context = stored_slice(record, "context", GenerationContext)
        if context is None:
            raise ReprocessPreconditionError("Contexto da geracao nao encontrado para re-render.")
        normalization = stored_slice(record, "normalization", NormalizationOutput)
        if normalization is None:
            raise ReprocessPreconditionError("NormalizationOutput ausente para finalizacao.")

        review = self._review_data(record)
        placeholder_map = apply_overrides(build_placeholder_map(normalization), record.overrides)

        with generation_scope(generation_id):
            rendered = self._renderer.render(context.template_path, placeholder_map, generation_id)
            review_state = dict(record.partial_results.get("review") or {})
            review_state.update(
                edit_percentage=review.edit_percentage,
                quality_alert=review.quality_alert,
                last_finalized_at=datetime.now(timezone.utc).isoformat(),
            )
            db.save_generation(
                record.with_partial(
                    {"placeholder_map": placeholder_map, "review": review_state},
                    status="completed",
                    progress=100,
                    current_step=STEP_REVIEW_FINALIZED,
                    error_message=None,
                    output_file_path=rendered.file_path,
                )
            )
            logger.info(
                "review_finalized",
                extra={"event": "review_finalized", "edit_percentage": round(review.edit_percentage, 2)},
            )

        return FinalizeResult(
            generation_id=generation_id,
            file_path=rendered.file_path,
            edit_percentage=review.edit_percentage,
            quality_alert=review.quality_alert,
        )

    def _review_data(self, record: GenerationRecord) -> ReviewData:
        normalization = stored_slice(record, "normalization", NormalizationOutput) or NormalizationOutput()
        extraction = stored_slice(record, "extraction", ExtractionOutput)
        report = stored_slice(record, "validation_report", ValidationReport) or ValidationReport()
        context = stored_slice(record, "context", GenerationContext)

        placeholder_map = apply_overrides(build_placeholder_map(normalization), record.overrides)
        fields = self._review_fields(normalization, extraction, report, placeholder_map, record.overrides)
        sections = self._group_sections(fields)

        total_fields = len(fields)
        edit_percentage = (len(record.overrides) / total_fields) * 100 if total_fields else 0.0
        quality_alert = edit_percentage > self._settings.review_quality_alert_ratio * 100
        if quality_alert:
            logger.warning(
                "review_quality_alert",
                extra={
                    "event": "review_quality_alert",
                    "generation_id": record.id,
                    "edit_percentage": round(edit_percentage, 2),
                    "overridden_fields": len(record.overrides),
                    "total_fields": total_fields,
                },
            )

        return ReviewData(
            generation_id=record.id,
            project_id=record.project_id,
            period_key=context.period_key if context else None,
            status=record.status,
            overall_score=report.overall_score,
            sections=sections,
            validation_report=report,
            metadata=stored_slice(record, "metadata", GenerationMetadata),
            overrides=record.overrides,
            has_output=bool(record.output_file_path),
            output_file_path=record.output_file_path,
            quality_alert=quality_alert,
            edit_percentage=edit_percentage,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _review_fields(
        normalization: NormalizationOutput,
        extraction: ExtractionOutput | None,
        report: ValidationReport,
        placeholder_map: dict[str, Any],
        overrides: dict[str, FieldOverride],
    ) -> list[ReviewField]:
        normalized: dict[str, NormalizedFieldResult] = {field.field_name: field for field in normalization.all_fields()}
        extracted: dict[str, FieldResult] = (
            {field.field_name: field for field in extraction.all_fields()} if extraction else {}
        )

        def build(
            key: FieldKey,
            *,
            section_name: str,
            label: str,
            original_value: Any,
            confidence: float,
            evidence: list[Evidence],
            is_required: bool,
            field_type: str,
        ) -> ReviewField:
            field_key = key.render()
            override = overrides.get(field_key)
            value = override.new_value if override else get_field_value(placeholder_map, key)
            return ReviewField(
                field_key=field_key,
                field_name=key.name,
                section_name=section_name,
                activity_index=key.activity_index,
                responsible_index=key.responsible_index,
                label=label,
                value=value,
                original_value=original_value,
                confidence=confidence,
                status="filled" if is_filled(value) else "pending",
                evidence=evidence,
                issues=[
                    issue
                    for issue in report.issues
                    if match_issue(issue, key.name, key.activity_index, key.responsible_index)
                ],
                has_override=override is not None,
                override=override,
                is_required=is_required,
                field_type=field_type,
            )

        fields: list[ReviewField] = []
        for name in SCALAR_FIELDS:
            norm, ext = normalized.get(name), extracted.get(name)
            original = norm.original_value if norm and norm.original_value is not None else (ext.value if ext else None)
            fields.append(
                build(
                    FieldKey(name),
                    section_name=section_for_field(name),
                    label=label_for_field(name),
                    original_value=original,
                    confidence=norm.confidence if norm else (ext.confidence if ext else 0.0),
                    evidence=list(ext.evidence) if ext else [],
                    is_required=name in REQUIRED_FIELDS,
                    field_type="simple",
                )
            )

        norm_activities, ext_activities = normalized.get("ATIVIDADES"), extracted.get("ATIVIDADES")
        confidence = norm_activities.confidence if norm_activities else (
            ext_activities.confidence if ext_activities else 0.0
        )
        original_rows = norm_activities.original_value if norm_activities else None
        extracted_rows = ext_activities.value if ext_activities else None
        all_evidence = list(ext_activities.evidence) if ext_activities else []

        for activity_index, activity in enumerate(placeholder_map.get("ATIVIDADES") or []):
            evidence = [all_evidence[activity_index]] if activity_index < len(all_evidence) else all_evidence
            for name in ACTIVITY_FIELDS:
                original = _row_value(original_rows, activity_index, name)
                if original is None:
                    original = _row_value(extracted_rows, activity_index, name)
                fields.append(
                    build(
                        FieldKey(name, activity_index),
                        section_name="atividades",
                        label=f"{label_for_field(name)} {activity_index + 1}",
                        original_value=original,
                        confidence=confidence,
                        evidence=evidence,
                        is_required=name in REQUIRED_ACTIVITY_FIELDS,
                        field_type="activity",
                    )
                )

            original_people = _row_value(original_rows, activity_index, "RESPONSAVEIS")
            extracted_people = _row_value(extracted_rows, activity_index, "RESPONSAVEIS")
            for responsible_index, _person in enumerate(activity.get("RESPONSAVEIS") or []):
                for name in RESPONSIBLE_FIELDS:
                    original = _row_value(original_people, responsible_index, name)
                    if original is None:
                        original = _row_value(extracted_people, responsible_index, name)
                    fields.append(
                        build(
                            FieldKey(name, activity_index, responsible_index),
                            section_name="atividades",
                            label=f"{label_for_field(name)} {activity_index + 1}.{responsible_index + 1}",
                            original_value=original,
                            confidence=confidence,
                            evidence=evidence,
                            is_required=name in REQUIRED_RESPONSIBLE_FIELDS,
                            field_type="responsible",
                        )
                    )
        return fields

    @staticmethod
    def _group_sections(fields: list[ReviewField]) -> list[ReviewSection]:
        sections: list[ReviewSection] = []
        for section_name in SECTION_ORDER:
            members = [field for field in fields if field.section_name == section_name]
            if not members:
                continue
            issues = [issue for field in members for issue in field.issues]
            filled = sum(1 for field in members if field.status == "filled")
            sections.append(
                ReviewSection(
                    section_name=section_name,
                    label=SECTION_LABELS[section_name],
                    fields=members,
                    section_score=sum(field.confidence for field in members) / len(members),
                    total_fields=len(members),
                    filled_fields=filled,
                    pending_fields=len(members) - filled,
                    overridden_fields=sum(1 for field in members if field.has_override),
                    issue_count=IssueCount(
                        errors=sum(1 for issue in issues if issue.severity == "error"),
                        warnings=sum(1 for issue in issues if issue.severity == "warning"),
                        info=sum(1 for issue in issues if issue.severity == "info"),
                    ),
                )
            )
        return sections
