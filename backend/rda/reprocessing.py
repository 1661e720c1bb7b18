from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Iterable, TypeVar

from pydantic import BaseModel

from rda import db
from rda.config import Settings
from rda.extraction import FieldExtractor
from rda.normalization import Normalizer
from rda.observability import bind_stage, generation_scope
from rda.orchestrator import stored_slice
from rda.overrides import apply_overrides
from rda.placeholders import build_placeholder_map
from rda.schemas import (
    ExtractionOutput,
    FieldResult,
    GenerationContext,
    GenerationRecord,
    NormalizationOutput,
    NormalizedFieldResult,
    SectionExtraction,
    SectionNormalization,
    TokenUsage,
    ValidationReport,
)
from rda.sections import REPORT_SECTION, SECTION_ORDER, STEP_REVIEW_REPROCESSED, fields_for_sections
from rda.validation import Validator

logger = logging.getLogger("rda.reprocessing")

MAX_SECTIONS = len(SECTION_ORDER)

FieldT = TypeVar("FieldT", bound=FieldResult)


class ReprocessPreconditionError(RuntimeError):
    """Raised when a generation is mid-run or lacks the stored slices a reprocessing run needs."""


def ensure_not_running(record: GenerationRecord) -> None:
    """One active run per generation: refuse to touch a record the orchestrator is processing."""
    if record.status == "processing":
        raise ReprocessPreconditionError(
            f"Geracao em processamento (etapa {record.current_step}); aguarde a conclusao."
        )


class ReprocessResult(BaseModel):
    generation_id: str
    sections: list[str]
    validation_score: float
    skipped: bool = False


def merge_fields(previous: list[FieldT], fresh: list[FieldT], selected: set[str]) -> list[FieldT]:
    """Fold fresh fields into the prior list by name.

    Prior positions are kept. A selected name takes the fresh version when the fresh run
    produced it; unselected names always keep the prior version. Selected fresh names
    absent from the prior list are appended once, in fresh order.
    """
    fresh_by_name = {field.field_name: field for field in fresh}
    merged = [
        fresh_by_name[field.field_name]
        if field.field_name in selected and field.field_name in fresh_by_name
        else field
        for field in previous
    ]
    known = {field.field_name for field in previous}
    for field in fresh:
        if field.field_name in selected and field.field_name not in known:
            merged.append(field)
            known.add(field.field_name)
    return merged


def _sum_tokens(usages: Iterable[TokenUsage]) -> TokenUsage:
    total = TokenUsage()
    for usage in usages:
        total = total + usage
    return total


def _validate_sections(sections: list[str]) -> list[str]:
    unique = list(dict.fromkeys(sections))
    if not 1 <= len(unique) <= MAX_SECTIONS:
        raise ValueError(f"Select between 1 and {MAX_SECTIONS} sections to reprocess.")
    fields_for_sections(unique)
    return unique


class ReprocessingService:
    def __init__(
        self,
        settings: Settings,
        *,
        extractor: FieldExtractor | None = None,
        normalizer: Normalizer | None = None,
        validator: Validator | None = None,
    ) -> None:
        self._settings = settings
        self._extractor = extractor or FieldExtractor(settings)
        self._normalizer = normalizer or Normalizer(settings)
        self._validator = validator or Validator(settings)

    def reprocess_sections(self, generation_id: str, sections: list[str], reason: str | None = None) -> ReprocessResult:
        sections = _validate_sections(sections)
        record = db.require_generation(generation_id)
        ensure_not_running(record)

        if record.status == "cancelled":
            report = stored_slice(record, "validation_report", ValidationReport)
            return ReprocessResult(
                generation_id=generation_id,
                sections=sections,
                validation_score=report.overall_score if report else 0.0,
                skipped=True,
            )

        context = stored_slice(record, "context", GenerationContext)
        if context is None:
            raise ReprocessPreconditionError("Contexto da geracao nao encontrado.")
        previous_normalization = stored_slice(record, "normalization", NormalizationOutput)
        if previous_normalization is None:
            raise ReprocessPreconditionError("NormalizationOutput nao encontrado para reprocessar.")
        previous_extraction = stored_slice(record, "extraction", ExtractionOutput)
        if previous_extraction is None:
            raise ReprocessPreconditionError("ExtractionOutput nao encontrado para reprocessar.")

        with generation_scope(generation_id):
            bind_stage("reprocessing")
            selected = fields_for_sections(sections)
            fresh_extractions = [self._extractor.extract_section(context, name) for name in sections]
            fresh_normalizations = [
                self._normalizer.normalize_section(extraction, context.filling_guide, name)
                for extraction, name in zip(fresh_extractions, sections)
            ]

            extraction = self._merged_extraction(previous_extraction, fresh_extractions, selected)
            normalization = self._merged_normalization(previous_normalization, fresh_normalizations, selected)
            report = self._validator.validate(normalization, context.placeholders)
            placeholder_map = apply_overrides(build_placeholder_map(normalization), record.overrides)

            review_state = dict(record.partial_results.get("review") or {})
            review_state.update(
                last_reprocessed_at=datetime.now(timezone.utc).isoformat(),
                last_reprocess_reason=reason,
            )
            db.save_generation(
                record.with_partial(
                    {
                        "extraction": extraction.model_dump(mode="json"),
                        "normalization": normalization.model_dump(mode="json"),
                        "validation_report": report.model_dump(mode="json"),
                        "placeholder_map": placeholder_map,
                        "review": review_state,
                    },
                    status="completed",
                    progress=100,
                    current_step=STEP_REVIEW_REPROCESSED,
                    error_message=None,
                )
            )
            logger.info(
                "sections_reprocessed",
                extra={
                    "event": "sections_reprocessed",
                    "sections": sections,
                    "overall_score": round(report.overall_score, 4),
                },
            )

        return ReprocessResult(generation_id=generation_id, sections=sections, validation_score=report.overall_score)

    @staticmethod
    def _merged_extraction(
        previous: ExtractionOutput, fresh: list[ExtractionOutput], selected: set[str]
    ) -> ExtractionOutput:
        fields = merge_fields(
            previous.all_fields(),
            [field for output in fresh for field in output.all_fields()],
            selected,
        )
        tokens = _sum_tokens(output.total_tokens for output in fresh)
        duration = sum(output.total_duration for output in fresh)
        chunks_queried = previous.sections[0].chunks_queried if previous.sections else 0
        return ExtractionOutput(
            sections=[
                SectionExtraction(
                    section_name=previous.sections[0].section_name if previous.sections else REPORT_SECTION,
                    fields=fields,
                    chunks_queried=chunks_queried,
                    tokens_used=tokens,
                    duration=duration,
                )
            ],
            total_tokens=tokens,
            total_duration=duration,
        )

    @staticmethod
    def _merged_normalization(
        previous: NormalizationOutput, fresh: list[NormalizationOutput], selected: set[str]
    ) -> NormalizationOutput:
        fields: list[NormalizedFieldResult] = merge_fields(
            previous.all_fields(),
            [field for output in fresh for field in output.all_fields()],
            selected,
        )
        tokens = _sum_tokens(output.total_tokens for output in fresh)
        duration = sum(output.total_duration for output in fresh)
        return NormalizationOutput(
            sections=[
                SectionNormalization(
                    section_name=previous.sections[0].section_name if previous.sections else REPORT_SECTION,
                    fields=fields,
                    tokens_used=tokens,
                    duration=duration,
                )
            ],
            total_tokens=tokens,
            total_duration=duration,
        )
