from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from rda import db
from rda.config import Settings
from rda.db import GenerationNotFoundError
from rda.extraction import FieldExtractor, parse_context
from rda.normalization import Normalizer
from rda.observability import bind_stage, generation_scope
from rda.overrides import apply_overrides
from rda.placeholders import build_placeholder_map
from rda.rendering import DocumentRenderer, ManifestRenderer
from rda.schemas import (
    ExtractionOutput,
    GenerationMetadata,
    GenerationRecord,
    NormalizationOutput,
    StageTokens,
    StepDurations,
    TokenUsage,
)
from rda.sections import STEP_FAILED, STEP_VALIDATION_FAILED, checkpoint_progress
from rda.validation import Validator

logger = logging.getLogger("rda.orchestrator")

VALIDATION_BLOCKED_MESSAGE = "Validacao bloqueou a geracao. Revise os campos pendentes."

__all__ = ["GenerationNotFoundError", "GenerationOrchestrator", "VALIDATION_BLOCKED_MESSAGE"]

SliceModel = TypeVar("SliceModel", bound=BaseModel)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def stored_slice(record: GenerationRecord, key: str, model: type[SliceModel]) -> SliceModel | None:
    raw = record.partial_results.get(key)
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError:
        return None


class GenerationOrchestrator:
    """Runs extraction, normalization, validation, formatting and rendering for one generation.

    Every stage writes its slice into `partial_results` and persists the record before the
    next stage starts. Re-running a generation reuses stored extraction/normalization slices
    unless `resume=False`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        extractor: FieldExtractor | None = None,
        normalizer: Normalizer | None = None,
        validator: Validator | None = None,
        renderer: DocumentRenderer | None = None,
    ) -> None:
        self._settings = settings
        self._extractor = extractor or FieldExtractor(settings)
        self._normalizer = normalizer or Normalizer(settings)
        self._validator = validator or Validator(settings)
        self._renderer = renderer or ManifestRenderer(settings)

    def run(self, generation_id: str, *, resume: bool = True) -> GenerationRecord:
        record = db.require_generation(generation_id)
        if record.status == "cancelled":
            logger.info("generation_skipped", extra={"event": "generation_skipped", "generation_id": generation_id})
            return record

        with generation_scope(generation_id):
            try:
                return self._execute(record, resume=resume)
            except Exception as exc:
                logger.exception(
                    "generation_failed",
                    extra={"event": "generation_failed", "error_type": type(exc).__name__},
                )
                return self._fail(generation_id, exc)

    def cancel(self, generation_id: str) -> GenerationRecord:
        record = db.require_generation(generation_id)
        if record.is_terminal:
            return record
        with generation_scope(generation_id):
            logger.info("generation_cancelled", extra={"event": "generation_cancelled"})
            return db.save_generation(record.with_updates(status="cancelled", current_step="cancelled"))

    def _checkpoint(self, record: GenerationRecord, step: str, patch: dict[str, Any] | None = None) -> GenerationRecord:
        bind_stage(step)
        saved = db.save_generation(
            record.with_partial(patch or {}, current_step=step, progress=checkpoint_progress(step))
        )
        logger.info(
            "generation_checkpoint",
            extra={"event": "generation_checkpoint", "step": step, "progress": saved.progress, "version": saved.version},
        )
        return saved

    def _execute(self, record: GenerationRecord, *, resume: bool) -> GenerationRecord:
        started = time.perf_counter()
        durations: dict[str, int] = {}
        context = parse_context(record.partial_results.get("context"))

        record = self._checkpoint(record.with_updates(status="processing", error_message=None), "pipeline_start")

        extraction = stored_slice(record, "extraction", ExtractionOutput) if resume else None
        normalization = stored_slice(record, "normalization", NormalizationOutput) if extraction is not None else None

        if extraction is None:
            record = self._checkpoint(record, "extractor_running")
            stage_started = time.perf_counter()
            extraction = self._extractor.extract(context)
            durations["extractor"] = _elapsed_ms(stage_started)
            record = self._checkpoint(record, "extractor_done", {"extraction": extraction.model_dump(mode="json")})

        if normalization is None:
            record = self._checkpoint(record, "normalizer_running")
            stage_started = time.perf_counter()
            normalization = self._normalizer.normalize(extraction, context.filling_guide)
            durations["normalizer"] = _elapsed_ms(stage_started)
            record = self._checkpoint(
                record, "normalizer_done", {"normalization": normalization.model_dump(mode="json")}
            )

        record = self._checkpoint(record, "validator_running")
        stage_started = time.perf_counter()
        report = self._validator.validate(normalization, context.placeholders)
        durations["validator"] = _elapsed_ms(stage_started)
        record = self._checkpoint(record, "validator_done", {"validation_report": report.model_dump(mode="json")})

        if not report.approved:
            logger.warning(
                "generation_validation_blocked",
                extra={"event": "generation_validation_blocked", "overall_score": report.overall_score},
            )
            return db.save_generation(
                record.with_updates(
                    status="failed",
                    progress=100,
                    current_step=STEP_VALIDATION_FAILED,
                    error_message=VALIDATION_BLOCKED_MESSAGE,
                )
            )

        record = self._checkpoint(record, "formatter_running")
        stage_started = time.perf_counter()
        placeholder_map = apply_overrides(build_placeholder_map(normalization), record.overrides)
        durations["formatter"] = _elapsed_ms(stage_started)
        record = self._checkpoint(record, "formatter_done", {"placeholder_map": placeholder_map})

        record = self._checkpoint(record, "docx_rendering")
        stage_started = time.perf_counter()
        rendered = self._renderer.render(context.template_path, placeholder_map, record.id)
        durations["render"] = _elapsed_ms(stage_started)

        metadata = GenerationMetadata(
            model_version=self._settings.model_version,
            schema_version=self._settings.schema_version,
            template_id=record.template_id,
            tokens_used=StageTokens(
                extractor=extraction.total_tokens,
                normalizer=normalization.total_tokens,
                validator=TokenUsage(),
                total=extraction.total_tokens.total + normalization.total_tokens.total,
            ),
            validation_report=report,
            total_duration=_elapsed_ms(started),
            per_step=StepDurations(**durations),
            retry_count=0,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )
        completed = db.save_generation(
            record.with_partial(
                {"metadata": metadata.model_dump(mode="json")},
                status="completed",
                progress=checkpoint_progress("completed"),
                current_step="completed",
                output_file_path=rendered.file_path,
            )
        )
        logger.info(
            "generation_completed",
            extra={
                "event": "generation_completed",
                "output_file_path": rendered.file_path,
                "duration_ms": metadata.total_duration,
            },
        )
        return completed

    def _fail(self, generation_id: str, exc: Exception) -> GenerationRecord:
        current = db.require_generation(generation_id)
        return db.save_generation(
            current.with_updates(status="failed", progress=100, current_step=STEP_FAILED, error_message=str(exc))
        )
