from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query
from fastapi.responses import Response

from rda.api.contracts import (
    BatchOverridesRequest,
    GenerationCreateRequest,
    OverrideRequest,
    ReprocessRequest,
)
from rda.api.services.runtime import (
    HANDLED_ERRORS,
    OrchestratorGetter,
    ReprocessingServiceGetter,
    ReviewServiceGetter,
    serialize_generation,
    to_http_error,
)
from rda.config import settings
from rda.db import create_generation, list_generations, require_generation
from rda.extraction import parse_context
from rda.review import OverrideInput
from rda.storage import load_output_bytes


def build_generations_router(
    *,
    get_orchestrator: OrchestratorGetter,
    get_reprocessing_service: ReprocessingServiceGetter,
    get_review_service: ReviewServiceGetter,
) -> APIRouter:
    router = APIRouter()

    @router.post("/generations", status_code=201)
    def create_generation_endpoint(payload: GenerationCreateRequest) -> dict[str, object]:
        try:
            context = parse_context(payload.context)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        record = create_generation(payload.project_id, payload.template_id, context.model_dump(mode="json"))
        return serialize_generation(record)

    @router.get("/projects/{project_id}/generations")
    def list_generations_endpoint(project_id: str) -> dict[str, object]:
        return {
            "project_id": project_id,
            "generations": [serialize_generation(record) for record in list_generations(project_id)],
        }

    @router.get("/generations/{generation_id}")
    def get_generation_endpoint(
        generation_id: str,
        include_partial: bool = Query(default=False),
    ) -> dict[str, object]:
        try:
            record = require_generation(generation_id)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return serialize_generation(record, include_partial=include_partial)

    @router.get("/generations/{generation_id}/output", response_model=None)
    def download_output_endpoint(generation_id: str) -> Response:
        try:
            record = require_generation(generation_id)
            if not record.output_file_path:
                raise HTTPException(status_code=404, detail="Generation has no rendered output yet.")
            content = load_output_bytes(settings=settings, storage_path=record.output_file_path)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc

        file_name = Path(record.output_file_path).name
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
        )

    @router.post("/generations/{generation_id}/run", status_code=202)
    def run_generation_endpoint(
        generation_id: str,
        background_tasks: BackgroundTasks,
        resume: bool = Query(default=True),
    ) -> dict[str, object]:
        try:
            record = require_generation(generation_id)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        if record.status in {"processing", "cancelled"}:
            raise HTTPException(status_code=409, detail=f"Generation is {record.status}.")

        orchestrator = get_orchestrator()
        background_tasks.add_task(orchestrator.run, generation_id, resume=resume)
        return {"generation_id": generation_id, "status": "accepted"}

    @router.post("/generations/{generation_id}/cancel")
    def cancel_generation_endpoint(generation_id: str) -> dict[str, object]:
        try:
            record = get_orchestrator().cancel(generation_id)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return serialize_generation(record)

    @router.get("/generations/{generation_id}/review")
    def get_review_endpoint(generation_id: str) -> dict[str, object]:
        try:
            review = get_review_service().get_review_data(generation_id)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return review.model_dump(mode="json")

    @router.post("/generations/{generation_id}/overrides")
    def save_override_endpoint(generation_id: str, payload: OverrideRequest) -> dict[str, object]:
        item = OverrideInput(field_key=payload.field_key, new_value=payload.new_value, reason=payload.reason)
        try:
            review = get_review_service().save_override(generation_id, item, edited_by=payload.edited_by)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return review.model_dump(mode="json")

    @router.post("/generations/{generation_id}/overrides/batch")
    def save_batch_overrides_endpoint(generation_id: str, payload: BatchOverridesRequest) -> dict[str, object]:
        try:
            review = get_review_service().save_batch_overrides(
                generation_id, payload.overrides, edited_by=payload.edited_by
            )
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return review.model_dump(mode="json")

    @router.delete("/generations/{generation_id}/overrides/{field_key}")
    def remove_override_endpoint(generation_id: str, field_key: str) -> dict[str, object]:
        try:
            review = get_review_service().remove_override(generation_id, field_key)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return review.model_dump(mode="json")

    @router.post("/generations/{generation_id}/reprocess")
    def reprocess_endpoint(generation_id: str, payload: ReprocessRequest) -> dict[str, object]:
        try:
            result = get_reprocessing_service().reprocess_sections(
                generation_id, list(payload.sections), reason=payload.reason
            )
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return result.model_dump(mode="json")

    @router.post("/generations/{generation_id}/finalize")
    def finalize_endpoint(generation_id: str) -> dict[str, object]:
        try:
            result = get_review_service().finalize_review(generation_id)
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc
        return result.model_dump(mode="json")

    return router
