from __future__ import annotations

from typing import Any, Callable

from fastapi import HTTPException

from rda.completion import CompletionError
from rda.db import GenerationNotFoundError
from rda.embeddings import EmbeddingProviderError, EmbeddingService
from rda.extraction import ContextValidationError
from rda.orchestrator import GenerationOrchestrator
from rda.rendering import RenderError
from rda.reprocessing import ReprocessingService, ReprocessPreconditionError
from rda.review import OverrideTargetError, ReviewService
from rda.schemas import GenerationRecord
from rda.storage import StorageError

OrchestratorGetter = Callable[[], GenerationOrchestrator]
ReprocessingServiceGetter = Callable[[], ReprocessingService]
ReviewServiceGetter = Callable[[], ReviewService]
EmbeddingServiceGetter = Callable[[], EmbeddingService]

UPSTREAM_ERRORS = (CompletionError, RenderError, StorageError, EmbeddingProviderError)
HANDLED_ERRORS = (GenerationNotFoundError, ReprocessPreconditionError, ValueError, *UPSTREAM_ERRORS)


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, GenerationNotFoundError):
        return HTTPException(status_code=404, detail="Generation not found")
    if isinstance(exc, ReprocessPreconditionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ContextValidationError, OverrideTargetError, ValueError)):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=502, detail={"message": "Upstream collaborator failed.", "error": str(exc)})


def serialize_generation(record: GenerationRecord, *, include_partial: bool = False) -> dict[str, Any]:
    payload = record.model_dump(mode="json", exclude={"partial_results"})
    payload["available_results"] = sorted(record.partial_results.keys())
    if include_partial:
        payload["partial_results"] = record.partial_results
    return payload
