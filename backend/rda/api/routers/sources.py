from __future__ import annotations

from fastapi import APIRouter

from rda.api.contracts import ChunkPreviewRequest, IngestRequest
from rda.api.services.runtime import HANDLED_ERRORS, EmbeddingServiceGetter, to_http_error
from rda.chunking import chunk_text
from rda.config import settings
from rda.db import list_chunks
from rda.ingestion import IngestionSource, chunking_options, ingest_sources
from rda.schemas import ChunkInput, ChunkingOptions


def build_sources_router(*, get_embedding_service: EmbeddingServiceGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/chunks/preview")
    def chunk_preview_endpoint(payload: ChunkPreviewRequest) -> dict[str, object]:
        defaults = chunking_options(settings)
        overrides = {
            key: value
            for key, value in {
                "target_size": payload.target_size,
                "max_size": payload.max_size,
                "overlap": payload.overlap,
            }.items()
            if value is not None
        }
        try:
            options = ChunkingOptions.model_validate({**defaults.model_dump(), **overrides})
        except HANDLED_ERRORS as exc:
            raise to_http_error(exc) from exc

        chunks = chunk_text(
            ChunkInput(text=payload.text, source_type=payload.source_type, document_name=payload.document_name),
            options,
        )
        return {
            "chunk_count": len(chunks),
            "total_tokens": sum(chunk.token_count for chunk in chunks),
            "chunks": [chunk.model_dump(mode="json") for chunk in chunks],
        }

    @router.post("/sources/ingest")
    def ingest_sources_endpoint(payload: IngestRequest) -> dict[str, object]:
        sources = [
            IngestionSource(
                source_id=item.source_id,
                chunk_input=ChunkInput(
                    text=item.text,
                    source_type=item.source_type,
                    document_name=item.document_name,
                    document_id=item.document_id,
                    wiki_page_id=item.wiki_page_id,
                ),
            )
            for item in payload.sources
        ]
        outcomes = ingest_sources(sources, settings=settings, embedding_service=get_embedding_service())
        return {
            "sources": [
                {
                    "source_id": outcome.source_id,
                    "ok": outcome.ok,
                    "chunks_stored": outcome.chunks_stored,
                    "embedding_providers": outcome.embedding_providers,
                    "warnings": outcome.warnings,
                    "error": outcome.error,
                }
                for outcome in outcomes
            ],
            "chunks_stored": sum(outcome.chunks_stored for outcome in outcomes),
        }

    @router.get("/sources/{source_id}/chunks")
    def list_source_chunks_endpoint(source_id: str) -> dict[str, object]:
        chunks = list_chunks(source_id)
        for chunk in chunks:
            chunk["embedding_dim"] = len(chunk.pop("embedding"))
        return {"source_id": source_id, "chunk_count": len(chunks), "chunks": chunks}

    return router
