from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
import time
from typing import Callable

from rda import db
from rda.chunking import chunk_text
from rda.config import Settings
from rda.embeddings import EmbeddingService
from rda.schemas import ChunkingOptions, ChunkInput, DocumentChunk

logger = logging.getLogger("rda.ingestion")

ChunkStore = Callable[[str, list[DocumentChunk], list[list[float]], str], int]


@dataclass(frozen=True)
class IngestionSource:
    source_id: str
    chunk_input: ChunkInput


@dataclass(frozen=True)
class IngestionOutcome:
    source_id: str
    chunks_stored: int = 0
    embedding_providers: dict[str, int] = field(default_factory=dict)
    warnings: list[dict[str, object]] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunking_options(settings: Settings) -> ChunkingOptions:
    return ChunkingOptions(
        target_size=settings.chunk_target_tokens,
        max_size=settings.chunk_max_tokens,
        overlap=settings.chunk_overlap_words,
    )


def ingest_source(
    source: IngestionSource,
    *,
    settings: Settings,
    embedding_service: EmbeddingService,
    options: ChunkingOptions | None = None,
    store: ChunkStore = db.replace_source_chunks,
) -> IngestionOutcome:
    """Chunk, embed and store one source, replacing whatever was stored for its id."""
    chunks = chunk_text(source.chunk_input, options or chunking_options(settings))
    embedded = embedding_service.embed_chunks(chunks, settings.embedding_dim)
    stored = store(source.source_id, chunks, embedded.vectors, embedded.primary_provider)
    return IngestionOutcome(
        source_id=source.source_id,
        chunks_stored=stored,
        embedding_providers=embedded.providers,
        warnings=embedded.warnings,
    )


def ingest_sources(
    sources: list[IngestionSource],
    *,
    settings: Settings,
    embedding_service: EmbeddingService | None = None,
    options: ChunkingOptions | None = None,
    store: ChunkStore = db.replace_source_chunks,
) -> list[IngestionOutcome]:
    """Ingest many sources on a bounded thread pool; outcomes keep the input order.

    A failing source is reported in its outcome and does not stop the others.
    """
    if not sources:
        return []

    service = embedding_service or EmbeddingService.from_settings(settings)
    max_workers = max(1, min(settings.ingestion_concurrency, len(sources)))
    outcomes: list[IngestionOutcome | None] = [None] * len(sources)
    started = time.perf_counter()

    logger.info(
        "ingestion_started",
        extra={"event": "ingestion_started", "sources": len(sources), "workers": max_workers},
    )

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(
                ingest_source,
                source,
                settings=settings,
                embedding_service=service,
                options=options,
                store=store,
            ): index
            for index, source in enumerate(sources)
        }
        for future in as_completed(futures):
            index = futures[future]
            try:
                outcomes[index] = future.result()
            except Exception as exc:
                logger.error(
                    "ingestion_source_failed",
                    extra={
                        "event": "ingestion_source_failed",
                        "source_id": sources[index].source_id,
                        "error": str(exc),
                    },
                )
                outcomes[index] = IngestionOutcome(source_id=sources[index].source_id, error=str(exc))

    results = [outcome for outcome in outcomes if outcome is not None]
    logger.info(
        "ingestion_completed",
        extra={
            "event": "ingestion_completed",
            "sources": len(results),
            "failed": sum(1 for outcome in results if not outcome.ok),
            "chunks_stored": sum(outcome.chunks_stored for outcome in results),
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return results
