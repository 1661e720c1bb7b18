import threading
from pathlib import Path

from rda import db
from rda.config import Settings, settings
from rda.embeddings import EmbeddingService
from rda.ingestion import IngestionSource, ingest_sources
from rda.schemas import ChunkInput, ChunkingOptions, DocumentChunk


def _hash_service() -> EmbeddingService:
    return EmbeddingService(mode="hash", aws_region="us-east-1", bedrock_model_id="")


def _source(source_id: str, text: str) -> IngestionSource:
    return IngestionSource(
        source_id=source_id,
        chunk_input=ChunkInput(text=text, source_type="wiki", document_name=f"{source_id}.md"),
    )


class FakeStore:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: dict[str, tuple[list[DocumentChunk], list[list[float]], str]] = {}
        self.threads: set[str] = set()
        self._lock = threading.Lock()

    def __call__(
        self,
        source_id: str,
        chunks: list[DocumentChunk],
        embeddings: list[list[float]],
        embedding_provider: str = "hash",
    ) -> int:
        with self._lock:
            self.threads.add(threading.current_thread().name)
            if source_id in self.failing:
                raise RuntimeError(f"store unavailable for {source_id}")
            self.calls[source_id] = (chunks, embeddings, embedding_provider)
        return len(chunks)


def test_ingest_sources_keeps_input_order_and_isolates_failures() -> None:
    local_settings = Settings(ingestion_concurrency=3, embedding_dim=16)
    store = FakeStore(failing={"wiki-2"})
    sources = [_source(f"wiki-{index}", f"Pagina {index}\n\nConteudo da pagina {index}.") for index in range(5)]

    outcomes = ingest_sources(sources, settings=local_settings, embedding_service=_hash_service(), store=store)

    assert [outcome.source_id for outcome in outcomes] == [f"wiki-{index}" for index in range(5)]
    assert [outcome.ok for outcome in outcomes] == [True, True, False, True, True]
    assert outcomes[2].error == "store unavailable for wiki-2"
    assert outcomes[2].chunks_stored == 0
    assert all(outcome.chunks_stored == 1 for index, outcome in enumerate(outcomes) if index != 2)
    assert outcomes[0].embedding_providers == {"hash": 1}

    chunks, embeddings, provider = store.calls["wiki-0"]
    assert provider == "hash"
    assert len(embeddings[0]) == 16
    assert chunks[0].metadata.source_type == "wiki"


def test_ingest_sources_with_no_input_does_nothing() -> None:
    assert ingest_sources([], settings=Settings(), store=FakeStore()) == []


def test_ingest_sources_replaces_stored_chunks_per_source(tmp_path: Path) -> None:
    settings.database_url = f"sqlite:///{tmp_path}/test.db"
    settings.embedding_dim = 32
    db.init_db()
    long_text = "\n\n".join(" ".join([f"bloco{index}"] * 120) for index in range(4))
    options = ChunkingOptions(target_size=150, max_size=200, overlap=0)

    first = ingest_sources(
        [_source("doc-1", long_text), _source("doc-2", "Texto curto.")],
        settings=settings,
        embedding_service=_hash_service(),
        options=options,
    )
    assert [outcome.chunks_stored for outcome in first] == [4, 1]

    ingest_sources([_source("doc-1", "Versao nova e curta.")], settings=settings, embedding_service=_hash_service())

    stored = db.list_chunks("doc-1")
    assert len(stored) == 1
    assert stored[0]["content"] == "Versao nova e curta."
    assert stored[0]["embedding_provider"] == "hash"
    assert len(stored[0]["embedding"]) == 32
    assert stored[0]["metadata"]["document_name"] == "doc-1.md"
    assert len(db.list_chunks("doc-2")) == 1
    assert len(db.list_chunks()) == 2
