import json
import math

import pytest

from rda.embeddings import (
    BedrockEmbeddingClient,
    EmbeddingProviderError,
    EmbeddingService,
    embed_text,
    prepare_input,
)
from rda.schemas import ChunkMetadata, DocumentChunk


class FakeBody:
    def __init__(self, payload: object) -> None:
        self._payload = payload

    def read(self) -> bytes:
        return json.dumps(self._payload).encode("utf-8")


class FakeBedrockRuntime:
    def __init__(self, payload: object) -> None:
        self.payload = payload
        self.requests: list[dict[str, object]] = []

    def invoke_model(self, **kwargs: object) -> dict[str, object]:
        self.requests.append(kwargs)
        return {"body": FakeBody(self.payload)}


class FailingEmbeddingClient:
    def __init__(self) -> None:
        self.calls = 0

    def embed(self, text: str, dim: int) -> list[float]:
        self.calls += 1
        raise RuntimeError("bedrock unavailable")


def test_embed_text_is_deterministic_and_unit_length() -> None:
    first = embed_text("Relatorio mensal de atividades", 32)
    second = embed_text("relatorio MENSAL de atividades", 32)

    assert first == second
    assert len(first) == 32
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0)
    assert embed_text("", 16) == [0.0] * 16


def test_embed_text_rejects_tiny_dimensions() -> None:
    with pytest.raises(ValueError):
        embed_text("texto", 4)


def test_bedrock_client_normalizes_returned_vector() -> None:
    runtime = FakeBedrockRuntime({"embedding": [3.0, 4.0]})
    client = BedrockEmbeddingClient(aws_region="us-east-1", model_id="amazon.titan-embed-text-v2:0", client=runtime)

    assert client.embed("texto", 2) == [0.6, 0.8]
    body = json.loads(runtime.requests[0]["body"])
    assert body == {"inputText": "texto", "normalize": True, "dimensions": 2}
    assert runtime.requests[0]["modelId"] == "amazon.titan-embed-text-v2:0"


def test_bedrock_client_reads_nested_embeddings_payload() -> None:
    runtime = FakeBedrockRuntime({"embeddings": [{"embedding": [0.0, 2.0]}]})
    client = BedrockEmbeddingClient(aws_region="us-east-1", model_id="m", client=runtime)

    assert client.embed("texto", 0) == [0.0, 1.0]


def test_bedrock_client_rejects_payload_without_vector() -> None:
    client = BedrockEmbeddingClient(aws_region="us-east-1", model_id="m", client=FakeBedrockRuntime({"other": 1}))

    with pytest.raises(EmbeddingProviderError):
        client.embed("texto", 8)


def test_hybrid_mode_falls_back_to_hash_and_stops_calling_bedrock() -> None:
    failing = FailingEmbeddingClient()
    service = EmbeddingService(mode="hybrid", aws_region="us-east-1", bedrock_model_id="m", bedrock_client=failing)

    first = service.embed("texto", 16)
    second = service.embed("outro texto", 16)

    assert first.provider == "hash"
    assert first.fallback_used
    assert first.warning["code"] == "embedding_provider_fallback"
    assert first.vector == embed_text("texto", 16)
    assert second.provider == "hash"
    assert failing.calls == 1
    assert service.describe() == {"mode": "hybrid", "bedrock_model_id": "m", "bedrock_available": False}


def test_bedrock_mode_surfaces_provider_errors() -> None:
    service = EmbeddingService(
        mode="bedrock", aws_region="us-east-1", bedrock_model_id="m", bedrock_client=FailingEmbeddingClient()
    )

    with pytest.raises(EmbeddingProviderError, match="bedrock unavailable"):
        service.embed("texto", 16)


def test_bedrock_mode_without_model_id_is_an_error() -> None:
    service = EmbeddingService(mode="bedrock", aws_region="us-east-1", bedrock_model_id="  ")

    with pytest.raises(EmbeddingProviderError, match="not configured"):
        service.embed("texto", 16)


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        EmbeddingService(mode="faiss", aws_region="us-east-1", bedrock_model_id="m")


def test_prepare_input_collapses_whitespace_and_nul_bytes() -> None:
    assert prepare_input("  Sprint\x0012\n\n  encerrada\t ") == "Sprint 12 encerrada"
    assert len(prepare_input("a" * 60_000)) == 50_000


def test_embed_chunks_tracks_providers_and_warnings_once() -> None:
    service = EmbeddingService(
        mode="hybrid", aws_region="us-east-1", bedrock_model_id="m", bedrock_client=FailingEmbeddingClient()
    )
    chunks = [
        DocumentChunk(
            content=f"Conteudo {index}",
            chunk_index=index,
            token_count=3,
            metadata=ChunkMetadata(source_type="wiki", document_name="Notas", position=index),
        )
        for index in range(3)
    ]

    batch = service.embed_chunks(chunks, 16)

    assert len(batch.vectors) == 3
    assert batch.vectors[1] == embed_text("Conteudo 1", 16)
    assert batch.providers == {"hash": 3}
    assert batch.primary_provider == "hash"
    assert [warning["code"] for warning in batch.warnings] == ["embedding_provider_fallback"]
    assert batch.input_tokens == 9
