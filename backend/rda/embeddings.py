"""Chunk embeddings for the source index.

Vectors come from Amazon Titan on Bedrock or from deterministic feature hashing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import logging
import math
import re
import threading
from typing import Any, Protocol

from rda.config import Settings
from rda.schemas import DocumentChunk

logger = logging.getLogger("rda.embeddings")

EMBEDDING_MODES = ("hash", "bedrock", "hybrid")
MIN_EMBEDDING_DIM = 8
# Titan text v2 request limit.
MAX_INPUT_CHARS = 50_000

_WORD_RE = re.compile(r"\w+")
_WHITESPACE_RE = re.compile(r"\s+")


class EmbeddingProviderError(RuntimeError):
    """Raised when an embedding provider cannot produce vectors."""


class Embedder(Protocol):
    def embed(self, text: str, dim: int) -> list[float]: ...


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    provider: str
    fallback_used: bool = False
    warning: dict[str, object] | None = None


@dataclass
class ChunkEmbeddings:
    """Vectors for one source's chunks, in chunk order."""

    vectors: list[list[float]] = field(default_factory=list)
    providers: dict[str, int] = field(default_factory=dict)
    warnings: list[dict[str, object]] = field(default_factory=list)
    input_tokens: int = 0

    @property
    def primary_provider(self) -> str:
        if not self.providers:
            return "hash"
        return max(self.providers, key=self.providers.__getitem__)

    def add(self, result: EmbeddingResult, token_count: int) -> None:
        self.vectors.append(result.vector)
        self.providers[result.provider] = self.providers.get(result.provider, 0) + 1
        self.input_tokens += token_count
        if result.warning is not None and result.warning not in self.warnings:
            self.warnings.append(result.warning)


def prepare_input(text: str) -> str:
    """Drop NUL bytes, collapse whitespace and cap the length sent to the provider."""
    cleaned = _WHITESPACE_RE.sub(" ", text.replace("\x00", " ")).strip()
    return cleaned[:MAX_INPUT_CHARS]


def unit_length(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [value / norm for value in vector]


def embed_text(text: str, dim: int) -> list[float]:
    """Feature-hash lowercase word tokens into a signed unit vector of size `dim`."""
    if dim < MIN_EMBEDDING_DIM:
        raise ValueError(f"embedding_dim must be >= {MIN_EMBEDDING_DIM}")
    vector = [0.0] * dim
    for token in _WORD_RE.findall(text.lower()):
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        slot = int.from_bytes(digest[:4], "big") % dim
        vector[slot] += 1.0 if digest[4] % 2 == 0 else -1.0
    return unit_length(vector)


def _as_vector(value: object) -> list[float] | None:
    if isinstance(value, list) and value and all(isinstance(item, (int, float)) for item in value):
        return [float(item) for item in value]
    return None


def _vector_from_payload(payload: Any) -> list[float]:
    candidates: list[object] = []
    if isinstance(payload, dict):
        candidates.append(payload.get("embedding"))
        nested = payload.get("embeddings")
        if isinstance(nested, list) and nested:
            first = nested[0]
            candidates.append(first.get("embedding") if isinstance(first, dict) else first)

    for candidate in candidates:
        vector = _as_vector(candidate)
        if vector is not None:
            return vector
    raise EmbeddingProviderError("Bedrock embedding response did not contain an embedding vector.")


def _read_json_body(response: dict[str, Any]) -> Any:
    body = response.get("body")
    if body is None:
        raise EmbeddingProviderError("Bedrock embedding response body is missing.")
    raw = body.read() if hasattr(body, "read") else body
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise EmbeddingProviderError("Bedrock embedding response was not valid JSON.") from exc


class BedrockEmbeddingClient:
    """Titan text embeddings through `bedrock-runtime.invoke_model`."""

    def __init__(self, *, aws_region: str, model_id: str, client: Any | None = None) -> None:
        self.model_id = model_id
        self._aws_region = aws_region
        self._client = client
        self._client_lock = threading.Lock()

    def embed(self, text: str, dim: int) -> list[float]:
        request: dict[str, object] = {"inputText": text, "normalize": True}
        if dim > 0:
            request["dimensions"] = dim
        response = self._runtime().invoke_model(
            modelId=self.model_id,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(request).encode("utf-8"),
        )
        return unit_length(_vector_from_payload(_read_json_body(response)))

    def _runtime(self) -> Any:
        with self._client_lock:
            if self._client is None:
                try:
                    import boto3  # type: ignore
                except ImportError as exc:
                    raise EmbeddingProviderError("boto3 is required for Bedrock embeddings.") from exc
                self._client = boto3.client("bedrock-runtime", region_name=self._aws_region)
            return self._client


class EmbeddingService:
    """Embeds chunk text in `hash`, `bedrock` or `hybrid` mode.

    Hybrid mode answers with hash vectors whenever Bedrock fails, and after the
    first failure it stops calling Bedrock for the lifetime of the service.
    The service is shared by ingestion worker threads.
    """

    def __init__(
        self,
        *,
        mode: str,
        aws_region: str,
        bedrock_model_id: str,
        bedrock_client: Embedder | None = None,
    ) -> None:
        normalized_mode = mode.strip().lower()
        if normalized_mode not in EMBEDDING_MODES:
            raise ValueError(f"Embedding mode must be one of: {', '.join(EMBEDDING_MODES)}.")
        self.mode = normalized_mode
        self._aws_region = aws_region
        self._model_id = bedrock_model_id.strip()
        self._bedrock = bedrock_client
        self._bedrock_error: str | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingService":
        return cls(
            mode=settings.embedding_mode,
            aws_region=settings.aws_region,
            bedrock_model_id=settings.bedrock_embedding_model_id,
        )

    def describe(self) -> dict[str, object]:
        return {
            "mode": self.mode,
            "bedrock_model_id": self._model_id or None,
            "bedrock_available": self._bedrock_error is None,
        }

    def embed(self, text: str, dim: int) -> EmbeddingResult:
        if self.mode == "hash":
            return EmbeddingResult(vector=embed_text(text, dim), provider="hash")

        try:
            return EmbeddingResult(vector=self._bedrock_vector(text, dim), provider="bedrock")
        except EmbeddingProviderError as exc:
            if self.mode == "bedrock":
                raise
            return EmbeddingResult(
                vector=embed_text(text, dim),
                provider="hash",
                fallback_used=True,
                warning={
                    "code": "embedding_provider_fallback",
                    "message": "Bedrock embedding unavailable; using deterministic hash embeddings.",
                    "details": {"mode": self.mode, "fallback_provider": "hash", "error": str(exc)},
                },
            )

    def embed_chunks(self, chunks: list[DocumentChunk], dim: int) -> ChunkEmbeddings:
        batch = ChunkEmbeddings()
        for chunk in chunks:
            batch.add(self.embed(prepare_input(chunk.content), dim), chunk.token_count)
        return batch

    def _bedrock_vector(self, text: str, dim: int) -> list[float]:
        if not self._model_id:
            raise EmbeddingProviderError("Bedrock embedding model ID is not configured.")
        with self._lock:
            if self._bedrock_error is not None:
                raise EmbeddingProviderError(self._bedrock_error)
            if self._bedrock is None:
                self._bedrock = BedrockEmbeddingClient(aws_region=self._aws_region, model_id=self._model_id)
            client = self._bedrock

        try:
            return client.embed(text, dim)
        except Exception as exc:
            reason = str(exc) if isinstance(exc, EmbeddingProviderError) else f"Bedrock embedding failed: {exc}"
            with self._lock:
                self._bedrock_error = reason
            logger.warning(
                "embedding_provider_bedrock_unavailable",
                extra={
                    "event": "embedding_provider_bedrock_unavailable",
                    "mode": self.mode,
                    "model_id": self._model_id,
                    "error": reason,
                },
            )
            raise EmbeddingProviderError(reason) from exc
