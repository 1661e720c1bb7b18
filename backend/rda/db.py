from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Iterator
from uuid import uuid4

from rda.config import settings
from rda.schemas import DocumentChunk, FieldOverride, GenerationRecord


class GenerationNotFoundError(RuntimeError):
    """Raised when a generation id has no stored record."""


def _database_path() -> Path:
    prefix = "sqlite:///"
    if not settings.database_url.startswith(prefix):
        raise RuntimeError("Only sqlite:/// DATABASE_URL is supported.")
    return Path(settings.database_url[len(prefix) :])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db() -> None:
    db_path = _database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS generations (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                progress INTEGER NOT NULL,
                current_step TEXT NOT NULL,
                error_message TEXT,
                partial_results_json TEXT NOT NULL,
                overrides_json TEXT NOT NULL,
                output_file_path TEXT,
                version INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_generations_project_id
                ON generations(project_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                document_name TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                token_count INTEGER NOT NULL,
                metadata_json TEXT NOT NULL,
                embedding_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_source_id ON chunks(source_id, chunk_index ASC);
            """
        )
        _ensure_column(conn, "chunks", "embedding_provider", "TEXT")


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_def: str) -> None:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing_columns = {str(row[1]) for row in rows}
    if column_name in existing_columns:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_def}")


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(_database_path())
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
        conn.commit()
    finally:
        conn.close()


def _record_from_row(row: sqlite3.Row) -> GenerationRecord:
    item = dict(row)
    item["partial_results"] = json.loads(item.pop("partial_results_json"))
    item["overrides"] = json.loads(item.pop("overrides_json"))
    return GenerationRecord.model_validate(item)


def _record_params(record: GenerationRecord) -> dict[str, Any]:
    payload = record.model_dump(mode="json")
    payload["partial_results_json"] = json.dumps(payload.pop("partial_results"), ensure_ascii=False, default=str)
    payload["overrides_json"] = json.dumps(payload.pop("overrides"), ensure_ascii=False)
    return payload


def create_generation(project_id: str, template_id: str, context: dict[str, Any] | None = None) -> GenerationRecord:
    now = _utc_now_iso()
    record = GenerationRecord(
        id=str(uuid4()),
        project_id=project_id,
        template_id=template_id,
        partial_results={"context": context} if context is not None else {},
        created_at=now,
        updated_at=now,
    )
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO generations (
                id, project_id, template_id, status, progress, current_step, error_message,
                partial_results_json, overrides_json, output_file_path, version, created_at, updated_at
            )
            VALUES (
                :id, :project_id, :template_id, :status, :progress, :current_step, :error_message,
                :partial_results_json, :overrides_json, :output_file_path, :version, :created_at, :updated_at
            )
            """,
            _record_params(record),
        )
    return record


def get_generation(generation_id: str) -> GenerationRecord | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM generations WHERE id = ?", (generation_id,)).fetchone()
    if row is None:
        return None
    return _record_from_row(row)


def require_generation(generation_id: str) -> GenerationRecord:
    record = get_generation(generation_id)
    if record is None:
        raise GenerationNotFoundError(f"Generation '{generation_id}' was not found.")
    return record


def list_generations(project_id: str) -> list[GenerationRecord]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM generations WHERE project_id = ? ORDER BY created_at DESC",
            (project_id,),
        ).fetchall()
    return [_record_from_row(row) for row in rows]


def save_generation(record: GenerationRecord) -> GenerationRecord:
    """Persist the whole record (last writer wins) and return it with a bumped version."""
    saved = record.with_updates(version=record.version + 1, updated_at=_utc_now_iso())
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE generations
            SET status = :status,
                progress = :progress,
                current_step = :current_step,
                error_message = :error_message,
                partial_results_json = :partial_results_json,
                overrides_json = :overrides_json,
                output_file_path = :output_file_path,
                version = :version,
                updated_at = :updated_at
            WHERE id = :id
            """,
            _record_params(saved),
        )
    if cursor.rowcount == 0:
        raise GenerationNotFoundError(f"Generation '{record.id}' was not found.")
    return saved


def save_overrides(generation_id: str, overrides: dict[str, FieldOverride]) -> GenerationRecord:
    record = require_generation(generation_id)
    return save_generation(record.with_updates(overrides=overrides))


def replace_source_chunks(
    source_id: str,
    chunks: list[DocumentChunk],
    embeddings: list[list[float]],
    embedding_provider: str = "hash",
) -> int:
    """Delete every row stored for `source_id`, then store the given chunks."""
    if len(chunks) != len(embeddings):
        raise ValueError("Each chunk needs exactly one embedding.")

    now = _utc_now_iso()
    rows = [
        {
            "id": str(uuid4()),
            "source_id": source_id,
            "source_type": chunk.metadata.source_type,
            "document_name": chunk.metadata.document_name,
            "chunk_index": chunk.chunk_index,
            "content": chunk.content,
            "token_count": chunk.token_count,
            "metadata_json": json.dumps(chunk.metadata.model_dump(mode="json"), ensure_ascii=False),
            "embedding_json": json.dumps(embedding),
            "embedding_provider": embedding_provider,
            "created_at": now,
        }
        for chunk, embedding in zip(chunks, embeddings)
    ]
    with get_conn() as conn:
        conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
        if rows:
            conn.executemany(
                """
                INSERT INTO chunks (
                    id, source_id, source_type, document_name, chunk_index, content, token_count,
                    metadata_json, embedding_json, embedding_provider, created_at
                )
                VALUES (
                    :id, :source_id, :source_type, :document_name, :chunk_index, :content, :token_count,
                    :metadata_json, :embedding_json, :embedding_provider, :created_at
                )
                """,
                rows,
            )
    return len(rows)


def list_chunks(source_id: str | None = None) -> list[dict[str, object]]:
    query = "SELECT * FROM chunks"
    params: tuple[object, ...] = ()
    if source_id is not None:
        query += " WHERE source_id = ?"
        params = (source_id,)
    query += " ORDER BY source_id ASC, chunk_index ASC"
    with get_conn() as conn:
        rows = conn.execute(query, params).fetchall()

    parsed: list[dict[str, object]] = []
    for row in rows:
        item = dict(row)
        item["metadata"] = json.loads(item.pop("metadata_json"))
        item["embedding"] = json.loads(item.pop("embedding_json"))
        parsed.append(item)
    return parsed
