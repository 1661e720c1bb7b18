from __future__ import annotations

import logging
import math
import re
import time

from rda.schemas import ChunkInput, ChunkMetadata, ChunkingOptions, ContentType, DocumentChunk, UrlTypeEntry
from rda.urls import extract_and_classify_urls

logger = logging.getLogger("rda.chunking")

SENTENCE_SEPARATOR = ". "
SENTENCE_BOUNDARY_PATTERN = re.compile(r"(?<=[.!?])\s+")
REPACK_CARRY_RATIO = 0.35

TABLE_PATTERN = re.compile(r"\|.+\|")
LIST_PATTERN = re.compile(r"^\s*(?:[-*]|\d+\.)\s+", flags=re.MULTILINE)
FENCED_CODE_PATTERN = re.compile(r"```[\s\S]*?```")
CODE_KEYWORD_PATTERN = re.compile(r"\b(function|class|const|let|var|import|export)\b")
MARKDOWN_HEADING_PATTERN = re.compile(r"^#{1,4}\s+")
CAPS_HEADING_PATTERN = re.compile(r"^[A-Z][A-Z0-9\s_\-]{8,}$")


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


def normalize_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\t", " ").replace("\u00a0", " ")
    normalized = re.sub(r" {2,}", " ", normalized)
    normalized = re.sub(r"\n{3,}", "\n\n", normalized)
    return normalized.strip()


def _split_by_separator(content: str, separator: str) -> list[str]:
    if separator not in content:
        return [content]

    if separator == SENTENCE_SEPARATOR:
        return [part.strip() for part in SENTENCE_BOUNDARY_PATTERN.split(content) if part.strip()]

    marker = separator.strip()
    parts: list[str] = []
    for index, part in enumerate(content.split(separator)):
        candidate = part.strip() if index == 0 else f"{marker} {part}".strip()
        if candidate:
            parts.append(candidate)
    return parts


def _hard_split(text: str, max_size: int) -> list[str]:
    words = text.split()
    if len(words) <= max_size:
        return [text.strip()]
    pieces = [" ".join(words[start : start + max_size]).strip() for start in range(0, len(words), max_size)]
    return [piece for piece in pieces if piece]


def _repack(chunks: list[str], target_size: int, max_size: int) -> list[str]:
    if len(chunks) <= 1:
        return chunks

    output: list[str] = []
    carry = ""
    for chunk in chunks:
        if not carry:
            carry = chunk
            continue

        combined = f"{carry}\n{chunk}"
        if estimate_tokens(carry) < target_size * REPACK_CARRY_RATIO and estimate_tokens(combined) <= max_size:
            carry = combined
            continue

        output.append(carry)
        carry = chunk
        if estimate_tokens(chunk) >= target_size:
            output.append(carry)
            carry = ""

    if carry:
        output.append(carry)
    return output


def _pack(parts: list[str], target_size: int, max_size: int, separator: str) -> list[str]:
    joiner = " " if separator == SENTENCE_SEPARATOR else "\n"
    chunks: list[str] = []
    current = ""

    for part in parts:
        candidate = f"{current}{joiner}{part}" if current else part
        if estimate_tokens(candidate) <= max_size:
            current = candidate
            continue

        if current:
            chunks.append(current.strip())

        if estimate_tokens(part) > max_size:
            chunks.extend(_hard_split(part, max_size))
            current = ""
        else:
            current = part

    if current.strip():
        chunks.append(current.strip())

    return _repack(chunks, target_size, max_size)


def semantic_split(text: str, options: ChunkingOptions) -> list[str]:
    if estimate_tokens(text) <= options.max_size:
        return [text]

    segments = [text]
    for separator in options.separators:
        next_segments: list[str] = []
        for segment in segments:
            if estimate_tokens(segment) <= options.max_size:
                next_segments.append(segment)
                continue

            parts = _split_by_separator(segment, separator)
            if len(parts) <= 1:
                next_segments.append(segment)
                continue

            next_segments.extend(_pack(parts, options.target_size, options.max_size, separator))
        segments = next_segments

    return [piece for segment in segments for piece in _hard_split(segment, options.max_size)]


def _tail_words(text: str, count: int) -> str:
    words = text.split()
    if len(words) <= count:
        return text
    return " ".join(words[-count:])


def apply_overlap(chunks: list[str], overlap: int) -> list[str]:
    if len(chunks) <= 1 or overlap <= 0:
        return chunks

    output = [chunks[0]]
    for index in range(1, len(chunks)):
        tail = _tail_words(chunks[index - 1], overlap)
        output.append(f"{tail}\n{chunks[index]}" if tail else chunks[index])
    return output


def detect_content_type(text: str) -> ContentType:
    has_table = bool(TABLE_PATTERN.search(text)) or "\t" in text
    has_list = bool(LIST_PATTERN.search(text))
    has_code = bool(FENCED_CODE_PATTERN.search(text)) or bool(CODE_KEYWORD_PATTERN.search(text))

    if sum((has_table, has_list, has_code)) > 1:
        return "mixed"
    if has_table:
        return "table"
    if has_list:
        return "list"
    if has_code:
        return "code"
    return "text"


def detect_heading(text: str) -> str | None:
    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if MARKDOWN_HEADING_PATTERN.match(line) or CAPS_HEADING_PATTERN.match(line):
            return MARKDOWN_HEADING_PATTERN.sub("", line).strip() or None
    return None


def chunk_text(chunk_input: ChunkInput, options: ChunkingOptions | None = None) -> list[DocumentChunk]:
    started = time.perf_counter()
    resolved = options or ChunkingOptions()
    normalized = normalize_text(chunk_input.text)
    if not normalized:
        return []

    segments = apply_overlap(semantic_split(normalized, resolved), resolved.overlap)

    chunks: list[DocumentChunk] = []
    for index, content in enumerate(segments):
        classified = extract_and_classify_urls(content)
        chunks.append(
            DocumentChunk(
                content=content,
                chunk_index=index,
                token_count=estimate_tokens(content),
                metadata=ChunkMetadata(
                    source_type=chunk_input.source_type,
                    document_name=chunk_input.document_name,
                    document_id=chunk_input.document_id,
                    wiki_page_id=chunk_input.wiki_page_id,
                    section_heading=detect_heading(content),
                    content_type=detect_content_type(content),
                    position=index,
                    urls=tuple(item.url for item in classified),
                    url_types=tuple(UrlTypeEntry(url=item.url, type=item.type) for item in classified),
                ),
            )
        )

    logger.info(
        "chunking_completed",
        extra={
            "event": "chunking_completed",
            "source_type": chunk_input.source_type,
            "document_name": chunk_input.document_name,
            "chunks": len(chunks),
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return chunks
