from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Protocol

from rda.config import Settings
from rda.sections import REQUIRED_FIELDS
from rda.storage import StorageError, output_store

logger = logging.getLogger("rda.rendering")


class RenderError(RuntimeError):
    """Raised when the document renderer cannot produce an output file."""


@dataclass(frozen=True)
class RenderedDocument:
    file_path: str
    size_bytes: int


class DocumentRenderer(Protocol):
    def render(self, template_path: str, placeholder_map: dict[str, Any], generation_id: str) -> RenderedDocument: ...


def missing_placeholders(placeholder_map: dict[str, Any]) -> list[str]:
    return [name for name in REQUIRED_FIELDS if name not in placeholder_map]


class ManifestRenderer:
    """Writes the final placeholder map as a JSON manifest for an external document generator."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def render(self, template_path: str, placeholder_map: dict[str, Any], generation_id: str) -> RenderedDocument:
        missing = missing_placeholders(placeholder_map)
        if missing:
            raise RenderError(f"Placeholder map is missing required keys: {', '.join(missing)}.")

        content = json.dumps(
            {"generation_id": generation_id, "template_path": template_path, "placeholders": placeholder_map},
            ensure_ascii=False,
            indent=2,
        ).encode("utf-8")
        try:
            file_path = output_store(self._settings).save(
                generation_id, f"rda_{generation_id}.json", content, "application/json"
            )
        except StorageError as exc:
            raise RenderError(str(exc)) from exc

        logger.info(
            "document_rendered",
            extra={"event": "document_rendered", "file_path": file_path, "size_bytes": len(content)},
        )
        return RenderedDocument(file_path=file_path, size_bytes=len(content))
