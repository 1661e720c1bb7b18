from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Callable

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from rda.config import settings
from rda.db import get_conn
from rda.embeddings import EmbeddingService
from rda.storage import output_store


router = APIRouter()

READY_CACHE_TTL_SECONDS = 30.0


@dataclass
class _ReadyCache:
    checked_at: float = 0.0
    status_code: int = 200
    payload: dict[str, object] = field(default_factory=dict)

    def fresh(self) -> bool:
        return bool(self.payload) and time.time() - self.checked_at <= READY_CACHE_TTL_SECONDS

    def store(self, status_code: int, payload: dict[str, object]) -> JSONResponse:
        self.checked_at = time.time()
        self.status_code = status_code
        self.payload = payload
        return JSONResponse(status_code=status_code, content=payload)


_ready_cache = _ReadyCache()


def _check_db() -> dict[str, object]:
    with get_conn() as conn:
        generations = conn.execute("SELECT COUNT(*) FROM generations").fetchone()[0]
    return {"backend": "sqlite", "generations": generations}


def _check_storage() -> dict[str, object]:
    return output_store(settings).probe()


def _check_llm() -> dict[str, object]:
    return {"enrichment_enabled": settings.llm_enrichment_enabled, "model_id": settings.bedrock_model_id}


def _check_embeddings() -> dict[str, object]:
    return EmbeddingService.from_settings(settings).describe()


# Evaluated in order; the first failing check makes the service not ready.
READINESS_CHECKS: tuple[tuple[str, Callable[[], dict[str, object]]], ...] = (
    ("db", _check_db),
    ("storage", _check_storage),
    ("llm", _check_llm),
    ("embeddings", _check_embeddings),
)


@router.get("/")
def root() -> dict[str, str]:
    return {"service": "rda-report-engine", "status": "running"}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.app_env}


@router.get("/ready", response_model=None)
def ready() -> JSONResponse:
    if _ready_cache.fresh():
        return JSONResponse(status_code=_ready_cache.status_code, content=_ready_cache.payload)

    checks: dict[str, object] = {}
    payload: dict[str, object] = {"status": "ready", "environment": settings.app_env, "checks": checks}
    for name, check in READINESS_CHECKS:
        try:
            checks[name] = {"ok": True, **check()}
        except Exception as exc:
            checks[name] = {"ok": False, "error": str(exc)}
            payload["status"] = "not_ready"
            return _ready_cache.store(503, payload)
    return _ready_cache.store(200, payload)
