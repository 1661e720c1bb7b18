from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from pathlib import Path
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from rda.api.routers import system
from rda.api.routers.generations import build_generations_router
from rda.api.routers.sources import build_sources_router
from rda.completion import BedrockCompletionClient, TextCompletionProvider
from rda.config import settings
from rda.db import init_db
from rda.embeddings import EmbeddingService
from rda.extraction import FieldExtractor
from rda.normalization import Normalizer
from rda.observability import (
    configure_logging,
    normalize_request_id,
    request_scope,
    sanitize_for_logging,
)
from rda.orchestrator import GenerationOrchestrator
from rda.rendering import ManifestRenderer
from rda.reprocessing import ReprocessingService
from rda.review import ReviewService
from rda.validation import Validator

logger = logging.getLogger("rda.api")


@lru_cache(maxsize=1)
def _cached_completion_provider() -> TextCompletionProvider | None:
    if not settings.llm_enrichment_enabled:
        return None
    return BedrockCompletionClient(settings)


@lru_cache(maxsize=1)
def _cached_orchestrator() -> GenerationOrchestrator:
    completion = _cached_completion_provider()
    return GenerationOrchestrator(
        settings,
        extractor=FieldExtractor(settings, completion),
        normalizer=Normalizer(settings, completion),
        validator=Validator(settings, completion),
        renderer=ManifestRenderer(settings),
    )


def get_orchestrator() -> GenerationOrchestrator:
    return _cached_orchestrator()


@lru_cache(maxsize=1)
def _cached_reprocessing_service() -> ReprocessingService:
    completion = _cached_completion_provider()
    return ReprocessingService(
        settings,
        extractor=FieldExtractor(settings, completion),
        normalizer=Normalizer(settings, completion),
        validator=Validator(settings, completion),
    )


def get_reprocessing_service() -> ReprocessingService:
    return _cached_reprocessing_service()


@lru_cache(maxsize=1)
def _cached_review_service() -> ReviewService:
    return ReviewService(settings, renderer=ManifestRenderer(settings))


def get_review_service() -> ReviewService:
    return _cached_review_service()


@lru_cache(maxsize=1)
def _cached_embedding_service() -> EmbeddingService:
    return EmbeddingService.from_settings(settings)


def get_embedding_service() -> EmbeddingService:
    return _cached_embedding_service()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    init_db()
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    yield
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", settings.request_id_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        started = time.perf_counter()

        with request_scope(request_id):
            logger.info(
                "request_started",
                extra={
                    "event": "request_started",
                    "method": request.method,
                    "path": request.url.path,
                    "query": sanitize_for_logging(dict(request.query_params)),
                    "client_ip": request.client.host if request.client else None,
                },
            )
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request_failed",
                    extra={
                        "event": "request_failed",
                        "method": request.method,
                        "path": request.url.path,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )
                raise
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return response

    app.include_router(system.router)
    app.include_router(
        build_generations_router(
            get_orchestrator=lambda: get_orchestrator(),
            get_reprocessing_service=lambda: get_reprocessing_service(),
            get_review_service=lambda: get_review_service(),
        )
    )
    app.include_router(build_sources_router(get_embedding_service=lambda: get_embedding_service()))
    return app


app = create_app()
