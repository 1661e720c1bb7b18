"""Structured JSON logging with request/generation context and personal-data redaction."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Iterator, Mapping
from uuid import uuid4


@dataclass(frozen=True)
class LogContext:
    request_id: str = "-"
    generation_id: str = "-"
    stage: str = "-"


_LOG_CONTEXT: ContextVar[LogContext] = ContextVar("rda_log_context", default=LogContext())

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

# Matched against lowercased keys with "-" folded to "_". Whole words only, so
# counters such as "input_tokens" stay visible.
SENSITIVE_KEY_PATTERN = re.compile(
    r"(?:^|_)(?:password|secret|token|api_?key|access_key|authorization|cookie|cpf|cnpj|email)(?:$|_)"
)

REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "[REDACTED_AWS_ACCESS_KEY]"),
    (
        re.compile(r"(?i)\b(aws_secret_access_key|secret_access_key)(\s*[:=]\s*)([A-Za-z0-9/+=]{16,})"),
        r"\1\2[REDACTED]",
    ),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}\b"), "[REDACTED_CNPJ]"),
    (re.compile(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b"), "[REDACTED_CPF]"),
)


def normalize_request_id(candidate: str | None) -> str:
    if candidate:
        trimmed = candidate.strip()
        if REQUEST_ID_PATTERN.fullmatch(trimmed):
            return trimmed
    return str(uuid4())


def current_context() -> LogContext:
    return _LOG_CONTEXT.get()


def get_request_id() -> str:
    return _LOG_CONTEXT.get().request_id


def get_generation_id() -> str:
    return _LOG_CONTEXT.get().generation_id


@contextmanager
def request_scope(request_id: str) -> Iterator[None]:
    token = _LOG_CONTEXT.set(replace(_LOG_CONTEXT.get(), request_id=request_id))
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


@contextmanager
def generation_scope(generation_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with the generation id."""
    token = _LOG_CONTEXT.set(replace(_LOG_CONTEXT.get(), generation_id=generation_id, stage="-"))
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def bind_stage(stage: str) -> None:
    """Record the pipeline stage until the enclosing generation scope exits."""
    _LOG_CONTEXT.set(replace(_LOG_CONTEXT.get(), stage=stage))


def is_sensitive_key(key: str) -> bool:
    return SENSITIVE_KEY_PATTERN.search(key.strip().lower().replace("-", "_")) is not None


def redact_text(value: str, *, max_length: int = 240) -> str:
    for pattern, replacement in REDACTION_RULES:
        value = pattern.sub(replacement, value)
    if len(value) > max_length:
        return f"{value[:max_length]}...[truncated]"
    return value


def sanitize_for_logging(value: Any, *, max_string_length: int = 240) -> Any:
    """Recursively redact secrets and personal data (e-mail, CPF, CNPJ) from a log value."""
    if isinstance(value, str):
        return redact_text(value, max_length=max_string_length)
    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"
    if isinstance(value, Mapping):
        return {
            str(key): "[REDACTED]"
            if is_sensitive_key(str(key))
            else sanitize_for_logging(item, max_string_length=max_string_length)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        items = [sanitize_for_logging(item, max_string_length=max_string_length) for item in value]
        return items if isinstance(value, list) else tuple(items)
    return value


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _LOG_CONTEXT.get()
        for name in ("request_id", "generation_id", "stage"):
            if not hasattr(record, name):
                setattr(record, name, getattr(context, name))
        return True


_RESERVED_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context = _LOG_CONTEXT.get()
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", context.request_id),
            "generation_id": getattr(record, "generation_id", context.generation_id),
            "stage": getattr(record, "stage", context.stage),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_RECORD_ATTRS and key not in payload:
                payload[key] = sanitize_for_logging(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


class _RdaLogHandler(logging.StreamHandler):
    pass


def configure_logging(level_name: str) -> None:
    """Install one JSON handler on the root logger; later calls only change the level."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    if any(isinstance(handler, _RdaLogHandler) for handler in root.handlers):
        return
    handler = _RdaLogHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ContextFilter())
    root.addHandler(handler)
