from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import random
import re
import time
from typing import Any, Callable, Protocol

from rda.config import Settings

logger = logging.getLogger("rda.completion")

RATE_LIMIT_PATTERN = re.compile(r"429|rate[_\s-]?limit|too many requests|throttl", flags=re.IGNORECASE)
FENCE_PREFIX_PATTERN = re.compile(r"^```(?:json)?\s*", flags=re.IGNORECASE)
FENCE_SUFFIX_PATTERN = re.compile(r"\s*```$")


class CompletionError(RuntimeError):
    """Raised when the text-completion service fails or returns unusable output."""


@dataclass(frozen=True)
class CompletionResult:
    text: str
    tokens_used: int


@dataclass(frozen=True)
class JsonCompletionResult:
    data: Any
    tokens_used: int


class TextCompletionProvider(Protocol):
    def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> CompletionResult: ...


def is_rate_limit_error(exc: BaseException) -> bool:
    return bool(RATE_LIMIT_PATTERN.search(str(exc)))


def parse_json_candidates(raw: str) -> Any:
    stripped = FENCE_SUFFIX_PATTERN.sub("", FENCE_PREFIX_PATTERN.sub("", raw.strip())).strip()
    candidates = [raw.strip(), stripped]

    object_start, object_end = stripped.find("{"), stripped.rfind("}")
    if object_start != -1 and object_end > object_start:
        candidates.append(stripped[object_start : object_end + 1])

    array_start, array_end = stripped.find("["), stripped.rfind("]")
    if array_start != -1 and array_end > array_start:
        candidates.append(stripped[array_start : array_end + 1])

    seen: set[str] = set()
    for candidate in candidates:
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise CompletionError("Model response did not contain valid JSON.")


class BedrockCompletionClient:
    """Text completion over the Bedrock Converse API with throttling-only retries."""

    def __init__(
        self,
        settings: Settings,
        client: Any | None = None,
        *,
        model_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._model_id = (model_id or settings.bedrock_model_id).strip()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def model_id(self) -> str:
        return self._model_id

    def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> CompletionResult:
        if not self._model_id:
            raise CompletionError("Bedrock model ID is not configured.")

        request: dict[str, Any] = {
            "modelId": self._model_id,
            "messages": [{"role": "user", "content": [{"text": prompt}]}],
            "inferenceConfig": {
                "temperature": self._settings.llm_temperature if temperature is None else temperature,
                "maxTokens": max_tokens or self._settings.llm_max_tokens,
            },
        }
        if system_prompt:
            request["system"] = [{"text": system_prompt}]

        started = time.perf_counter()
        response = self._converse_with_retry(request)
        text = self._extract_text(response)
        usage = response.get("usage", {}) if isinstance(response, dict) else {}
        input_tokens = int(usage.get("inputTokens") or 0)
        output_tokens = int(usage.get("outputTokens") or 0)

        logger.info(
            "completion_succeeded",
            extra={
                "event": "completion_succeeded",
                "model_id": self._model_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "prompt_chars": len(prompt),
                "response_chars": len(text),
            },
        )
        return CompletionResult(text=text, tokens_used=input_tokens + output_tokens)

    def complete_json(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> JsonCompletionResult:
        result = self.complete(
            prompt,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            temperature=0.3 if temperature is None else temperature,
        )
        try:
            data = parse_json_candidates(result.text)
        except CompletionError:
            logger.warning(
                "completion_json_parse_failed",
                extra={
                    "event": "completion_json_parse_failed",
                    "model_id": self._model_id,
                    "response_preview": result.text[:500],
                },
            )
            raise
        return JsonCompletionResult(data=data, tokens_used=result.tokens_used)

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3  # type: ignore
        except ImportError as exc:
            raise CompletionError("boto3 is required for Bedrock completions.") from exc

        self._client = boto3.client("bedrock-runtime", region_name=self._settings.aws_region)
        return self._client

    def _retry_delay(self, attempt: int) -> float:
        base = self._settings.llm_retry_base_delay_seconds * (2 ** (attempt - 1))
        return base + self._rng.uniform(0, self._settings.llm_retry_max_jitter_seconds)

    def _converse_with_retry(self, request: dict[str, Any]) -> Any:
        max_attempts = max(1, self._settings.llm_retry_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                return self._get_client().converse(**request)
            except Exception as exc:
                if not is_rate_limit_error(exc) or attempt >= max_attempts:
                    logger.warning(
                        "completion_failed",
                        extra={
                            "event": "completion_failed",
                            "model_id": self._model_id,
                            "attempt": attempt,
                            "error": str(exc),
                        },
                    )
                    raise CompletionError(f"Bedrock completion failed for model '{self._model_id}': {exc}") from exc

                delay = self._retry_delay(attempt)
                logger.warning(
                    "completion_rate_limited",
                    extra={
                        "event": "completion_rate_limited",
                        "model_id": self._model_id,
                        "attempt": attempt,
                        "delay_seconds": round(delay, 3),
                    },
                )
                self._sleep(delay)
        raise CompletionError("Bedrock completion retry loop exhausted.")

    @staticmethod
    def _extract_text(response: Any) -> str:
        outputs = response.get("output", {}).get("message", {}).get("content", [])
        parts = [item["text"] for item in outputs if isinstance(item.get("text"), str) and item["text"].strip()]
        if not parts:
            raise CompletionError("Model response did not include textual output.")
        return "\n".join(parts).strip()


def try_enrichment(
    provider: TextCompletionProvider | None,
    *,
    stage: str,
    prompt: str,
    system_prompt: str,
    max_tokens: int,
    temperature: float,
) -> CompletionResult | None:
    """Run a non-authoritative completion call; any failure is logged and yields None."""
    if provider is None:
        return None
    try:
        return provider.complete(
            prompt,
            system_prompt=system_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    except Exception as exc:
        logger.warning(
            "enrichment_skipped",
            extra={"event": "enrichment_skipped", "stage": stage, "error": str(exc)},
        )
        return None
