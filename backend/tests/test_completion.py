import logging

import pytest

from rda.completion import (
    BedrockCompletionClient,
    CompletionError,
    CompletionResult,
    is_rate_limit_error,
    parse_json_candidates,
    try_enrichment,
)
from rda.config import Settings


def _response(text: str) -> dict[str, object]:
    return {
        "output": {"message": {"content": [{"text": text}]}},
        "usage": {"inputTokens": 10, "outputTokens": 5},
    }


class FakeConverseClient:
    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[dict[str, object]] = []

    def converse(self, **kwargs: object) -> object:
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "llm_retry_attempts": 3,
        "llm_retry_base_delay_seconds": 1.0,
        "llm_retry_max_jitter_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


def test_rate_limited_calls_are_retried_with_exponential_backoff() -> None:
    client = FakeConverseClient(
        [
            RuntimeError("ThrottlingException: Rate exceeded"),
            RuntimeError("HTTP 429 Too Many Requests"),
            _response("resposta final"),
        ]
    )
    sleeps: list[float] = []
    completion = BedrockCompletionClient(_settings(), client, sleep=sleeps.append)

    result = completion.complete("prompt", system_prompt="sistema", max_tokens=50, temperature=0.2)

    assert result == CompletionResult(text="resposta final", tokens_used=15)
    assert sleeps == [1.0, 2.0]
    assert len(client.requests) == 3
    request = client.requests[0]
    assert request["system"] == [{"text": "sistema"}]
    assert request["inferenceConfig"] == {"temperature": 0.2, "maxTokens": 50}


def test_non_rate_limit_errors_fail_without_retry() -> None:
    client = FakeConverseClient([RuntimeError("AccessDeniedException: not allowed")])
    sleeps: list[float] = []
    completion = BedrockCompletionClient(_settings(), client, sleep=sleeps.append)

    with pytest.raises(CompletionError, match="AccessDeniedException"):
        completion.complete("prompt")
    assert sleeps == []
    assert len(client.requests) == 1


def test_rate_limit_retries_stop_after_configured_attempts() -> None:
    client = FakeConverseClient([RuntimeError("rate limit")] * 3)
    sleeps: list[float] = []
    completion = BedrockCompletionClient(_settings(), client, sleep=sleeps.append)

    with pytest.raises(CompletionError):
        completion.complete("prompt")
    assert len(client.requests) == 3
    assert sleeps == [1.0, 2.0]


def test_retry_delay_adds_bounded_jitter() -> None:
    completion = BedrockCompletionClient(
        _settings(llm_retry_max_jitter_seconds=0.5), FakeConverseClient([]), sleep=lambda _: None
    )
    for attempt in (1, 2, 3):
        delay = completion._retry_delay(attempt)
        base = 2 ** (attempt - 1)
        assert base <= delay <= base + 0.5


def test_empty_model_output_is_an_error() -> None:
    client = FakeConverseClient([_response("   ")])
    completion = BedrockCompletionClient(_settings(), client, sleep=lambda _: None)

    with pytest.raises(CompletionError, match="textual output"):
        completion.complete("prompt")


def test_complete_json_parses_fenced_payload() -> None:
    client = FakeConverseClient([_response('```json\n{"campos": ["A", "B"]}\n```')])
    completion = BedrockCompletionClient(_settings(), client, sleep=lambda _: None)

    result = completion.complete_json("prompt")

    assert result.data == {"campos": ["A", "B"]}
    assert result.tokens_used == 15


def test_parse_json_candidates_recovers_embedded_json() -> None:
    assert parse_json_candidates('{"a": 1}') == {"a": 1}
    assert parse_json_candidates("Segue o resultado: [1, 2, 3] fim") == [1, 2, 3]
    assert parse_json_candidates('Texto antes {"ok": true} texto depois') == {"ok": True}
    with pytest.raises(CompletionError):
        parse_json_candidates("sem json nenhum")


def test_is_rate_limit_error_matches_throttling_messages() -> None:
    assert is_rate_limit_error(RuntimeError("ThrottlingException"))
    assert is_rate_limit_error(RuntimeError("rate_limit exceeded"))
    assert not is_rate_limit_error(RuntimeError("ValidationException"))


def test_try_enrichment_swallows_provider_failures(caplog) -> None:
    class FailingProvider:
        def complete(self, prompt: str, **_: object) -> CompletionResult:
            raise RuntimeError("bedrock offline")

    with caplog.at_level(logging.WARNING, logger="rda.completion"):
        result = try_enrichment(
            FailingProvider(),
            stage="extractor",
            prompt="p",
            system_prompt="s",
            max_tokens=10,
            temperature=0.1,
        )

    assert result is None
    skipped = [record for record in caplog.records if getattr(record, "event", None) == "enrichment_skipped"]
    assert skipped and skipped[-1].stage == "extractor"


def test_try_enrichment_without_provider_returns_none() -> None:
    assert try_enrichment(None, stage="validator", prompt="p", system_prompt="s", max_tokens=1, temperature=0.0) is None
