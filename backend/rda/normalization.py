from __future__ import annotations

import logging
import re
import time
from typing import Any

from rda.completion import TextCompletionProvider, try_enrichment
from rda.config import Settings
from rda.prompts import NORMALIZER_SYSTEM_PROMPT, build_normalizer_prompt
from rda.schemas import (
    ExtractionOutput,
    NormalizationOutput,
    NormalizedFieldResult,
    SectionNormalization,
    TokenUsage,
)
from rda.sections import fields_for_section

logger = logging.getLogger("rda.normalization")

WHITESPACE_PATTERN = re.compile(r"\s+")
NORMALIZATION_NOTE = "Normalizacao deterministica aplicada."
ENRICHMENT_OUTPUT_TOKENS = 100


def normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return WHITESPACE_PATTERN.sub(" ", value).strip()
    if isinstance(value, list):
        return [normalize_value(item) for item in value]
    if isinstance(value, dict):
        return {key: normalize_value(item) for key, item in value.items()}
    return value


class Normalizer:
    def __init__(self, settings: Settings, completion: TextCompletionProvider | None = None) -> None:
        self._settings = settings
        self._completion = completion

    def normalize(self, extraction: ExtractionOutput, guide_text: str) -> NormalizationOutput:
        started = time.perf_counter()
        sections = [
            SectionNormalization(
                section_name=section.section_name,
                fields=[
                    NormalizedFieldResult(
                        **field.model_dump(exclude={"value"}),
                        value=normalize_value(field.value),
                        original_value=field.value,
                        normalized_value=normalize_value(field.value),
                        normalization_notes=NORMALIZATION_NOTE,
                    )
                    for field in section.fields
                ],
            )
            for section in extraction.sections
        ]

        enrichment = try_enrichment(
            self._completion if self._settings.llm_enrichment_enabled else None,
            stage="normalizer",
            prompt=build_normalizer_prompt(extraction, guide_text),
            system_prompt=NORMALIZER_SYSTEM_PROMPT,
            max_tokens=800,
            temperature=0.1,
        )
        if enrichment is not None and sections:
            sections[0].tokens_used = TokenUsage(
                input=max(0, enrichment.tokens_used - ENRICHMENT_OUTPUT_TOKENS),
                output=min(ENRICHMENT_OUTPUT_TOKENS, enrichment.tokens_used),
            )

        duration = int((time.perf_counter() - started) * 1000)
        total = TokenUsage()
        for section in sections:
            section.duration = max(1, duration)
            total = total + section.tokens_used

        logger.info(
            "normalization_completed",
            extra={
                "event": "normalization_completed",
                "fields": sum(len(section.fields) for section in sections),
                "enriched": enrichment is not None,
                "duration_ms": duration,
            },
        )
        return NormalizationOutput(sections=sections, total_tokens=total, total_duration=duration)

    def normalize_section(self, extraction: ExtractionOutput, guide_text: str, section_name: str) -> NormalizationOutput:
        allowed = set(fields_for_section(section_name))
        scoped = extraction.model_copy(
            update={
                "sections": [
                    section.model_copy(
                        update={"fields": [field for field in section.fields if field.field_name in allowed]}
                    )
                    for section in extraction.sections
                ]
            }
        )
        return self.normalize(scoped, guide_text)
