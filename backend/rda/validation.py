from __future__ import annotations

import logging
import time
from typing import Any

from rda.completion import TextCompletionProvider, try_enrichment
from rda.config import Settings
from rda.prompts import VALIDATOR_SYSTEM_PROMPT, build_validator_prompt
from rda.schemas import (
    NormalizationOutput,
    PlaceholderInfo,
    RetryRecommendation,
    ValidationIssue,
    ValidationReport,
)
from rda.sections import REQUIRED_FIELDS, SECTION_ORDER, section_for_field

logger = logging.getLogger("rda.validation")

RETRY_REASON = "Campos obrigatorios sem preenchimento completo."


def is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, list):
        return len(value) > 0
    return True


def collect_field_values(normalization: NormalizationOutput) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field in normalization.all_fields():
        values[field.field_name] = field.normalized_value if field.normalized_value is not None else field.value
    return values


def compute_score(filled_fields: int, error_count: int, total_fields: int) -> float:
    if total_fields == 0:
        return 0.0
    return max(0.0, min(1.0, (filled_fields - error_count) / total_fields))


class Validator:
    def __init__(self, settings: Settings, completion: TextCompletionProvider | None = None) -> None:
        self._settings = settings
        self._completion = completion

    def validate(
        self,
        normalization: NormalizationOutput,
        placeholders: list[PlaceholderInfo] | None = None,
        required_fields: tuple[str, ...] = REQUIRED_FIELDS,
    ) -> ValidationReport:
        started = time.perf_counter()
        values = collect_field_values(normalization)
        issues: list[ValidationIssue] = []

        for name in required_fields:
            if not is_filled(values.get(name)):
                issues.append(
                    ValidationIssue(
                        field=name,
                        severity="error",
                        type="missing",
                        message=f"Campo obrigatorio ausente: {name}",
                        suggestion="Revisar fontes e preencher campo.",
                        auto_fixable=False,
                    )
                )

        activities = values.get("ATIVIDADES")
        if isinstance(activities, list):
            for index, item in enumerate(activities):
                if not isinstance(item, dict) or not item.get("NOME_ATIVIDADE"):
                    issues.append(
                        ValidationIssue(
                            field=f"ATIVIDADES[{index}].NOME_ATIVIDADE",
                            severity="warning",
                            type="missing",
                            message="Atividade sem nome.",
                            suggestion="Usar titulo do work item correspondente.",
                            auto_fixable=True,
                        )
                    )

        commentary = try_enrichment(
            self._completion if self._settings.llm_enrichment_enabled else None,
            stage="validator",
            prompt=build_validator_prompt(normalization, placeholders or []),
            system_prompt=VALIDATOR_SYSTEM_PROMPT,
            max_tokens=700,
            temperature=0.1,
        )

        total_fields = len(values)
        filled_fields = sum(1 for value in values.values() if is_filled(value))
        errors = [issue for issue in issues if issue.severity == "error"]
        score = compute_score(filled_fields, len(errors), total_fields)
        approved = not errors and score >= self._settings.validation_approval_threshold

        recommendation = None
        if not approved:
            failing_sections = [
                section
                for section in SECTION_ORDER
                if any(section_for_field(issue.field) == section for issue in errors)
            ]
            recommendation = RetryRecommendation(
                sections=failing_sections or list(SECTION_ORDER),
                reason=RETRY_REASON,
            )

        report = ValidationReport(
            overall_score=score,
            total_fields=total_fields,
            filled_fields=filled_fields,
            pending_fields=sum(1 for issue in issues if issue.severity != "info"),
            empty_fields=max(0, total_fields - filled_fields),
            issues=issues,
            approved=approved,
            retryable=bool(errors),
            retry_recommendations=recommendation,
            duration=int((time.perf_counter() - started) * 1000),
            commentary=commentary.text if commentary is not None else None,
        )
        logger.info(
            "validation_completed",
            extra={
                "event": "validation_completed",
                "overall_score": round(score, 4),
                "errors": len(errors),
                "warnings": sum(1 for issue in issues if issue.severity == "warning"),
                "approved": approved,
            },
        )
        return report
