from __future__ import annotations

import logging
import re
import time
from typing import Any

from pydantic import ValidationError

from rda.completion import TextCompletionProvider, try_enrichment
from rda.config import Settings
from rda.prompts import EXTRACTOR_SYSTEM_PROMPT, build_extractor_prompt
from rda.schemas import (
    Evidence,
    ExtractionOutput,
    FieldResult,
    GenerationContext,
    SectionExtraction,
    SprintSnapshot,
    TeamMember,
    TokenUsage,
    WorkItemSnapshot,
)
from rda.sections import REPORT_SECTION, fields_for_section
from rda.urls import AzureDevOpsUrlBuilder

logger = logging.getLogger("rda.extraction")

COORDINATOR_ROLE_PATTERN = re.compile(
    r"coordenador|gerente t[eé]cnico|tech lead|technical coordinator",
    flags=re.IGNORECASE,
)
DONE_STATES = {"Closed", "Done"}
SNIPPET_CHARS = 200
DESCRIPTION_CHARS = 1200
PLACEHOLDER_CPF = "00000000000"
ENRICHMENT_OUTPUT_TOKENS = 200


class ContextValidationError(ValueError):
    """Raised when the upstream generation context is missing or malformed."""


def parse_context(raw: Any) -> GenerationContext:
    if isinstance(raw, GenerationContext):
        return raw
    if raw is None:
        raise ContextValidationError("Generation context is missing.")
    try:
        return GenerationContext.model_validate(raw)
    except ValidationError as exc:
        raise ContextValidationError(f"Generation context is malformed: {exc.error_count()} validation error(s).") from exc


def format_cpf(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) != 11:
        return value
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def _format_date(value: Any) -> str:
    if value is None:
        return "-"
    return value.date().isoformat()


def _period_evidence(period_key: str) -> Evidence:
    return Evidence(
        source_type="Sprint",
        source_id="period",
        source_name="Periodo da geracao",
        location="period_key",
        snippet=period_key,
    )


class FieldExtractor:
    def __init__(self, settings: Settings, completion: TextCompletionProvider | None = None) -> None:
        self._settings = settings
        self._completion = completion

    def extract(self, context: GenerationContext | dict[str, Any]) -> ExtractionOutput:
        started = time.perf_counter()
        parsed = parse_context(context)

        work_items = self._select_work_items(parsed.work_items)
        sprints = self._select_sprints(parsed.sprints)
        urls = AzureDevOpsUrlBuilder(
            organization=parsed.azure_devops.organization,
            project=parsed.azure_devops.project,
            team_name=parsed.azure_devops.team_name,
        )

        fields = [
            self._project_name(parsed),
            FieldResult(
                field_name="ANO_BASE",
                value=parsed.period_key[:4],
                evidence=[_period_evidence(parsed.period_key)],
                confidence=0.99,
                status="filled",
                context_used=["period_key"],
            ),
            FieldResult(
                field_name="COMPETENCIA",
                value=parsed.period_key,
                evidence=[_period_evidence(parsed.period_key)],
                confidence=0.99,
                status="filled",
                context_used=["period_key"],
            ),
            self._coordinator(parsed.project_context.team_members),
            self._activities(parsed.period_key, work_items, urls),
            self._results(parsed, sprints, urls),
        ]

        tokens = TokenUsage()
        enrichment = try_enrichment(
            self._completion if self._settings.llm_enrichment_enabled else None,
            stage="extractor",
            prompt=build_extractor_prompt(parsed, work_items, sprints),
            system_prompt=EXTRACTOR_SYSTEM_PROMPT,
            max_tokens=1200,
            temperature=0.2,
        )
        if enrichment is not None:
            tokens = TokenUsage(
                input=max(0, enrichment.tokens_used - ENRICHMENT_OUTPUT_TOKENS),
                output=min(ENRICHMENT_OUTPUT_TOKENS, enrichment.tokens_used),
            )

        duration = int((time.perf_counter() - started) * 1000)
        section = SectionExtraction(
            section_name=REPORT_SECTION,
            fields=fields,
            chunks_queried=parsed.chunk_stats.total,
            tokens_used=tokens,
            duration=duration,
        )
        logger.info(
            "extraction_completed",
            extra={
                "event": "extraction_completed",
                "fields": len(fields),
                "work_items": len(work_items),
                "sprints": len(sprints),
                "enriched": enrichment is not None,
                "duration_ms": duration,
            },
        )
        return ExtractionOutput(sections=[section], total_tokens=tokens, total_duration=duration)

    def extract_section(self, context: GenerationContext | dict[str, Any], section_name: str) -> ExtractionOutput:
        allowed = set(fields_for_section(section_name))
        full = self.extract(context)
        return full.model_copy(
            update={
                "sections": [
                    section.model_copy(
                        update={"fields": [field for field in section.fields if field.field_name in allowed]}
                    )
                    for section in full.sections
                ]
            }
        )

    def _select_work_items(self, work_items: list[WorkItemSnapshot]) -> list[WorkItemSnapshot]:
        ordered = sorted(work_items, key=lambda item: item.changed_date, reverse=True)
        return ordered[: self._settings.extraction_work_item_window]

    def _select_sprints(self, sprints: list[SprintSnapshot]) -> list[SprintSnapshot]:
        # Sprints without a start date sort last.
        ordered = sorted(sprints, key=lambda item: (item.start_date is None, item.start_date or 0))
        return ordered[: self._settings.extraction_sprint_window]

    @staticmethod
    def _project_name(context: GenerationContext) -> FieldResult:
        name = context.project_context.project_name
        return FieldResult(
            field_name="PROJETO_NOME",
            value=name,
            evidence=[
                Evidence(
                    source_type="Document",
                    source_id="project-context",
                    source_name="ProjectContext",
                    location="project_context.project_name",
                    snippet=name[:SNIPPET_CHARS],
                )
            ],
            confidence=0.98,
            status="filled",
            context_used=["project_context"],
        )

    @staticmethod
    def _coordinator(team_members: list[TeamMember]) -> FieldResult:
        coordinator = next(
            (member for member in team_members if COORDINATOR_ROLE_PATTERN.search(member.role)),
            team_members[0] if team_members else None,
        )
        name = coordinator.name if coordinator else "A definir"
        role = coordinator.role if coordinator else "N/A"
        return FieldResult(
            field_name="COORDENADOR_TECNICO",
            value=name,
            evidence=[
                Evidence(
                    source_type="Document",
                    source_id=coordinator.name if coordinator else "team-member",
                    source_name="ProjectContext.team_members",
                    location="team_members.role",
                    snippet=f"{name if coordinator else 'N/A'} - {role}"[:SNIPPET_CHARS],
                )
            ],
            confidence=0.85 if coordinator else 0.5,
            status="filled" if coordinator else "pending",
            context_used=["project_context.team_members"],
        )

    def _activities(
        self,
        period_key: str,
        work_items: list[WorkItemSnapshot],
        urls: AzureDevOpsUrlBuilder,
    ) -> FieldResult:
        selected = work_items[: self._settings.extraction_max_activities]
        records: list[dict[str, object]] = []
        evidence: list[Evidence] = []
        for index, item in enumerate(selected):
            people = [item.assigned_to] if item.assigned_to else ["Equipe do projeto"]
            records.append(
                {
                    "NUMERO_ATIVIDADE": str(index + 1),
                    "NOME_ATIVIDADE": item.title,
                    "PERIODO_ATIVIDADE": period_key,
                    "DESCRICAO_ATIVIDADE": (item.description or "")[:DESCRIPTION_CHARS]
                    or f"Work item {item.work_item_id} ({item.state}).",
                    "JUSTIFICATIVA_ATIVIDADE": f"Atividade priorizada no periodo {period_key}.",
                    "RESULTADO_OBTIDO_ATIVIDADE": (
                        "Atividade concluida no periodo."
                        if item.state in DONE_STATES
                        else "Atividade em andamento no periodo."
                    ),
                    "DISPENDIOS_ATIVIDADE": "A apurar conforme controles financeiros do projeto.",
                    "RESPONSAVEIS": [
                        {
                            "NOME_RESPONSAVEL": person,
                            "CPF_RESPONSAVEL": format_cpf(PLACEHOLDER_CPF),
                            "JUSTIFICATIVA_RESPONSAVEL": f"Responsavel registrado no work item {item.work_item_id}.",
                        }
                        for person in people
                    ],
                }
            )
            evidence.append(
                Evidence(
                    source_type="WorkItem",
                    source_id=item.id,
                    source_name=item.title,
                    location=f"WI#{item.work_item_id}",
                    snippet=(item.description or item.title)[:SNIPPET_CHARS],
                    url=urls.work_item(item.work_item_id),
                    timestamp=item.changed_date.isoformat(),
                )
            )

        return FieldResult(
            field_name="ATIVIDADES",
            value=records,
            evidence=evidence,
            confidence=0.9 if records else 0.4,
            status="filled" if records else "pending",
            context_used=["work_item_snapshots"],
        )

    @staticmethod
    def _results(
        context: GenerationContext,
        sprints: list[SprintSnapshot],
        urls: AzureDevOpsUrlBuilder,
    ) -> FieldResult:
        snapshot = context.monthly_snapshot
        summary = " ".join(
            [
                f"Foram consolidados {snapshot.work_items_total} work items no periodo.",
                f"Sprints consideradas: {snapshot.sprints_count}.",
                f"Paginas wiki atualizadas: {snapshot.wiki_pages_updated}.",
            ]
        )
        evidence = [
            Evidence(
                source_type="Sprint",
                source_id=sprint.id,
                source_name=sprint.sprint_name,
                location=f"{_format_date(sprint.start_date)} a {_format_date(sprint.end_date)}",
                snippet=f"Itens: {sprint.completed_items}/{sprint.total_work_items}",
                url=urls.sprint_taskboard(sprint.sprint_name),
            )
            for sprint in sprints[:3]
        ]
        if not evidence:
            evidence.append(
                Evidence(
                    source_type="Sprint",
                    source_id="monthly-snapshot",
                    source_name="Consolidado mensal",
                    location=context.period_key,
                    snippet=summary[:SNIPPET_CHARS],
                )
            )
        return FieldResult(
            field_name="RESULTADOS_ALCANCADOS",
            value=summary,
            evidence=evidence,
            confidence=0.82,
            status="filled",
            context_used=["sprint_snapshots", "monthly_snapshot"],
        )
