from __future__ import annotations

from typing import Literal


SectionName = Literal["dados_projeto", "atividades", "resultados"]

REPORT_SECTION = "rda"

SECTION_FIELDS: dict[str, tuple[str, ...]] = {
    "dados_projeto": ("PROJETO_NOME", "ANO_BASE", "COMPETENCIA", "COORDENADOR_TECNICO"),
    "atividades": ("ATIVIDADES",),
    "resultados": ("RESULTADOS_ALCANCADOS",),
}
SECTION_ORDER: tuple[str, ...] = ("dados_projeto", "atividades", "resultados")
SECTION_LABELS: dict[str, str] = {
    "dados_projeto": "Dados do Projeto",
    "atividades": "Atividades",
    "resultados": "Resultados",
}

REQUIRED_FIELDS: tuple[str, ...] = (
    "PROJETO_NOME",
    "ANO_BASE",
    "COMPETENCIA",
    "COORDENADOR_TECNICO",
    "ATIVIDADES",
    "RESULTADOS_ALCANCADOS",
)

SCALAR_FIELDS: tuple[str, ...] = (
    "PROJETO_NOME",
    "ANO_BASE",
    "COMPETENCIA",
    "COORDENADOR_TECNICO",
    "RESULTADOS_ALCANCADOS",
)
ACTIVITY_FIELDS: tuple[str, ...] = (
    "NUMERO_ATIVIDADE",
    "NOME_ATIVIDADE",
    "PERIODO_ATIVIDADE",
    "DESCRICAO_ATIVIDADE",
    "JUSTIFICATIVA_ATIVIDADE",
    "RESULTADO_OBTIDO_ATIVIDADE",
    "DISPENDIOS_ATIVIDADE",
)
RESPONSIBLE_FIELDS: tuple[str, ...] = (
    "NOME_RESPONSAVEL",
    "CPF_RESPONSAVEL",
    "JUSTIFICATIVA_RESPONSAVEL",
)

# Ordered (step, progress) checkpoints of a pipeline run.
PIPELINE_CHECKPOINTS: tuple[tuple[str, int], ...] = (
    ("pipeline_start", 5),
    ("extractor_running", 15),
    ("extractor_done", 30),
    ("normalizer_running", 45),
    ("normalizer_done", 60),
    ("validator_running", 70),
    ("validator_done", 80),
    ("formatter_running", 88),
    ("formatter_done", 90),
    ("docx_rendering", 92),
    ("completed", 100),
)
CHECKPOINT_PROGRESS: dict[str, int] = dict(PIPELINE_CHECKPOINTS)

STEP_VALIDATION_FAILED = "validation_failed"
STEP_FAILED = "failed"
STEP_REVIEW_REPROCESSED = "review_reprocessed"
STEP_REVIEW_FINALIZED = "review_finalized"


def checkpoint_progress(step: str) -> int:
    try:
        return CHECKPOINT_PROGRESS[step]
    except KeyError as exc:
        raise ValueError(f"Unknown pipeline checkpoint '{step}'.") from exc


def fields_for_section(section_name: str) -> tuple[str, ...]:
    try:
        return SECTION_FIELDS[section_name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown report section '{section_name}'. Use one of: {', '.join(SECTION_ORDER)}."
        ) from exc


def fields_for_sections(section_names: list[str]) -> set[str]:
    selected: set[str] = set()
    for section_name in section_names:
        selected.update(fields_for_section(section_name))
    return selected


def section_for_field(field_name: str) -> str:
    """Review section owning a (possibly nested) field name."""
    if "ATIVIDADE" in field_name or "RESPONSAVEL" in field_name:
        return "atividades"
    for section_name, names in SECTION_FIELDS.items():
        if field_name in names:
            return section_name
    return "dados_projeto"
