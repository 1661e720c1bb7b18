from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel


EXTRACTOR_SYSTEM_PROMPT = "\n".join(
    [
        "Voce e o agente extrator do pipeline RDA.",
        "Responda SOMENTE JSON valido.",
        "Nao invente dados. Use pending/no_data quando faltar evidencia.",
        "Priorize rastreabilidade: cada campo deve ter evidence[] com fonte e snippet.",
    ]
)

NORMALIZER_SYSTEM_PROMPT = "\n".join(
    [
        "Voce e o agente normalizador do pipeline RDA.",
        "Responda SOMENTE JSON valido.",
        "Padronize linguagem formal PT-BR e mantenha fidelidade factual.",
        "Nao altere significado nem crie fatos.",
    ]
)

VALIDATOR_SYSTEM_PROMPT = "\n".join(
    [
        "Voce e o agente validador do pipeline RDA.",
        "Responda SOMENTE JSON valido.",
        "Valide consistencia, completude e aderencia ao periodo.",
        "Emita issues objetivas por campo, com sugestao acionavel.",
    ]
)


def _dump(value: Any) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in value]
    return json.dumps(value, ensure_ascii=True, indent=2, default=str)


def build_extractor_prompt(context: BaseModel, work_items: list[Any], sprints: list[Any]) -> str:
    return "\n".join(
        [
            "Extraia os dados estruturados do RDA com base no contexto abaixo.",
            "Formato de saida esperado: { sections: [{ section_name, fields: [...] }] }.",
            "Campos obrigatorios: PROJETO_NOME, ANO_BASE, COMPETENCIA, COORDENADOR_TECNICO, "
            "RESULTADOS_ALCANCADOS, ATIVIDADES[].",
            "",
            "Contexto:",
            _dump(context.model_dump(mode="json", exclude={"work_items", "sprints"})),
            "",
            "Work items do periodo:",
            _dump(work_items),
            "",
            "Sprints do periodo:",
            _dump(sprints),
        ]
    )


def build_normalizer_prompt(extraction: BaseModel, guide_text: str) -> str:
    return "\n".join(
        [
            "Normalize os campos extraidos para PT-BR formal.",
            "Mantenha estrutura de campos e evidencias.",
            "",
            "Guia de preenchimento:",
            guide_text,
            "",
            "Extracao:",
            _dump(extraction),
        ]
    )


def build_validator_prompt(normalization: BaseModel, placeholders: list[Any]) -> str:
    return "\n".join(
        [
            "Valide os dados normalizados e resuma riscos de preenchimento em texto curto.",
            "Aprovacao: false se houver campo obrigatorio ausente.",
            "",
            "Placeholders:",
            _dump(placeholders),
            "",
            "Normalizacao:",
            _dump(normalization),
        ]
    )
