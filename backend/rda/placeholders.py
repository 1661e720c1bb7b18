from __future__ import annotations

from typing import Any

from rda.schemas import NormalizationOutput
from rda.sections import ACTIVITY_FIELDS, RESPONSIBLE_FIELDS, SCALAR_FIELDS


def normalization_value(normalization: NormalizationOutput, field_name: str) -> Any:
    for field in normalization.all_fields():
        if field.field_name == field_name:
            return field.normalized_value if field.normalized_value is not None else field.value
    return None


def _as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _activity_row(item: Any, index: int) -> dict[str, Any]:
    row = item if isinstance(item, dict) else {}
    defaults = {
        "NUMERO_ATIVIDADE": str(index + 1),
        "NOME_ATIVIDADE": f"Atividade {index + 1}",
    }
    activity: dict[str, Any] = {
        name: _as_text(row.get(name), defaults.get(name, "")) for name in ACTIVITY_FIELDS
    }
    people = row.get("RESPONSAVEIS")
    activity["RESPONSAVEIS"] = [
        {name: _as_text(person.get(name) if isinstance(person, dict) else None) for name in RESPONSIBLE_FIELDS}
        for person in (people if isinstance(people, list) else [])
    ]
    return activity


def build_placeholder_map(normalization: NormalizationOutput) -> dict[str, Any]:
    """Flatten a normalization into the map handed to the document renderer.

    Scalars are stringified (missing values become ""). ATIVIDADES is always a
    list of activity rows, each with every activity key and a RESPONSAVEIS list.
    """
    placeholder_map: dict[str, Any] = {
        name: _as_text(normalization_value(normalization, name)) for name in SCALAR_FIELDS
    }
    activities = normalization_value(normalization, "ATIVIDADES")
    placeholder_map["ATIVIDADES"] = [
        _activity_row(item, index) for index, item in enumerate(activities if isinstance(activities, list) else [])
    ]
    return placeholder_map
