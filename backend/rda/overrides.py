from __future__ import annotations

import copy
from dataclasses import dataclass
import logging
import re
from typing import Any, Mapping

from rda.schemas import FieldOverride

logger = logging.getLogger("rda.overrides")

FIELD_KEY_PATTERN = re.compile(r"^([A-Z_]+)(?:\[(\d+)\])?(?:\[(\d+)\])?$")


@dataclass(frozen=True)
class FieldKey:
    """Address of one value in a placeholder map.

    `NAME` targets a scalar, `NAME[i]` a key of activity i and `NAME[i][j]` a key
    of responsible j inside activity i.
    """

    name: str
    activity_index: int | None = None
    responsible_index: int | None = None

    def render(self) -> str:
        return build_field_key(self.name, self.activity_index, self.responsible_index)


@dataclass(frozen=True)
class FieldKeyParseError:
    raw: str
    reason: str


def parse_field_key(text: str) -> FieldKey | FieldKeyParseError:
    match = FIELD_KEY_PATTERN.match(text.strip())
    if match is None:
        return FieldKeyParseError(raw=text, reason=f"fieldKey invalido: {text}")
    name, activity, responsible = match.groups()
    return FieldKey(
        name=name,
        activity_index=int(activity) if activity is not None else None,
        responsible_index=int(responsible) if responsible is not None else None,
    )


def build_field_key(name: str, activity_index: int | None = None, responsible_index: int | None = None) -> str:
    if activity_index is None:
        return name
    if responsible_index is None:
        return f"{name}[{activity_index}]"
    return f"{name}[{activity_index}][{responsible_index}]"


def _target(placeholder_map: dict[str, Any], key: FieldKey) -> dict[str, Any] | None:
    if key.activity_index is None:
        return placeholder_map
    activities = placeholder_map.get("ATIVIDADES") or []
    if key.activity_index >= len(activities):
        return None
    activity = activities[key.activity_index]
    if key.responsible_index is None:
        return activity
    people = activity.get("RESPONSAVEIS") or []
    if key.responsible_index >= len(people):
        return None
    return people[key.responsible_index]


def get_field_value(placeholder_map: dict[str, Any], key: FieldKey) -> Any:
    target = _target(placeholder_map, key)
    return target.get(key.name) if target is not None else None


def set_field_value(placeholder_map: dict[str, Any], key: FieldKey, value: Any) -> bool:
    """Write in place; out-of-range indices leave the map untouched and return False."""
    target = _target(placeholder_map, key)
    if target is None:
        return False
    target[key.name] = value
    return True


def apply_overrides(placeholder_map: dict[str, Any], overrides: Mapping[str, FieldOverride]) -> dict[str, Any]:
    result = copy.deepcopy(placeholder_map)
    for raw_key, override in overrides.items():
        key = parse_field_key(raw_key)
        if isinstance(key, FieldKeyParseError):
            logger.warning(
                "override_skipped",
                extra={"event": "override_skipped", "field_key": raw_key, "reason": key.reason},
            )
            continue
        if not set_field_value(result, key, override.new_value):
            logger.warning(
                "override_skipped",
                extra={"event": "override_skipped", "field_key": raw_key, "reason": "index out of range"},
            )
    return result
