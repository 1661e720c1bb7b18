from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal
from urllib.parse import quote


ExternalUrlType = Literal[
    "azure_devops_sprint",
    "azure_devops_wiki",
    "azure_devops_workitem",
    "azure_devops_deliveryplan",
    "figma",
    "sharepoint",
    "planner",
    "network_path",
    "other",
]

URL_PATTERN = re.compile(r"https?://[^\s)>\"']+", flags=re.IGNORECASE)
UNC_PATH_PATTERN = re.compile(r"^\\\\[^\\]+\\[^\\]+")
DRIVE_PATH_PATTERN = re.compile(r"^[a-z]:\\", flags=re.IGNORECASE)
AZURE_DEVOPS_HOST_PATTERN = re.compile(r"dev\.azure\.com|visualstudio\.com")

# Checked in order; the first matching path marker wins.
_AZURE_DEVOPS_PATH_TYPES: tuple[tuple[str, ExternalUrlType], ...] = (
    ("_workitems/edit/", "azure_devops_workitem"),
    ("_wiki/", "azure_devops_wiki"),
    ("_sprints/", "azure_devops_sprint"),
    ("_deliveryplans", "azure_devops_deliveryplan"),
)
_HOST_TYPES: tuple[tuple[re.Pattern[str], ExternalUrlType], ...] = (
    (re.compile(r"figma\.com"), "figma"),
    (re.compile(r"sharepoint\.com|sharepoint\.cn"), "sharepoint"),
    (re.compile(r"planner\.cloud\.microsoft|tasks\.office\.com|tasks\.microsoft\.com"), "planner"),
)


@dataclass(frozen=True)
class ClassifiedUrl:
    url: str
    type: ExternalUrlType

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "type": self.type}


def classify_external_url(url: str) -> ExternalUrlType:
    lowered = url.strip().lower()
    if not lowered:
        return "other"

    if UNC_PATH_PATTERN.search(url) or DRIVE_PATH_PATTERN.search(url):
        return "network_path"

    if AZURE_DEVOPS_HOST_PATTERN.search(lowered):
        for marker, url_type in _AZURE_DEVOPS_PATH_TYPES:
            if marker in lowered:
                return url_type

    for pattern, url_type in _HOST_TYPES:
        if pattern.search(lowered):
            return url_type
    return "other"


def extract_and_classify_urls(text: str) -> list[ClassifiedUrl]:
    if not text:
        return []

    seen: set[str] = set()
    results: list[ClassifiedUrl] = []
    for match in URL_PATTERN.findall(text):
        candidate = match.strip()
        if candidate in seen:
            continue
        seen.add(candidate)
        results.append(ClassifiedUrl(url=candidate, type=classify_external_url(candidate)))
    return results


def _segment(value: str) -> str:
    return quote(value, safe="")


class AzureDevOpsUrlBuilder:
    """Builds browser links into an Azure DevOps organization."""

    def __init__(self, *, organization: str, project: str, team_name: str | None = None) -> None:
        self._organization = organization.rstrip("/")
        self._project = project
        self._team_name = team_name

    def sprint_taskboard(self, sprint_name: str) -> str:
        team = self._team_name or self._project
        return (
            f"{self._organization}/{_segment(self._project)}/{_segment(team)}"
            f"/_sprints/taskboard/{_segment(sprint_name)}"
        )

    def work_item(self, work_item_id: int | str) -> str:
        return f"{self._organization}/{_segment(self._project)}/_workitems/edit/{work_item_id}"

    def wiki_page(self, wiki_identifier: str, page_path: str) -> str:
        path = page_path if page_path.startswith("/") else f"/{page_path}"
        return f"{self._organization}/{_segment(self._project)}/_wiki/wikis/{_segment(wiki_identifier)}/page{path}"

    def delivery_plans(self, plan_id: str | None = None) -> str:
        base = f"{self._organization}/{_segment(self._project)}/_deliveryplans"
        if not plan_id:
            return base
        return f"{base}?planId={_segment(plan_id)}"
