"""Resource catalog: which FHIR types are synced and how to reach them.

Loaded from ``resource_types.yaml`` so a resource type can be added
without code changes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).with_name("resource_types.yaml")
PATIENT = "Patient"


class CatalogError(Exception):
    """Raised when the resource catalog is missing or malformed."""


@dataclass(frozen=True)
class ResourceType:
    """One supported FHIR resource type."""

    name: str
    tool: str
    display_name: str = ""
    scope_param: str = "subject"
    date_param: str | None = None
    code_param: str | None = None
    categories: bool = False
    keywords: tuple[str, ...] = ()

    @property
    def coded(self) -> bool:
        return self.code_param is not None


@dataclass(frozen=True)
class MedicalTerm:
    """A lay term and the LOINC codes it stands for."""

    name: str
    codes: tuple[str, ...]
    synonyms: tuple[str, ...] = ()


@dataclass
class ResourceCatalog:
    """Ordered registry of resource types plus the medical term vocabulary."""

    resource_types: list[ResourceType]
    fallback_tool: str = "request_generic_resource"
    terms: list[MedicalTerm] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_name = {rt.name.lower(): rt for rt in self.resource_types}

    @property
    def names(self) -> list[str]:
        """Resource type names in declared (sync) order."""
        return [rt.name for rt in self.resource_types]

    def get(self, name: str) -> ResourceType | None:
        return self._by_name.get(name.lower())

    def tool_for(self, name: str) -> str:
        rt = self.get(name)
        return rt.tool if rt else self.fallback_tool

    def match_resource_type(self, text: str) -> ResourceType | None:
        """Return the type whose keyword best matches ``text``.

        The longest matching keyword wins; ties go to the earlier type.
        """
        lowered = text.lower()
        best: tuple[int, ResourceType] | None = None
        for rt in self.resource_types:
            for keyword in (rt.name.lower(), *rt.keywords):
                if re.search(r"\b" + re.escape(keyword), lowered):
                    if best is None or len(keyword) > best[0]:
                        best = (len(keyword), rt)
        return best[1] if best else None

    def match_terms(self, text: str) -> list[MedicalTerm]:
        """Return every medical term mentioned in ``text`` by name or synonym."""
        lowered = text.lower()
        matched = []
        for term in self.terms:
            for phrase in (term.name, *term.synonyms):
                if re.search(r"\b" + re.escape(phrase) + r"\b", lowered):
                    matched.append(term)
                    break
        return matched


def load_catalog(path: str | Path | None = None) -> ResourceCatalog:
    """Parse a catalog YAML file (defaults to the bundled one).

    Raises:
        CatalogError: If the file is missing or an entry lacks ``name``/``tool``.
    """
    path = Path(path) if path else DEFAULT_CATALOG_PATH
    try:
        with open(path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise CatalogError(f"Cannot load resource catalog {path}: {exc}") from exc

    resource_types = []
    for entry in data.get("resource_types", []):
        if not entry.get("name") or not entry.get("tool"):
            raise CatalogError(f"Catalog entry missing name or tool: {entry!r}")
        resource_types.append(ResourceType(
            name=entry["name"],
            tool=entry["tool"],
            display_name=entry.get("display_name", entry["name"]),
            scope_param=entry.get("scope_param", "subject"),
            date_param=entry.get("date_param"),
            code_param=entry.get("code_param"),
            categories=bool(entry.get("categories", False)),
            keywords=tuple(k.lower() for k in entry.get("keywords", [])),
        ))
    if not resource_types:
        raise CatalogError(f"Resource catalog {path} declares no resource types")

    terms = [
        MedicalTerm(
            name=name.lower(),
            codes=tuple(str(c) for c in entry.get("codes", [])),
            synonyms=tuple(s.lower() for s in entry.get("synonyms", [])),
        )
        for name, entry in (data.get("terms") or {}).items()
    ]

    logger.debug("Loaded %d resource types from %s", len(resource_types), path)
    return ResourceCatalog(
        resource_types=resource_types,
        fallback_tool=data.get("fallback_tool", "request_generic_resource"),
        terms=terms,
    )
