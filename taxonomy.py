"""Taxonomy categories, code catalogue loader and Program Outcome reference data."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class TaxonomyConfigError(ValueError):
    """Raised when ``taxonomy_codes.json`` contains invalid data."""


class TaxonomyCategory(str, Enum):
    """The five independent classification domains a course objective is tagged against."""

    BLOOMS = "blooms"
    FUNDAMENTAL = "fundamental"
    SOCIAL = "social"
    THINKING = "thinking"
    PERSONAL = "personal"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]

    @property
    def legacy_field(self) -> str:
        """Flat field name used by objective payloads that predate the nested ``taxonomies`` block."""

        return _LEGACY_FIELDS[self]


_CATEGORY_LABELS: Dict[TaxonomyCategory, str] = {
    TaxonomyCategory.BLOOMS: "Bloom's Taxonomy",
    TaxonomyCategory.FUNDAMENTAL: "Fundamental Profile",
    TaxonomyCategory.SOCIAL: "Social Profile",
    TaxonomyCategory.THINKING: "Thinking Profile",
    TaxonomyCategory.PERSONAL: "Personal Profile",
}

_LEGACY_FIELDS: Dict[TaxonomyCategory, str] = {
    TaxonomyCategory.BLOOMS: "bloomsTaxonomy",
    TaxonomyCategory.FUNDAMENTAL: "fundamentalProfile",
    TaxonomyCategory.SOCIAL: "socialProfile",
    TaxonomyCategory.THINKING: "thinkingProfile",
    TaxonomyCategory.PERSONAL: "personalProfile",
}

CATEGORIES: Tuple[TaxonomyCategory, ...] = tuple(TaxonomyCategory)


@dataclass(frozen=True)
class TaxonomyCode:
    """Immutable representation of a single taxonomy code definition."""

    category: TaxonomyCategory
    code: str
    label: str
    domain: Optional[str] = None


class TaxonomyRegistry:
    """Load the taxonomy code catalogue from ``taxonomy_codes.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        if path is None:
            path = os.getenv("TAXONOMY_CODES_PATH") or base_path / "taxonomy_codes.json"
        self.path = Path(path)
        self._codes: Dict[TaxonomyCategory, List[TaxonomyCode]] = {}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the catalogue from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Taxonomy codes file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, dict):
            raise TaxonomyConfigError("Taxonomy codes file must contain a JSON object")

        unknown = set(raw) - {category.value for category in CATEGORIES}
        if unknown:
            raise TaxonomyConfigError(f"Unknown taxonomy categories: {', '.join(sorted(unknown))}")

        codes: Dict[TaxonomyCategory, List[TaxonomyCode]] = {}
        for category in CATEGORIES:
            entries = raw.get(category.value, [])
            if not isinstance(entries, list):
                raise TaxonomyConfigError(f"Category {category.value} must be a JSON list")
            seen: set[str] = set()
            parsed: List[TaxonomyCode] = []
            for idx, entry in enumerate(entries, start=1):
                if not isinstance(entry, dict):
                    raise TaxonomyConfigError(f"{category.value} entry #{idx} must be a JSON object")
                code = str(entry.get("code", "")).strip()
                if not code:
                    raise TaxonomyConfigError(f"{category.value} entry #{idx} is missing a non-empty 'code'")
                if code in seen:
                    raise TaxonomyConfigError(f"Duplicate {category.value} code detected: {code}")
                seen.add(code)
                label = str(entry.get("label", "")).strip() or code
                domain = entry.get("domain")
                parsed.append(TaxonomyCode(category, code, label, str(domain) if domain else None))
            codes[category] = parsed

        self._codes = codes

    # ------------------------------------------------------------------
    def codes(self, category: TaxonomyCategory) -> Sequence[str]:
        """Return the known code identifiers for ``category`` in catalogue order."""

        return tuple(entry.code for entry in self._codes.get(category, []))

    def get(self, category: TaxonomyCategory, code: str) -> Optional[TaxonomyCode]:
        for entry in self._codes.get(category, []):
            if entry.code == code:
                return entry
        return None

    def unknown_codes(self, category: TaxonomyCategory, codes: Iterable[str]) -> List[str]:
        """Return the members of ``codes`` that the catalogue does not define for ``category``."""

        known = set(self.codes(category))
        return [code for code in codes if code not in known]

    def label_map(self, category: TaxonomyCategory) -> dict[str, str]:
        return {entry.code: entry.label for entry in self._codes.get(category, [])}

    def __iter__(self) -> Iterator[TaxonomyCode]:
        for category in CATEGORIES:
            yield from self._codes.get(category, [])


@dataclass(frozen=True)
class ProgramOutcome:
    no: str
    name: str


PROGRAM_OUTCOMES: Tuple[ProgramOutcome, ...] = (
    ProgramOutcome("PO1", "Engineering knowledge"),
    ProgramOutcome("PO2", "Problem analysis"),
    ProgramOutcome("PO3", "Design/development of solutions"),
    ProgramOutcome("PO4", "Conduct investigations of complex problems"),
    ProgramOutcome("PO5", "Modern tool usage"),
    ProgramOutcome("PO6", "The engineer and society"),
    ProgramOutcome("PO7", "Environment and sustainability"),
    ProgramOutcome("PO8", "Ethics"),
    ProgramOutcome("PO9", "Individual and team work"),
    ProgramOutcome("PO10", "Communication"),
    ProgramOutcome("PO11", "Project management and finance"),
    ProgramOutcome("PO12", "Life-long learning"),
)

_PROGRAM_OUTCOME_NUMBERS = frozenset(po.no for po in PROGRAM_OUTCOMES)


def is_program_outcome(value: str | None) -> bool:
    return bool(value) and str(value).strip().upper() in _PROGRAM_OUTCOME_NUMBERS


TAXONOMY_CODES = TaxonomyRegistry()
"""Singleton catalogue used throughout the application."""
