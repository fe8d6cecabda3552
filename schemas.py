"""Pydantic schemas for score records, course objectives and achievement tallies."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    computed_field,
    field_validator,
    model_validator,
)

from taxonomy import CATEGORIES, TaxonomyCategory

__all__ = [
    "MarkValue",
    "Verdict",
    "is_numeric_mark",
    "parse_co_index",
    "classify_mark",
    "ScoreRecord",
    "StudentScore",
    "ScoreEntry",
    "TaxonomyTags",
    "CourseObjective",
    "CategoryTally",
    "AchievementTally",
]

# Numeric marks arrive as JSON numbers; anything else (e.g. "AB") marks an absence.
MarkValue = Union[StrictInt, StrictFloat, StrictStr]

# Leading signed integer of a CO number once its first "CO" is removed.
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class Verdict(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"
    ABSENT = "Absent"

    @property
    def achieved(self) -> bool:
        return self is Verdict.PASS


def is_numeric_mark(value: Any) -> bool:
    """Return ``True`` when ``value`` is a real number rather than an absence marker."""

    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_co_index(co_no: Optional[str]) -> Optional[int]:
    """Translate ``"CO<n>"`` into the zero-based index ``n - 1``.

    The first ``"CO"`` (case-sensitive) is removed and the leading integer of
    the remainder is read, so ``"CO 4"`` and ``"CO1a"`` resolve while ``"co3"``
    does not. Returns ``None`` when no integer leads the remainder or when the
    index would be negative (``"CO0"``).
    """

    if not co_no:
        return None
    match = _LEADING_INT.match(str(co_no).replace("CO", "", 1))
    if not match:
        return None
    index = int(match.group(1)) - 1
    return index if index >= 0 else None


def classify_mark(obtained_mark: Any, pass_mark: float) -> Verdict:
    if not is_numeric_mark(obtained_mark):
        return Verdict.ABSENT
    return Verdict.PASS if obtained_mark >= pass_mark else Verdict.FAIL


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ScoreRecord(_WireModel):
    """Result-shaped score row: one student, one course objective."""

    course_id: str = Field(alias="courseId")
    session: str
    teacher_id: str = Field(alias="teacherId")
    co_no: str
    assessment_type: str = Field(default="", alias="assessmentType")
    pass_mark: float = Field(alias="passMark")
    obtained_mark: MarkValue = Field(alias="obtainedMark")
    po_no: str = ""
    student_id: Optional[str] = Field(default=None, alias="studentId")
    student_name: Optional[str] = Field(default=None, alias="studentName")

    @property
    def group_key(self) -> Tuple[str, str, str]:
        return (self.course_id, self.session, self.teacher_id)

    @property
    def co_index(self) -> Optional[int]:
        return parse_co_index(self.co_no)

    @property
    def verdict(self) -> Verdict:
        return classify_mark(self.obtained_mark, self.pass_mark)


class StudentScore(_WireModel):
    student_id: str = Field(alias="studentId")
    name: str = ""
    obtained_mark: MarkValue = Field(alias="obtainedMark")


class ScoreEntry(_WireModel):
    """Entry-shaped score row: one course objective with its per-student scores.

    This is the dashboard shape. It is not accepted where a ``ScoreRecord`` is
    expected; use :meth:`flatten` to derive result-shaped rows explicitly.
    """

    course_id: str = Field(alias="courseId")
    session: str
    teacher_id: str = Field(alias="teacherId")
    co_no: str
    assessment_type: str = Field(default="", alias="assessmentType")
    pass_mark: float = Field(alias="passMark")
    po_no: str = ""
    scores: List[StudentScore] = Field(default_factory=list)

    @field_validator("course_id", "session", "teacher_id", "co_no")
    @classmethod
    def _require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    def flatten(self, student_id: Optional[str] = None) -> List[ScoreRecord]:
        """Expand into result-shaped records, optionally for a single student."""

        return [
            ScoreRecord(
                course_id=self.course_id,
                session=self.session,
                teacher_id=self.teacher_id,
                co_no=self.co_no,
                assessment_type=self.assessment_type,
                pass_mark=self.pass_mark,
                obtained_mark=score.obtained_mark,
                po_no=self.po_no,
                student_id=score.student_id,
                student_name=score.name,
            )
            for score in self.scores
            if student_id is None or score.student_id == student_id
        ]


class TaxonomyTags(_WireModel):
    blooms: List[str] = Field(default_factory=list)
    fundamental: List[str] = Field(default_factory=list)
    social: List[str] = Field(default_factory=list)
    thinking: List[str] = Field(default_factory=list)
    personal: List[str] = Field(default_factory=list)

    @field_validator("blooms", "fundamental", "social", "thinking", "personal", mode="before")
    @classmethod
    def _normalise_codes(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple, set)):
            raise ValueError("taxonomy codes must be a list of strings")
        codes: List[str] = []
        for item in value:
            code = str(item).strip()
            if code and code not in codes:
                codes.append(code)
        return codes

    def codes(self, category: TaxonomyCategory) -> Tuple[str, ...]:
        if category is TaxonomyCategory.BLOOMS:
            return tuple(self.blooms)
        if category is TaxonomyCategory.FUNDAMENTAL:
            return tuple(self.fundamental)
        if category is TaxonomyCategory.SOCIAL:
            return tuple(self.social)
        if category is TaxonomyCategory.THINKING:
            return tuple(self.thinking)
        if category is TaxonomyCategory.PERSONAL:
            return tuple(self.personal)
        raise ValueError(f"Unknown taxonomy category: {category!r}")

    def weights(self) -> Dict[TaxonomyCategory, int]:
        """Return the code count per category; categories without codes are omitted."""

        return {category: len(self.codes(category)) for category in CATEGORIES if self.codes(category)}


class CourseObjective(_WireModel):
    co_no: Optional[str] = None
    course_objective: str = Field(default="", alias="courseObjective")
    mapped_program_outcome: str = Field(default="", alias="mappedProgramOutcome")
    taxonomies: TaxonomyTags = Field(default_factory=TaxonomyTags)

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_taxonomy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "taxonomies" in data:
            return data
        lifted = {category.value: data.get(category.legacy_field) for category in CATEGORIES}
        if not any(lifted.values()):
            return data
        payload = {key: value for key, value in data.items() if key not in {c.legacy_field for c in CATEGORIES}}
        payload["taxonomies"] = lifted
        return payload


class CategoryTally(_WireModel):
    achieved: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _achieved_within_total(self) -> "CategoryTally":
        if self.achieved > self.total:
            raise ValueError("achieved must not exceed total")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.achieved / self.total * 100

    def __add__(self, other: "CategoryTally") -> "CategoryTally":
        return CategoryTally(achieved=self.achieved + other.achieved, total=self.total + other.total)


class AchievementTally(_WireModel):
    """Achieved/total counters for each of the five taxonomy categories."""

    blooms: CategoryTally = Field(default_factory=CategoryTally)
    fundamental: CategoryTally = Field(default_factory=CategoryTally)
    social: CategoryTally = Field(default_factory=CategoryTally)
    thinking: CategoryTally = Field(default_factory=CategoryTally)
    personal: CategoryTally = Field(default_factory=CategoryTally)

    @classmethod
    def zero(cls) -> "AchievementTally":
        return cls()

    @classmethod
    def from_categories(cls, counts: Dict[TaxonomyCategory, CategoryTally]) -> "AchievementTally":
        zero = CategoryTally()
        return cls(
            blooms=counts.get(TaxonomyCategory.BLOOMS, zero),
            fundamental=counts.get(TaxonomyCategory.FUNDAMENTAL, zero),
            social=counts.get(TaxonomyCategory.SOCIAL, zero),
            thinking=counts.get(TaxonomyCategory.THINKING, zero),
            personal=counts.get(TaxonomyCategory.PERSONAL, zero),
        )

    def get(self, category: TaxonomyCategory) -> CategoryTally:
        if category is TaxonomyCategory.BLOOMS:
            return self.blooms
        if category is TaxonomyCategory.FUNDAMENTAL:
            return self.fundamental
        if category is TaxonomyCategory.SOCIAL:
            return self.social
        if category is TaxonomyCategory.THINKING:
            return self.thinking
        if category is TaxonomyCategory.PERSONAL:
            return self.personal
        raise ValueError(f"Unknown taxonomy category: {category!r}")

    def categories(self) -> Dict[TaxonomyCategory, CategoryTally]:
        return {category: self.get(category) for category in CATEGORIES}

    def percentages(self) -> Dict[TaxonomyCategory, float]:
        return {category: tally.percentage for category, tally in self.categories().items()}

    def __add__(self, other: "AchievementTally") -> "AchievementTally":
        return AchievementTally.from_categories(
            {category: self.get(category) + other.get(category) for category in CATEGORIES}
        )
