"""Report section builders and layout for the PO dashboard and student reports.

Both reports hand the paginator one section per table. The dashboard groups
by score entry (one CO of one offering with its student marks); the student
report groups a student's results by course, in ascending course order. The
resulting placements are consumed by an external document renderer, which may
report back where each table actually ended.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from engines.pagination import Placement, ReportPaginator, Section, page_layout
from schemas import ScoreEntry, ScoreRecord


@dataclass(frozen=True)
class ReportGeometry:
    content_height: float
    top_margin: float
    first_page_top: float
    section_gap: float

    def paginator(self) -> ReportPaginator:
        return ReportPaginator(
            self.content_height,
            self.top_margin,
            section_gap=self.section_gap,
            first_page_top=self.first_page_top,
        )


# Units are PDF millimetres; the first page reserves room for the report header.
DASHBOARD_GEOMETRY = ReportGeometry(content_height=280, top_margin=20, first_page_top=45, section_gap=15)
# A4 landscape is 210 high, less a 20 bottom margin.
STUDENT_GEOMETRY = ReportGeometry(content_height=190, top_margin=20, first_page_top=45, section_gap=8)

DASHBOARD_COLUMNS = ["Student ID", "Student Name", "Mark"]
STUDENT_COLUMNS = ["CO", "Assessment", "Session", "Teacher", "PO", "Pass Mark", "Obtained", "Verdict"]


@dataclass(frozen=True)
class TableContract:
    """What the renderer draws for one section: a heading and a table."""

    title: str
    columns: List[str]
    rows: List[List[str]]
    subtitle: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


class DocumentRenderer(Protocol):
    def draw(self, placement: Placement) -> Optional[float]:
        """Draw ``placement`` and return the true end position, if known."""
        ...


def _format_mark(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def dashboard_sections(entries: Sequence[ScoreEntry]) -> List[Section]:
    sections = []
    for entry in entries:
        contract = TableContract(
            title=f"{entry.course_id} - {entry.co_no}",
            subtitle=(
                f"Teacher: {entry.teacher_id} | Assessment: {entry.assessment_type}"
                f" | Pass Mark: {_format_mark(entry.pass_mark)}"
            ),
            columns=list(DASHBOARD_COLUMNS),
            rows=[[score.student_id, score.name, _format_mark(score.obtained_mark)] for score in entry.scores],
            meta={"courseId": entry.course_id, "co_no": entry.co_no, "teacherId": entry.teacher_id},
        )
        sections.append(Section(estimated_height=(len(entry.scores) + 1) * 10 + 20, contract=contract))
    return sections


def student_sections(records: Sequence[ScoreRecord]) -> List[Section]:
    by_course: Dict[str, List[ScoreRecord]] = {}
    for record in records:
        by_course.setdefault(record.course_id, []).append(record)

    sections = []
    for course_id in sorted(by_course):
        course_records = by_course[course_id]
        rows = [
            [
                record.co_no,
                record.assessment_type,
                record.session,
                record.teacher_id,
                record.po_no,
                _format_mark(record.pass_mark),
                _format_mark(record.obtained_mark),
                record.verdict.value,
            ]
            for record in course_records
        ]
        contract = TableContract(
            title=course_id,
            columns=list(STUDENT_COLUMNS),
            rows=rows,
            meta={"courseId": course_id},
        )
        sections.append(Section(estimated_height=15 + len(course_records) * 8, contract=contract))
    return sections


def layout_report(
    sections: Iterable[Section],
    geometry: ReportGeometry,
    renderer: Optional[DocumentRenderer] = None,
) -> List[tuple[int, Placement]]:
    paginator = geometry.paginator()
    measurer = renderer.draw if renderer is not None else None
    return page_layout(paginator.paginate(sections, measurer))


def serialize_layout(layout: Iterable[tuple[int, Placement]]) -> List[Dict[str, Any]]:
    return [
        {
            "pageNumber": page_number,
            "y": placement.y,
            "estimatedHeight": placement.section.estimated_height,
            "section": asdict(placement.section.contract),
        }
        for page_number, placement in layout
    ]
