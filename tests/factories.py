"""Builders shared by the aggregation, report and endpoint tests."""

from typing import Dict, Iterable, List, Optional, Tuple

from engines.aggregation import ObjectiveFetchError
from schemas import CourseObjective, ScoreEntry, ScoreRecord, StudentScore, TaxonomyTags


def make_objective(co_no: str = "CO1", **codes) -> CourseObjective:
    return CourseObjective(
        co_no=co_no,
        course_objective=f"Objective {co_no}",
        mapped_program_outcome="PO1",
        taxonomies=TaxonomyTags(**codes),
    )


def make_record(
    co_no: str = "CO1",
    obtained=85,
    *,
    pass_mark: float = 60,
    course_id: str = "CSE101",
    session: str = "2024-25",
    teacher_id: str = "T1",
    student_id: str = "S1",
) -> ScoreRecord:
    return ScoreRecord(
        course_id=course_id,
        session=session,
        teacher_id=teacher_id,
        co_no=co_no,
        assessment_type="Mid",
        pass_mark=pass_mark,
        obtained_mark=obtained,
        po_no="PO1",
        student_id=student_id,
        student_name="Student One",
    )


def make_entry(
    co_no: str = "CO1",
    marks: Iterable = (85,),
    *,
    course_id: str = "CSE101",
    session: str = "2024-25",
    teacher_id: str = "T1",
    po_no: str = "PO1",
    pass_mark: float = 60,
) -> ScoreEntry:
    return ScoreEntry(
        course_id=course_id,
        session=session,
        teacher_id=teacher_id,
        co_no=co_no,
        assessment_type="Final",
        pass_mark=pass_mark,
        po_no=po_no,
        scores=[
            StudentScore(student_id=f"S{idx}", name=f"Student {idx}", obtained_mark=mark)
            for idx, mark in enumerate(marks, start=1)
        ],
    )


class FakeObjectiveRepository:
    def __init__(
        self,
        objectives: Optional[Dict[Tuple[str, str, str], List[CourseObjective]]] = None,
        failing: Iterable[Tuple[str, str, str]] = (),
    ):
        self.objectives = objectives or {}
        self.failing = set(failing)
        self.calls: List[Tuple[str, str, str]] = []

    async def fetch_objectives(self, teacher_id, course_id, session):
        key = (teacher_id, course_id, session)
        self.calls.append(key)
        if key in self.failing:
            raise ObjectiveFetchError(f"lookup failed for {course_id}")
        return self.objectives.get(key, [])
