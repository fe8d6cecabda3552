# app.py — course outcome attainment service
# - Course objective upsert/lookup keyed by (teacherId, courseId, session)
# - Dashboard and student score queries
# - Five-category achievement tally and paginated report layouts

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

import db
from engines.aggregation import AchievementAggregator, AggregationReport
from env_validation import get_env_bool, validate_environment
from reports import (
    DASHBOARD_GEOMETRY,
    STUDENT_GEOMETRY,
    dashboard_sections,
    layout_report,
    serialize_layout,
    student_sections,
)
from schemas import CourseObjective, ScoreEntry, ScoreRecord
from taxonomy import CATEGORIES, PROGRAM_OUTCOMES, TAXONOMY_CODES, is_program_outcome

logger = logging.getLogger(__name__)

_APP_LOGGER = logging.getLogger("coattain")
if not _APP_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    _APP_LOGGER.addHandler(_handler)
_APP_LOGGER.setLevel(logging.INFO)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        db.init()
        logger.info("Database ready at %s | aggregation fan-out: %s",
                    db.DB_PATH, get_env_bool("AGGREGATION_FAN_OUT"))
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Course Outcome Attainment", version="1.0.0", lifespan=_lifespan)

OBJECTIVE_REPOSITORY = db.SQLiteObjectiveRepository()
SCORE_REPOSITORY = db.SQLiteScoreRepository()


@app.exception_handler(RequestValidationError)
async def _invalid_request(_: Request, exc: RequestValidationError):
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(status_code=400, content={"detail": "Missing or invalid parameters", "errors": errors})


# ---------- Schemas ----------
class SaveObjectivesBody(BaseModel):
    teacherId: str
    courseId: str
    session: str
    objectives: List[CourseObjective]

    @field_validator("teacherId", "courseId", "session")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class SaveObjectivesResponse(BaseModel):
    status: str
    message: str
    warnings: List[str] = Field(default_factory=list)


def _objective_warnings(objectives: List[CourseObjective]) -> List[str]:
    warnings = []
    for position, objective in enumerate(objectives, start=1):
        label = objective.co_no or f"CO{position}"
        if objective.mapped_program_outcome and not is_program_outcome(objective.mapped_program_outcome):
            warnings.append(f"{label}: unknown program outcome {objective.mapped_program_outcome}")
        for category in CATEGORIES:
            unknown = TAXONOMY_CODES.unknown_codes(category, objective.taxonomies.codes(category))
            if unknown:
                warnings.append(f"{label}: unknown {category.label} codes {', '.join(unknown)}")
    return warnings


def _achievement_payload(student_id: str, records: List[ScoreRecord], report: AggregationReport) -> Dict[str, Any]:
    tally = {
        category.value: {"label": category.label, **report.tally.get(category).model_dump()}
        for category in CATEGORIES
    }
    return {
        "studentId": student_id,
        "studentName": records[0].student_name if records else None,
        "tally": tally,
        "verdicts": [
            {
                "courseId": item.record.course_id,
                "session": item.record.session,
                "teacherId": item.record.teacher_id,
                "co_no": item.record.co_no,
                "verdict": item.verdict.value,
                "matched": item.matched,
            }
            for item in report.verdicts
        ],
        "failedGroups": [
            {"courseId": group.key[0], "session": group.key[1], "teacherId": group.key[2], "reason": group.error}
            for group in report.failed_groups
        ],
    }


# ---------- Reference data ----------
@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/program-outcomes")
def program_outcomes():
    return [{"no": po.no, "name": po.name} for po in PROGRAM_OUTCOMES]


@app.get("/sessions")
def sessions():
    return db.list_sessions()


# ---------- Course objectives ----------
@app.get("/objectives", response_model=List[CourseObjective])
def get_objectives(
    teacher_id: str = Query(..., alias="teacherId", min_length=1),
    course_id: str = Query(..., alias="courseId", min_length=1),
    session: str = Query(..., min_length=1),
):
    return db.get_course_objectives(teacher_id, course_id, session)


@app.post("/objectives", response_model=SaveObjectivesResponse)
def save_objectives(body: SaveObjectivesBody):
    warnings = _objective_warnings(body.objectives)
    for warning in warnings:
        logger.warning("Objective save for %s/%s/%s: %s", body.teacherId, body.courseId, body.session, warning)
    try:
        changed = db.upsert_course_objectives(body.teacherId, body.courseId, body.session, body.objectives)
    except Exception as exc:
        logger.exception("Error saving course objectives")
        raise HTTPException(status_code=500, detail="Internal Server Error") from exc
    if changed:
        return SaveObjectivesResponse(
            status="saved", message="Course objectives saved successfully", warnings=warnings
        )
    return SaveObjectivesResponse(
        status="unchanged", message="No changes were made to the course objectives.", warnings=warnings
    )


# ---------- Scores ----------
@app.post("/scores/entries")
def record_score_entry(entry: ScoreEntry):
    entry_id = db.save_score_entry(entry)
    return {"status": "ok", "id": entry_id}


@app.get("/scores/dashboard", response_model=List[ScoreEntry])
async def dashboard_scores(session: str = Query(..., min_length=1), po_no: str = Query(..., min_length=1)):
    return await SCORE_REPOSITORY.entries_for(session, po_no)


@app.get("/scores/student", response_model=List[ScoreRecord])
async def student_scores(student_id: str = Query(..., alias="studentId", min_length=1)):
    return await SCORE_REPOSITORY.results_for_student(student_id)


# ---------- Achievement ----------
@app.get("/achievement/student")
async def student_achievement(
    student_id: str = Query(..., alias="studentId", min_length=1),
    fan_out: Optional[bool] = Query(None, alias="fanOut"),
):
    records = await SCORE_REPOSITORY.results_for_student(student_id)
    use_fan_out = get_env_bool("AGGREGATION_FAN_OUT") if fan_out is None else fan_out
    aggregator = AchievementAggregator(OBJECTIVE_REPOSITORY, fan_out=use_fan_out)
    report = await aggregator.aggregate(records)
    return _achievement_payload(student_id, records, report)


# ---------- Report layouts ----------
@app.get("/reports/dashboard/layout")
async def dashboard_layout(session: str = Query(..., min_length=1), po_no: str = Query(..., min_length=1)):
    entries = await SCORE_REPOSITORY.entries_for(session, po_no)
    layout = layout_report(dashboard_sections(entries), DASHBOARD_GEOMETRY)
    return {"session": session, "po_no": po_no, "placements": serialize_layout(layout)}


@app.get("/reports/student/layout")
async def student_layout(student_id: str = Query(..., alias="studentId", min_length=1)):
    records = await SCORE_REPOSITORY.results_for_student(student_id)
    layout = layout_report(student_sections(records), STUDENT_GEOMETRY)
    return {"studentId": student_id, "placements": serialize_layout(layout)}
