import asyncio
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from db_pool import SQLiteConnectionPool
from env_validation import get_env_int
from engines.aggregation import ObjectiveFetchError
from schemas import CourseObjective, ScoreEntry, ScoreRecord, StudentScore

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=get_env_int("DB_MAX_CONNECTIONS", 10))


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS course_objectives (
              teacher_id     TEXT NOT NULL,
              course_id      TEXT NOT NULL,
              session        TEXT NOT NULL,
              objectives     TEXT NOT NULL,
              last_modified  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (teacher_id, course_id, session)
            );

            CREATE TABLE IF NOT EXISTS score_entries (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              teacher_id       TEXT NOT NULL,
              course_id        TEXT NOT NULL,
              session          TEXT NOT NULL,
              co_no            TEXT NOT NULL,
              assessment_type  TEXT NOT NULL DEFAULT '',
              pass_mark        REAL NOT NULL,
              po_no            TEXT NOT NULL DEFAULT '',
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_score_entries_session_po ON score_entries(session, po_no);

            CREATE TABLE IF NOT EXISTS entry_scores (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              entry_id       INTEGER NOT NULL REFERENCES score_entries(id) ON DELETE CASCADE,
              student_id     TEXT NOT NULL,
              student_name   TEXT NOT NULL DEFAULT '',
              obtained_mark  TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_entry_scores_student ON entry_scores(student_id);
            """
        )
        con.commit()


# -------------- course objectives --------------
def _encode_objectives(objectives: Sequence[CourseObjective]) -> str:
    return json_dumps([objective.model_dump(mode="json", by_alias=True) for objective in objectives])


def get_course_objectives(teacher_id: str, course_id: str, session: str) -> List[CourseObjective]:
    """Return the ordered objective list for a course offering, or ``[]`` when none is saved."""
    rows = _query(
        "SELECT objectives FROM course_objectives WHERE teacher_id = ? AND course_id = ? AND session = ?",
        (teacher_id, course_id, session),
    )
    if not rows:
        return []
    payload = _decode_json_field(rows[0]["objectives"])
    if not isinstance(payload, list):
        logger.warning("Discarding malformed objectives for %s/%s/%s", teacher_id, course_id, session)
        return []
    return [CourseObjective.model_validate(item) for item in payload]


def upsert_course_objectives(
    teacher_id: str,
    course_id: str,
    session: str,
    objectives: Sequence[CourseObjective],
) -> bool:
    """Store ``objectives`` for the offering; return ``False`` when nothing changed.

    Concurrent writers to the same key are not serialized: the last write wins.
    """
    encoded = _encode_objectives(objectives)
    rows = _query(
        "SELECT objectives FROM course_objectives WHERE teacher_id = ? AND course_id = ? AND session = ?",
        (teacher_id, course_id, session),
    )
    if rows and rows[0]["objectives"] == encoded:
        return False
    _exec(
        """
        INSERT INTO course_objectives (teacher_id, course_id, session, objectives, last_modified)
        VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(teacher_id, course_id, session) DO UPDATE SET
            objectives = excluded.objectives,
            last_modified = CURRENT_TIMESTAMP
        """,
        (teacher_id, course_id, session, encoded),
    )
    return True


# -------------- score entries --------------
def save_score_entry(entry: ScoreEntry) -> int:
    with _conn() as con:
        cur = con.execute(
            """
            INSERT INTO score_entries (teacher_id, course_id, session, co_no, assessment_type, pass_mark, po_no)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.teacher_id,
                entry.course_id,
                entry.session,
                entry.co_no,
                entry.assessment_type,
                entry.pass_mark,
                entry.po_no,
            ),
        )
        entry_id = cur.lastrowid
        con.executemany(
            "INSERT INTO entry_scores (entry_id, student_id, student_name, obtained_mark) VALUES (?, ?, ?, ?)",
            [
                (entry_id, score.student_id, score.name, json.dumps(score.obtained_mark))
                for score in entry.scores
            ],
        )
        con.commit()
    return int(entry_id)


def _scores_for(entry_ids: Sequence[int]) -> dict[int, list[StudentScore]]:
    if not entry_ids:
        return {}
    placeholders = ",".join("?" for _ in entry_ids)
    rows = _query(
        f"""
        SELECT entry_id, student_id, student_name, obtained_mark
        FROM entry_scores WHERE entry_id IN ({placeholders})
        ORDER BY id
        """,
        list(entry_ids),
    )
    scores: dict[int, list[StudentScore]] = {}
    for row in rows:
        scores.setdefault(row["entry_id"], []).append(
            StudentScore(
                student_id=row["student_id"],
                name=row["student_name"],
                obtained_mark=_decode_json_field(row["obtained_mark"]),
            )
        )
    return scores


def _entries_from_rows(rows: Sequence[sqlite3.Row]) -> List[ScoreEntry]:
    scores = _scores_for([row["id"] for row in rows])
    return [
        ScoreEntry(
            course_id=row["course_id"],
            session=row["session"],
            teacher_id=row["teacher_id"],
            co_no=row["co_no"],
            assessment_type=row["assessment_type"],
            pass_mark=row["pass_mark"],
            po_no=row["po_no"],
            scores=scores.get(row["id"], []),
        )
        for row in rows
    ]


def fetch_score_entries(session: str, po_no: str) -> List[ScoreEntry]:
    """Entry-shaped rows for the dashboard, in recording order."""
    rows = _query(
        "SELECT * FROM score_entries WHERE session = ? AND po_no = ? ORDER BY id",
        (session, po_no),
    )
    return _entries_from_rows(rows)


def fetch_student_results(student_id: str) -> List[ScoreRecord]:
    """Result-shaped rows (one per CO) for ``student_id``, in recording order."""
    rows = _query(
        """
        SELECT DISTINCT e.* FROM score_entries e
        JOIN entry_scores s ON s.entry_id = e.id
        WHERE s.student_id = ?
        ORDER BY e.id
        """,
        (student_id,),
    )
    results: List[ScoreRecord] = []
    for entry in _entries_from_rows(rows):
        results.extend(entry.flatten(student_id))
    return results


def list_sessions() -> List[str]:
    rows = _query("SELECT DISTINCT session FROM score_entries ORDER BY session")
    return [row["session"] for row in rows]


# -------------- repositories --------------
class SQLiteObjectiveRepository:
    """Objective lookups for the aggregator, run off the event loop."""

    async def fetch_objectives(self, teacher_id: str, course_id: str, session: str) -> List[CourseObjective]:
        try:
            return await asyncio.to_thread(get_course_objectives, teacher_id, course_id, session)
        except sqlite3.Error as exc:
            raise ObjectiveFetchError(
                f"objectives unavailable for {course_id}/{session}/{teacher_id}: {exc}"
            ) from exc


class SQLiteScoreRepository:
    async def entries_for(self, session: str, po_no: str) -> List[ScoreEntry]:
        return await asyncio.to_thread(fetch_score_entries, session, po_no)

    async def results_for_student(self, student_id: str) -> List[ScoreRecord]:
        return await asyncio.to_thread(fetch_student_results, student_id)
