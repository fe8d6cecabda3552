"""Course-objective achievement aggregation across the five taxonomy categories.

Score records are partitioned by course offering ``(courseId, session,
teacherId)``. Each group fetches its objective list once, matches records to
objectives by CO index, classifies the mark and folds the weighted
contribution into an immutable :class:`~schemas.AchievementTally`.

A group whose objective fetch or matching fails is reported as a failed
:class:`GroupOutcome` and contributes nothing; the remaining groups are still
aggregated. Records whose CO number does not resolve to an objective are
skipped without raising.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from schemas import AchievementTally, CategoryTally, CourseObjective, ScoreRecord, Verdict

logger = logging.getLogger("coattain.aggregation")

GroupKey = Tuple[str, str, str]


class ObjectiveFetchError(RuntimeError):
    """Raised by an objective repository when a lookup cannot be served."""


class ObjectiveRepository(Protocol):
    async def fetch_objectives(
        self, teacher_id: str, course_id: str, session: str
    ) -> Sequence[CourseObjective]:
        ...


@dataclass(frozen=True)
class RecordVerdict:
    record: ScoreRecord
    verdict: Verdict
    matched: bool


@dataclass(frozen=True)
class GroupOutcome:
    """Result of aggregating one course offering: a tally or a failure reason."""

    key: GroupKey
    tally: AchievementTally = field(default_factory=AchievementTally.zero)
    verdicts: Tuple[RecordVerdict, ...] = ()
    skipped: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def contribution(self) -> AchievementTally:
        return self.tally if self.ok else AchievementTally.zero()


@dataclass(frozen=True)
class AggregationReport:
    tally: AchievementTally
    groups: Tuple[GroupOutcome, ...]

    @property
    def verdicts(self) -> List[RecordVerdict]:
        return [verdict for group in self.groups for verdict in group.verdicts]

    @property
    def failed_groups(self) -> List[GroupOutcome]:
        return [group for group in self.groups if not group.ok]


def group_records(records: Iterable[ScoreRecord]) -> Dict[GroupKey, List[ScoreRecord]]:
    """Partition ``records`` by course offering, keeping first-seen group order."""

    groups: Dict[GroupKey, List[ScoreRecord]] = {}
    for record in records:
        groups.setdefault(record.group_key, []).append(record)
    return groups


def match_objective(record: ScoreRecord, objectives: Sequence[CourseObjective]) -> Optional[CourseObjective]:
    index = record.co_index
    if index is None or index >= len(objectives):
        return None
    return objectives[index]


def record_contribution(objective: CourseObjective, verdict: Verdict) -> AchievementTally:
    """Weight of one matched record: the code count of every non-empty category."""

    return AchievementTally.from_categories(
        {
            category: CategoryTally(achieved=weight if verdict.achieved else 0, total=weight)
            for category, weight in objective.taxonomies.weights().items()
        }
    )


def tally_group(
    key: GroupKey, records: Sequence[ScoreRecord], objectives: Sequence[CourseObjective]
) -> GroupOutcome:
    verdicts: List[RecordVerdict] = []
    contributions: List[AchievementTally] = []
    skipped = 0
    for record in records:
        verdict = record.verdict
        objective = match_objective(record, objectives)
        if objective is None:
            skipped += 1
            logger.debug(
                "Skipping %s for %s/%s/%s: no objective at that position (%d defined)",
                record.co_no, *key, len(objectives),
            )
            verdicts.append(RecordVerdict(record, verdict, matched=False))
            continue
        verdicts.append(RecordVerdict(record, verdict, matched=True))
        contributions.append(record_contribution(objective, verdict))
    return GroupOutcome(
        key=key,
        tally=combine_tallies(contributions),
        verdicts=tuple(verdicts),
        skipped=skipped,
    )


def combine_tallies(tallies: Iterable[AchievementTally]) -> AchievementTally:
    return reduce(lambda acc, item: acc + item, tallies, AchievementTally.zero())


def combine_outcomes(outcomes: Iterable[GroupOutcome]) -> AchievementTally:
    """Fold group outcomes into one tally; failed groups count as zero."""

    return combine_tallies(outcome.contribution for outcome in outcomes)


class AchievementAggregator:
    """Roll result-shaped score records up into a five-category achievement tally."""

    def __init__(self, repository: ObjectiveRepository, *, fan_out: bool = False) -> None:
        self.repository = repository
        self.fan_out = fan_out

    async def _resolve_group(self, key: GroupKey, records: Sequence[ScoreRecord]) -> GroupOutcome:
        course_id, session, teacher_id = key
        try:
            objectives = await self.repository.fetch_objectives(teacher_id, course_id, session)
            return tally_group(key, records, list(objectives))
        except Exception as exc:
            logger.warning(
                "Objective lookup failed for course=%s session=%s teacher=%s; group excluded from tally",
                course_id, session, teacher_id, exc_info=True,
            )
            return GroupOutcome(
                key=key,
                verdicts=tuple(RecordVerdict(record, record.verdict, matched=False) for record in records),
                error=str(exc) or exc.__class__.__name__,
            )

    async def aggregate(self, records: Iterable[ScoreRecord]) -> AggregationReport:
        groups = group_records(records)
        if self.fan_out:
            outcomes = await asyncio.gather(
                *(self._resolve_group(key, group) for key, group in groups.items())
            )
        else:
            outcomes = [await self._resolve_group(key, group) for key, group in groups.items()]

        report = AggregationReport(tally=combine_outcomes(outcomes), groups=tuple(outcomes))
        if report.failed_groups:
            logger.info("Aggregated %d groups, %d failed", len(outcomes), len(report.failed_groups))
        return report
