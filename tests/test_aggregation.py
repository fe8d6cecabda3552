import asyncio
import itertools
import logging

import pytest

from engines.aggregation import (
    AchievementAggregator,
    GroupOutcome,
    combine_outcomes,
    group_records,
    tally_group,
)
from factories import FakeObjectiveRepository, make_objective, make_record
from schemas import AchievementTally, CategoryTally, Verdict
from taxonomy import CATEGORIES, TaxonomyCategory

KEY_T1 = ("T1", "CSE101", "2024-25")
KEY_T2 = ("T2", "CSE101", "2024-25")


def _aggregate(repository, records, *, fan_out=False):
    return asyncio.run(AchievementAggregator(repository, fan_out=fan_out).aggregate(records))


def _counts(tally: AchievementTally) -> dict:
    return {category: (tally.get(category).achieved, tally.get(category).total) for category in CATEGORIES}


@pytest.fixture
def three_objectives():
    return [
        make_objective("CO1", blooms=["C2", "C3"], fundamental=["F1"], thinking=["T1"]),
        make_objective("CO2", blooms=["C4"], social=["S1", "S2"]),
        make_objective("CO3", personal=["P1"]),
    ]


def test_pass_counts_achieved_and_total_for_every_tagged_category(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})

    report = _aggregate(repository, [make_record("CO1", 85, pass_mark=60)])

    assert _counts(report.tally) == {
        TaxonomyCategory.BLOOMS: (2, 2),
        TaxonomyCategory.FUNDAMENTAL: (1, 1),
        TaxonomyCategory.SOCIAL: (0, 0),
        TaxonomyCategory.THINKING: (1, 1),
        TaxonomyCategory.PERSONAL: (0, 0),
    }
    assert [item.verdict for item in report.verdicts] == [Verdict.PASS]


def test_absent_mark_counts_towards_total_only(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})

    report = _aggregate(repository, [make_record("CO1", "AB")])

    assert report.tally.blooms == CategoryTally(achieved=0, total=2)
    assert report.tally.fundamental == CategoryTally(achieved=0, total=1)
    assert report.tally.thinking == CategoryTally(achieved=0, total=1)
    assert report.verdicts[0].verdict is Verdict.ABSENT


def test_fail_counts_towards_total_only(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})

    report = _aggregate(repository, [make_record("CO2", 59.5, pass_mark=60)])

    assert report.tally.blooms == CategoryTally(achieved=0, total=1)
    assert report.tally.social == CategoryTally(achieved=0, total=2)
    assert report.verdicts[0].verdict is Verdict.FAIL


def test_mark_equal_to_pass_mark_passes(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})

    report = _aggregate(repository, [make_record("CO3", 60, pass_mark=60)])

    assert report.tally.personal == CategoryTally(achieved=1, total=1)


@pytest.mark.parametrize("co_no", ["CO5", "CO0", "COX", "", "5"])
def test_unresolvable_co_number_is_skipped(three_objectives, co_no):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})

    report = _aggregate(repository, [make_record(co_no, 90)])

    assert report.tally == AchievementTally.zero()
    assert report.groups[0].skipped == 1
    assert report.groups[0].ok
    assert report.verdicts[0].matched is False


def test_skipped_record_does_not_affect_other_records(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})

    with_orphan = _aggregate(repository, [make_record("CO1", 85), make_record("CO5", 85)])
    without_orphan = _aggregate(repository, [make_record("CO1", 85)])

    assert with_orphan.tally == without_orphan.tally


def test_empty_input_yields_zero_tally():
    repository = FakeObjectiveRepository()

    report = _aggregate(repository, [])

    for category in CATEGORIES:
        assert report.tally.get(category) == CategoryTally(achieved=0, total=0)
        assert report.tally.get(category).percentage == 0
    assert repository.calls == []


def test_same_course_with_different_teachers_is_tallied_per_offering():
    repository = FakeObjectiveRepository(
        {
            KEY_T1: [make_objective("CO1", blooms=["C1"])],
            KEY_T2: [make_objective("CO1", blooms=["C1", "C2", "C3"])],
        }
    )
    records = [make_record("CO1", 70, teacher_id="T1"), make_record("CO1", 10, teacher_id="T2")]

    report = _aggregate(repository, records)

    assert repository.calls == [KEY_T1, KEY_T2]
    assert [group.tally.blooms for group in report.groups] == [
        CategoryTally(achieved=1, total=1),
        CategoryTally(achieved=0, total=3),
    ]
    assert report.tally.blooms == CategoryTally(achieved=1, total=4)


def test_groups_keep_first_seen_order_and_fetch_once():
    records = [
        make_record("CO1", course_id="MAT201"),
        make_record("CO1", course_id="CSE101"),
        make_record("CO2", course_id="MAT201"),
    ]

    groups = group_records(records)

    assert list(groups) == [("MAT201", "2024-25", "T1"), ("CSE101", "2024-25", "T1")]
    assert [record.co_no for record in groups[("MAT201", "2024-25", "T1")]] == ["CO1", "CO2"]


def test_weight_is_code_count_per_record(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})
    records = [make_record("CO1", 90, student_id=f"S{idx}") for idx in range(3)]

    report = _aggregate(repository, records)

    assert report.tally.blooms == CategoryTally(achieved=6, total=6)


def test_failed_group_is_isolated_and_logged(three_objectives, caplog):
    repository = FakeObjectiveRepository(
        {KEY_T1: three_objectives, KEY_T2: three_objectives},
        failing=[KEY_T1],
    )
    records = [make_record("CO1", 90, teacher_id="T1"), make_record("CO1", 90, teacher_id="T2")]

    with caplog.at_level(logging.WARNING, logger="coattain.aggregation"):
        report = _aggregate(repository, records)

    assert report.tally.blooms == CategoryTally(achieved=2, total=2)
    assert [group.ok for group in report.groups] == [False, True]
    assert "lookup failed" in report.failed_groups[0].error
    assert "Objective lookup failed" in caplog.text


def test_all_groups_failing_still_returns_zero_tally(three_objectives):
    repository = FakeObjectiveRepository(failing=[KEY_T1, KEY_T2])
    records = [make_record("CO1", 90, teacher_id="T1"), make_record("CO1", 90, teacher_id="T2")]

    report = _aggregate(repository, records)

    assert report.tally == AchievementTally.zero()
    assert all(tally.percentage == 0 for tally in report.tally.categories().values())
    assert len(report.failed_groups) == 2


@pytest.mark.parametrize("fan_out", [False, True])
def test_malformed_objective_payload_fails_only_its_group(fan_out):
    class NoneForT1Repository(FakeObjectiveRepository):
        async def fetch_objectives(self, teacher_id, course_id, session):
            objectives = await super().fetch_objectives(teacher_id, course_id, session)
            return None if teacher_id == "T1" else objectives

    repository = NoneForT1Repository({KEY_T2: [make_objective("CO1", blooms=["C1"])]})
    records = [make_record("CO1", 90, teacher_id="T1"), make_record("CO1", 90, teacher_id="T2")]

    report = _aggregate(repository, records, fan_out=fan_out)

    assert report.tally.blooms == CategoryTally(achieved=1, total=1)
    assert [group.ok for group in report.groups] == [False, True]
    assert [item.matched for item in report.groups[0].verdicts] == [False]
    assert report.failed_groups[0].key == KEY_T1


def test_aggregation_is_idempotent_and_leaves_inputs_untouched(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})
    records = [make_record("CO1", 90), make_record("CO2", "AB"), make_record("CO3", 10)]
    snapshot = [record.model_dump() for record in records]
    objectives_snapshot = [objective.model_dump() for objective in three_objectives]

    first = _aggregate(repository, records)
    second = _aggregate(repository, records)

    assert first.tally == second.tally
    assert [record.model_dump() for record in records] == snapshot
    assert [objective.model_dump() for objective in three_objectives] == objectives_snapshot


def test_tally_is_independent_of_record_order():
    repository = FakeObjectiveRepository(
        {
            KEY_T1: [make_objective("CO1", blooms=["C1"]), make_objective("CO2", social=["S1"])],
            KEY_T2: [make_objective("CO1", blooms=["C2", "C3"], personal=["P2"])],
        }
    )
    records = [
        make_record("CO1", 90, teacher_id="T1"),
        make_record("CO2", 20, teacher_id="T1"),
        make_record("CO1", "AB", teacher_id="T2"),
        make_record("CO1", 75, teacher_id="T2", student_id="S2"),
    ]
    expected = _aggregate(repository, records).tally

    for permutation in itertools.permutations(records):
        assert _aggregate(repository, list(permutation)).tally == expected


def test_fan_out_matches_sequential_aggregation(three_objectives):
    repository = FakeObjectiveRepository(
        {KEY_T1: three_objectives, KEY_T2: [make_objective("CO1", thinking=["T1", "T2"])]},
        failing=[("T3", "CSE101", "2024-25")],
    )
    records = [
        make_record("CO1", 90, teacher_id="T1"),
        make_record("CO1", 40, teacher_id="T2"),
        make_record("CO1", 90, teacher_id="T3"),
        make_record("CO2", 90, teacher_id="T1"),
    ]

    sequential = _aggregate(repository, records)
    fanned = _aggregate(repository, records, fan_out=True)

    assert fanned.tally == sequential.tally
    assert [group.key for group in fanned.groups] == [group.key for group in sequential.groups]


def test_combine_outcomes_treats_failures_as_zero():
    success = tally_group(KEY_T1, [make_record("CO1", 90)], [make_objective("CO1", blooms=["C1"])])
    failure = GroupOutcome(
        key=KEY_T2,
        tally=AchievementTally.from_categories({TaxonomyCategory.BLOOMS: CategoryTally(achieved=5, total=5)}),
        error="unavailable",
    )

    assert combine_outcomes([success, failure]).blooms == CategoryTally(achieved=1, total=1)
    assert combine_outcomes([]) == AchievementTally.zero()


def test_percentages_stay_within_bounds(three_objectives):
    repository = FakeObjectiveRepository({KEY_T1: three_objectives})
    records = [make_record("CO1", 90), make_record("CO1", 10, student_id="S2"), make_record("CO2", "AB")]

    report = _aggregate(repository, records)

    assert report.tally.blooms.percentage == pytest.approx(40.0)
    for percentage in report.tally.percentages().values():
        assert 0 <= percentage <= 100
