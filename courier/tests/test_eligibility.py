"""
Driver eligibility filter tests.
"""

from types import SimpleNamespace

import pytest

from courier.app.services.eligibility import (
    EligibilityCriteria,
    eligible,
    load_driver_roster,
    rank_candidates,
)


def make_driver(id, vehicle_type="motorbike", is_available=True, average_rating=4.5, completed_deliveries=10):
    return SimpleNamespace(
        id=id,
        vehicle_type=vehicle_type,
        is_available=is_available,
        average_rating=average_rating,
        completed_deliveries=completed_deliveries,
    )


ROSTER = [
    make_driver(1, "motorbike", True, 4.8, 50),
    make_driver(2, "van", True, 3.9, 200),
    make_driver(3, "motorbike", False, 5.0, 10),
    make_driver(4, "Van", True, 4.4, 5),
    make_driver(5, None, True, None, 0),
]


def ids(drivers):
    return [d.id for d in drivers]


def test_default_criteria_keeps_available_drivers_in_order():
    assert ids(eligible(ROSTER)) == [1, 2, 4, 5]


def test_vehicle_type_is_case_insensitive():
    assert ids(eligible(ROSTER, EligibilityCriteria(vehicle_type="van"))) == [2, 4]


def test_min_rating_treats_missing_rating_as_zero():
    assert ids(eligible(ROSTER, EligibilityCriteria(min_rating=4.4))) == [1, 4]


def test_exclude_ids():
    criteria = EligibilityCriteria(exclude_ids=frozenset({1, 4}))
    assert ids(eligible(ROSTER, criteria)) == [2, 5]


def test_criteria_combine():
    criteria = EligibilityCriteria(vehicle_type="motorbike", min_rating=4.0, exclude_ids=frozenset({2}))
    assert ids(eligible(ROSTER, criteria)) == [1]


def test_unavailable_drivers_included_when_requested():
    criteria = EligibilityCriteria(vehicle_type="motorbike", available_only=False)
    assert ids(eligible(ROSTER, criteria)) == [1, 3]


def test_unmatched_criteria_return_empty_list():
    assert eligible(ROSTER, EligibilityCriteria(vehicle_type="truck")) == []
    assert eligible([], EligibilityCriteria()) == []


def test_rank_candidates_by_experience_then_rating():
    tied = [make_driver(10, completed_deliveries=50, average_rating=4.1)]
    assert ids(rank_candidates(ROSTER[:2] + tied)) == [2, 1, 10]


@pytest.mark.asyncio
async def test_load_driver_roster(db_session, drivers):
    roster = await load_driver_roster(db_session)
    assert ids(roster) == [101, 102, 103]
    assert ids(eligible(roster)) == [101, 102]
