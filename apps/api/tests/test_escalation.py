from datetime import datetime, timedelta, timezone

from onboardflow_api.escalation import (
    escalated_priority,
    max_days_for,
    priority_rank,
    target_priority,
)
from onboardflow_api.schemas import TaskPriority


CREATED = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_priority_rank_orders_urgent_above_low() -> None:
    ranks = [priority_rank(p) for p in ("Low", "Regular", "High", "Urgent")]
    assert ranks == [0, 1, 2, 3]


def test_target_priority_thresholds() -> None:
    assert target_priority(age_days=6.0, max_days=10) == TaskPriority.REGULAR
    assert target_priority(age_days=7.0, max_days=10) == TaskPriority.HIGH
    assert target_priority(age_days=9.99, max_days=10) == TaskPriority.HIGH
    assert target_priority(age_days=10.0, max_days=10) == TaskPriority.URGENT


def test_unknown_titles_fall_back_to_three_days() -> None:
    assert max_days_for("Ad-hoc call", {}) == 3
    assert max_days_for("Ad-hoc call", {"Ad-hoc call": 8}) == 8


def test_escalation_only_raises_rank() -> None:
    deadlines = {"X": 10}

    assert (
        escalated_priority(
            current=TaskPriority.REGULAR,
            title="X",
            created_at=CREATED,
            now=CREATED + timedelta(days=7.5),
            workflow_deadlines=deadlines,
        )
        == TaskPriority.HIGH
    )
    assert (
        escalated_priority(
            current=TaskPriority.URGENT,
            title="X",
            created_at=CREATED,
            now=CREATED + timedelta(days=7.5),
            workflow_deadlines=deadlines,
        )
        is None
    )
    assert (
        escalated_priority(
            current=TaskPriority.HIGH,
            title="X",
            created_at=CREATED,
            now=CREATED + timedelta(days=1),
            workflow_deadlines=deadlines,
        )
        is None
    )


def test_low_priority_is_lifted_to_regular_while_young() -> None:
    assert (
        escalated_priority(
            current=TaskPriority.LOW,
            title="X",
            created_at=CREATED,
            now=CREATED,
            workflow_deadlines={"X": 10},
        )
        == TaskPriority.REGULAR
    )
