from __future__ import annotations

from datetime import datetime
from typing import Mapping

from onboardflow_api.schemas import TaskPriority
from onboardflow_api.workflow_catalog import DEFAULT_ESCALATION_DAYS


HIGH_THRESHOLD_RATIO = 0.7
SECONDS_PER_DAY = 86_400

_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.REGULAR: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}


def priority_rank(priority: TaskPriority | str) -> int:
    return _PRIORITY_RANK[TaskPriority(priority)]


def age_in_days(created_at: datetime, now: datetime) -> float:
    return (now - created_at).total_seconds() / SECONDS_PER_DAY


def max_days_for(title: str, workflow_deadlines: Mapping[str, int]) -> int:
    return int(workflow_deadlines.get(title, DEFAULT_ESCALATION_DAYS))


def target_priority(*, age_days: float, max_days: float) -> TaskPriority:
    if age_days >= max_days:
        return TaskPriority.URGENT
    if age_days >= HIGH_THRESHOLD_RATIO * max_days:
        return TaskPriority.HIGH
    return TaskPriority.REGULAR


def escalated_priority(
    *,
    current: TaskPriority | str,
    title: str,
    created_at: datetime,
    now: datetime,
    workflow_deadlines: Mapping[str, int],
) -> TaskPriority | None:
    """Return the new priority when age pushes the task above its current rank.

    Escalation only ever raises the rank; ``None`` means leave the task alone.
    """
    target = target_priority(
        age_days=age_in_days(created_at, now),
        max_days=max_days_for(title, workflow_deadlines),
    )
    if priority_rank(target) > priority_rank(current):
        return target
    return None
