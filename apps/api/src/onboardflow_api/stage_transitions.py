from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from onboardflow_api.schemas import ClientStatus, Division, TaskPriority
from onboardflow_api.workflow_catalog import (
    ADDON_TASK_DAYS,
    ADDON_TITLE_PREFIX,
    FIRST_TRAINING_STAGE,
    days_for,
    index_of_stage,
    index_of_task_title,
    is_terminal,
    stage_at,
)


@dataclass(frozen=True)
class PlannedTask:
    title: str
    division: Division
    priority: TaskPriority
    deadline_days: int
    stage_id: ClientStatus | None = None
    assignees: tuple[str, ...] = ()
    subtasks: tuple[str, ...] = ()


@dataclass
class TransitionPlan:
    completed_stage_index: int
    next_status: ClientStatus
    requirements: list[str] = field(default_factory=list)
    addons: list[str] = field(default_factory=list)
    sequence_task: PlannedTask | None = None
    addon_tasks: list[PlannedTask] = field(default_factory=list)

    @property
    def new_tasks(self) -> list[PlannedTask]:
        tasks = [self.sequence_task] if self.sequence_task is not None else []
        return tasks + self.addon_tasks


def resolve_stage_index(*, stage_id: str | None, title: str) -> int | None:
    """Find the catalog entry a task belongs to.

    Sequence tasks carry an explicit stage id; the title match only covers
    records restored from stores that never had the field.
    """
    if stage_id is not None:
        return index_of_stage(stage_id)
    return index_of_task_title(title)


def plan_addon_tasks(addons: Sequence[str]) -> list[PlannedTask]:
    return [
        PlannedTask(
            title=f"{ADDON_TITLE_PREFIX}{addon}",
            division=Division.IT,
            priority=TaskPriority.REGULAR,
            deadline_days=ADDON_TASK_DAYS,
        )
        for addon in addons
    ]


def plan_transition(
    *,
    stage_index: int | None,
    client_requirements: Sequence[str],
    client_addons: Sequence[str],
    completed_assignees: Sequence[str],
    new_requirements: Sequence[str],
    new_addons: Sequence[str],
    workflow_deadlines: Mapping[str, int],
) -> TransitionPlan | None:
    if stage_index is None:
        return None

    requirements = list(client_requirements) + list(new_requirements)
    addons = list(client_addons) + list(new_addons)

    if is_terminal(stage_index):
        return TransitionPlan(
            completed_stage_index=stage_index,
            next_status=ClientStatus.ACTIVE,
            requirements=requirements,
            addons=addons,
            addon_tasks=plan_addon_tasks(new_addons),
        )

    next_entry = stage_at(stage_index + 1)
    checklist = list(new_requirements)
    if next_entry.stage == FIRST_TRAINING_STAGE:
        checklist.extend(client_requirements)
    checklist.extend(next_entry.default_subtasks)

    return TransitionPlan(
        completed_stage_index=stage_index,
        next_status=next_entry.stage,
        requirements=requirements,
        addons=addons,
        sequence_task=PlannedTask(
            title=next_entry.task_title,
            division=next_entry.division,
            priority=next_entry.priority,
            deadline_days=days_for(next_entry, workflow_deadlines),
            stage_id=next_entry.stage,
            assignees=tuple(completed_assignees),
            subtasks=tuple(checklist),
        ),
        addon_tasks=plan_addon_tasks(new_addons),
    )
