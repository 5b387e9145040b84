from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from onboardflow_api.schemas import ClientStatus, Division, TaskPriority


DEFAULT_ESCALATION_DAYS = 3
ADDON_TASK_DAYS = 14
ADDON_TITLE_PREFIX = "Addon: "
FIRST_TRAINING_STAGE = ClientStatus.TRAINING_1


@dataclass(frozen=True)
class WorkflowStage:
    stage: ClientStatus
    task_title: str
    division: Division
    days_to_complete: int
    priority: TaskPriority
    default_subtasks: tuple[str, ...] = field(default_factory=tuple)


WORKFLOW_SEQUENCE: tuple[WorkflowStage, ...] = (
    WorkflowStage(
        stage=ClientStatus.WAITING_FOR_DATA,
        task_title="Waiting for Data",
        division=Division.SUPPORT,
        days_to_complete=3,
        priority=TaskPriority.HIGH,
        default_subtasks=(
            "Greeting",
            "Group koordinasi",
            "Akun WhatsApp",
            "Akun Business Manager",
            "Dokumen requirement",
        ),
    ),
    WorkflowStage(
        stage=ClientStatus.ONBOARDING,
        task_title="Onboarding Process",
        division=Division.SALES,
        days_to_complete=2,
        priority=TaskPriority.HIGH,
        default_subtasks=(
            "Konfirmasi kelengkapan data",
            "Konfirmasi bisnis manager",
            "Konfirmasi requirement",
            "Penjelasan SoW",
        ),
    ),
    WorkflowStage(
        stage=ClientStatus.TRAINING_1,
        task_title="Training #1 (Requirements)",
        division=Division.TRAINER,
        days_to_complete=5,
        priority=TaskPriority.HIGH,
    ),
    WorkflowStage(
        stage=ClientStatus.WAITING_FOR_FEEDBACK_1,
        task_title="Collect Feedback #1",
        division=Division.SUPPORT,
        days_to_complete=3,
        priority=TaskPriority.REGULAR,
    ),
    WorkflowStage(
        stage=ClientStatus.TRAINING_2,
        task_title="Training #2 (Refinement)",
        division=Division.TRAINER,
        days_to_complete=4,
        priority=TaskPriority.HIGH,
    ),
    WorkflowStage(
        stage=ClientStatus.WAITING_FOR_FEEDBACK_2,
        task_title="Collect Feedback #2",
        division=Division.SUPPORT,
        days_to_complete=3,
        priority=TaskPriority.REGULAR,
    ),
    WorkflowStage(
        stage=ClientStatus.TRAINING_3,
        task_title="Training #3 (Finalization)",
        division=Division.TRAINER,
        days_to_complete=3,
        priority=TaskPriority.HIGH,
    ),
    WorkflowStage(
        stage=ClientStatus.INTEGRATION,
        task_title="System Integration & Setup",
        division=Division.IT,
        days_to_complete=5,
        priority=TaskPriority.URGENT,
        default_subtasks=(
            "Integrasi WhatsApp",
            "Integrasi Messenger",
            "Integrasi Instagram",
            "Integrasi Livechat",
            "Penjelasan dashboard",
        ),
    ),
)


def first_stage() -> WorkflowStage:
    return WORKFLOW_SEQUENCE[0]


def stage_at(index: int) -> WorkflowStage:
    if index < 0 or index >= len(WORKFLOW_SEQUENCE):
        raise IndexError(f"workflow stage index {index} out of range")
    return WORKFLOW_SEQUENCE[index]


def index_of_task_title(title: str) -> int | None:
    for index, entry in enumerate(WORKFLOW_SEQUENCE):
        if entry.task_title == title:
            return index
    return None


def index_of_stage(stage: ClientStatus | str | None) -> int | None:
    if stage is None:
        return None
    value = stage.value if isinstance(stage, ClientStatus) else stage
    for index, entry in enumerate(WORKFLOW_SEQUENCE):
        if entry.stage.value == value:
            return index
    return None


def is_terminal(index: int) -> bool:
    return index == len(WORKFLOW_SEQUENCE) - 1


def default_workflow_deadlines() -> dict[str, int]:
    return {entry.task_title: entry.days_to_complete for entry in WORKFLOW_SEQUENCE}


def days_for(entry: WorkflowStage, workflow_deadlines: Mapping[str, int]) -> int:
    """Configured day budget for a stage, falling back to the catalog default."""
    return int(workflow_deadlines.get(entry.task_title, entry.days_to_complete))
