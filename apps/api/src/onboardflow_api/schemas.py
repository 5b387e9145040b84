from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class ClientStatus(str, Enum):
    WAITING_FOR_DATA = "Waiting for data"
    ONBOARDING = "Onboarding"
    TRAINING_1 = "Training #1"
    WAITING_FOR_FEEDBACK_1 = "Waiting for Feedback #1"
    TRAINING_2 = "Training #2"
    WAITING_FOR_FEEDBACK_2 = "Waiting for Feedback #2"
    TRAINING_3 = "Training #3"
    INTEGRATION = "Integration"
    ACTIVE = "Active"
    DROP = "Drop"


class Division(str, Enum):
    SALES = "Sales"
    SUPPORT = "Support"
    TRAINER = "Trainer"
    IT = "IT"
    QC = "QC"


class Role(str, Enum):
    MANAGER = "Manager"
    LEADER = "Leader"
    SALES = "Sales"
    SUPPORT = "Support"
    TRAINER = "Trainer"
    IT = "IT"
    DEVELOPER = "Developer"
    QA = "QA"


class TaskPriority(str, Enum):
    URGENT = "Urgent"
    HIGH = "High"
    REGULAR = "Regular"
    LOW = "Low"


class ProjectStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    ON_HOLD = "On Hold"


class SyncAction(str, Enum):
    GET_ALL = "GET_ALL"
    CREATE_CLIENT = "CREATE_CLIENT"
    UPDATE_CLIENT = "UPDATE_CLIENT"
    CREATE_PROJECT = "CREATE_PROJECT"
    CREATE_TASK = "CREATE_TASK"
    UPDATE_TASK = "UPDATE_TASK"
    BATCH_CREATE_TASKS = "BATCH_CREATE_TASKS"
    CREATE_TEAM = "CREATE_TEAM"
    UPDATE_TEAM = "UPDATE_TEAM"
    DELETE_TEAM = "DELETE_TEAM"


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    business_name: str = Field(min_length=1)
    package: str = ""
    description: str = ""
    email: str = ""
    whatsapp: str = ""
    business_field: str = ""
    requirements: list[str] = Field(default_factory=list)
    addons: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "ClientCreate":
        self.name = self.name.strip()
        self.business_name = self.business_name.strip()
        self.requirements = _strip_string_list(self.requirements)
        self.addons = _strip_string_list(self.addons)
        return self


class ClientRead(BaseModel):
    id: str
    name: str
    business_name: str
    package: str = ""
    description: str = ""
    email: str = ""
    whatsapp: str = ""
    business_field: str = ""
    status: ClientStatus
    joined_date: str
    total_time_spent: int = 0
    requirements: list[str] = Field(default_factory=list)
    addons: list[str] = Field(default_factory=list)


class ClientStatusUpdate(BaseModel):
    status: ClientStatus


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    client_id: str | None = None
    description: str | None = None


class ProjectRead(BaseModel):
    id: str
    name: str
    client_id: str | None = None
    description: str | None = None
    status: ProjectStatus = ProjectStatus.ACTIVE


class SubtaskRead(BaseModel):
    id: str
    title: str
    is_completed: bool = False
    completed_at: str | None = None


class TaskCreate(BaseModel):
    project_id: str
    title: str = Field(min_length=1)
    division: Division
    assignees: list[str] = Field(default_factory=list)
    deadline: str
    priority: TaskPriority = TaskPriority.REGULAR
    subtasks: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskCreate":
        self.title = self.title.strip()
        self.assignees = _normalize_string_list(self.assignees)
        self.subtasks = _strip_string_list(self.subtasks)
        _parse_timestamp(self.deadline, field_name="deadline")
        return self


class TaskRead(BaseModel):
    id: str
    project_id: str
    title: str
    division: Division
    stage_id: ClientStatus | None = None
    assignees: list[str] = Field(default_factory=list)
    active_user_ids: list[str] = Field(default_factory=list)
    time_spent: int = 0
    completion_percentage: int = 0
    priority: TaskPriority
    is_completed: bool = False
    completed_at: str | None = None
    deadline: str
    created_at: str
    subtasks: list[SubtaskRead] = Field(default_factory=list)
    last_progress_note: str | None = None


class ProgressLogRequest(BaseModel):
    note: str = ""
    percentage: int = Field(ge=0, le=100)
    new_requirements: list[str] = Field(default_factory=list)
    new_addons: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "ProgressLogRequest":
        self.new_requirements = _strip_string_list(self.new_requirements)
        self.new_addons = _strip_string_list(self.new_addons)
        return self


class PriorityUpdate(BaseModel):
    priority: TaskPriority


class DeadlineUpdate(BaseModel):
    deadline: str

    @field_validator("deadline")
    @classmethod
    def validate_deadline(cls, value: str) -> str:
        _parse_timestamp(value, field_name="deadline")
        return value


class AssigneesUpdate(BaseModel):
    member_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "AssigneesUpdate":
        self.member_ids = _normalize_string_list(self.member_ids)
        return self


class TeamMemberCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    role: Role
    avatar: str | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "TeamMemberCreate":
        self.name = self.name.strip()
        self.email = self.email.strip()
        if "@" not in self.email:
            raise ValueError("email must contain '@'")
        return self


class TeamMemberUpdate(TeamMemberCreate):
    pass


class TeamMemberRead(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    avatar: str


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = ""


class LoginResponse(BaseModel):
    member: TeamMemberRead
    bootstrapped: bool = False


class SettingsRead(BaseModel):
    theme: str = "light"
    compact_view: bool = False
    sidebar_collapsed: bool = False
    workflow_deadlines: dict[str, int] = Field(default_factory=dict)


class SettingsUpdate(BaseModel):
    theme: str | None = None
    compact_view: bool | None = None
    sidebar_collapsed: bool | None = None
    workflow_deadlines: dict[str, int] | None = None

    @field_validator("theme")
    @classmethod
    def validate_theme(cls, value: str | None) -> str | None:
        if value is not None and value not in {"light", "dark"}:
            raise ValueError("theme must be 'light' or 'dark'")
        return value


class WorkflowStageRead(BaseModel):
    index: int
    stage: ClientStatus
    task_title: str
    division: Division
    days_to_complete: int
    configured_days: int
    priority: TaskPriority
    default_subtasks: list[str] = Field(default_factory=list)


class EventRead(BaseModel):
    id: int
    event_type: str
    task_id: str | None = None
    client_id: str | None = None
    actor_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class TickReport(BaseModel):
    ticked_at: str
    accrued_task_ids: list[str] = Field(default_factory=list)
    escalated_task_ids: list[str] = Field(default_factory=list)
    client_time_credits: dict[str, int] = Field(default_factory=dict)


class SyncResult(BaseModel):
    action: SyncAction
    submitted: bool
    sync_url: str | None = None
    message: str | None = None
    data: Any = None


class RefreshResult(BaseModel):
    refreshed: bool
    message: str | None = None
    clients: int = 0
    projects: int = 0
    tasks: int = 0
    team: int = 0


class StateSnapshot(BaseModel):
    clients: list[ClientRead] = Field(default_factory=list)
    projects: list[ProjectRead] = Field(default_factory=list)
    tasks: list[TaskRead] = Field(default_factory=list)
    team: list[TeamMemberRead] = Field(default_factory=list)
    settings: SettingsRead = Field(default_factory=SettingsRead)


def _parse_timestamp(value: str, *, field_name: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an ISO-8601 timestamp") from exc


def _strip_string_list(values: list[str]) -> list[str]:
    return [value.strip() for value in values if value.strip()]


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized
