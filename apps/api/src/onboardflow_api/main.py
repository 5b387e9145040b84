from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from onboardflow_api.clock import EngineClock
from onboardflow_api.logging_config import configure_logging
from onboardflow_api.schemas import (
    AssigneesUpdate,
    ClientCreate,
    ClientRead,
    ClientStatusUpdate,
    DeadlineUpdate,
    EventRead,
    LoginRequest,
    LoginResponse,
    PriorityUpdate,
    ProgressLogRequest,
    ProjectCreate,
    ProjectRead,
    RefreshResult,
    SettingsRead,
    SettingsUpdate,
    StateSnapshot,
    TaskCreate,
    TaskRead,
    TeamMemberCreate,
    TeamMemberRead,
    TeamMemberUpdate,
    TickReport,
    WorkflowStageRead,
)
from onboardflow_api.store import (
    AuthenticationError,
    ConflictError,
    InMemoryStore,
    NotFoundError,
    ValidationError,
)
from onboardflow_api.sync_client import SyncClient
from onboardflow_api.workflow_catalog import WORKFLOW_SEQUENCE, days_for


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_or_default(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    return _env_or_default(name, "true" if default else "false").lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


configure_logging()

sync_client = SyncClient()
store = InMemoryStore(sync=sync_client, state_file=os.getenv("ONBOARDFLOW_STATE_FILE"))
engine_clock = EngineClock(
    store,
    tick_seconds=_env_float("ONBOARDFLOW_TICK_SECONDS", 1.0),
    refresh_seconds=_env_float("ONBOARDFLOW_REFRESH_SECONDS", 30.0),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    clock_enabled = _env_bool("ONBOARDFLOW_CLOCK_ENABLED", True)
    if clock_enabled:
        engine_clock.start()
    try:
        yield
    finally:
        if clock_enabled:
            engine_clock.stop()
        sync_client.shutdown(wait=False)


app = FastAPI(title="onboardflow api", version="0.1.0", lifespan=lifespan)

cors_allow_origins = _parse_csv_env("API_CORS_ALLOW_ORIGINS", default="null")
cors_allow_origin_regex = _env_or_default(
    "API_CORS_ALLOW_ORIGIN_REGEX",
    r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_origin_regex=cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/catalog", response_model=list[WorkflowStageRead])
def get_catalog() -> list[WorkflowStageRead]:
    deadlines = store.get_settings().workflow_deadlines
    return [
        WorkflowStageRead(
            index=index,
            stage=entry.stage,
            task_title=entry.task_title,
            division=entry.division,
            days_to_complete=entry.days_to_complete,
            configured_days=days_for(entry, deadlines),
            priority=entry.priority,
            default_subtasks=list(entry.default_subtasks),
        )
        for index, entry in enumerate(WORKFLOW_SEQUENCE)
    ]


@app.get("/state", response_model=StateSnapshot)
def get_state() -> StateSnapshot:
    return store.snapshot()


@app.get("/events", response_model=list[EventRead])
def list_events(
    task_id: str | None = None,
    client_id: str | None = None,
    event_type: str | None = None,
    limit: int = 200,
) -> list[EventRead]:
    return store.list_events(task_id=task_id, client_id=client_id, event_type=event_type, limit=limit)


@app.post("/login", response_model=LoginResponse)
def login(payload: LoginRequest) -> LoginResponse:
    try:
        member, bootstrapped = store.login(payload.email, payload.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return LoginResponse(member=member, bootstrapped=bootstrapped)


@app.get("/team", response_model=list[TeamMemberRead])
def list_team() -> list[TeamMemberRead]:
    return store.list_team()


@app.post("/team", response_model=TeamMemberRead)
def create_team_member(payload: TeamMemberCreate) -> TeamMemberRead:
    try:
        return store.create_team_member(payload)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/team/{member_id}", response_model=TeamMemberRead)
def get_team_member(member_id: str) -> TeamMemberRead:
    try:
        return store.get_team_member(member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/team/{member_id}", response_model=TeamMemberRead)
def update_team_member(member_id: str, payload: TeamMemberUpdate) -> TeamMemberRead:
    try:
        return store.update_team_member(member_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.delete("/team/{member_id}", status_code=204)
def delete_team_member(member_id: str) -> None:
    try:
        store.delete_team_member(member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/clients", response_model=ClientRead)
def create_client(payload: ClientCreate) -> ClientRead:
    return store.create_client(payload)


@app.get("/clients", response_model=list[ClientRead])
def list_clients() -> list[ClientRead]:
    return store.list_clients()


@app.get("/clients/{client_id}", response_model=ClientRead)
def get_client(client_id: str) -> ClientRead:
    try:
        return store.get_client(client_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/clients/{client_id}/status", response_model=ClientRead)
def update_client_status(client_id: str, payload: ClientStatusUpdate) -> ClientRead:
    try:
        return store.update_client_status(client_id, payload.status)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/projects", response_model=ProjectRead)
def create_project(payload: ProjectCreate) -> ProjectRead:
    try:
        return store.create_project(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/projects", response_model=list[ProjectRead])
def list_projects(client_id: str | None = None) -> list[ProjectRead]:
    return store.list_projects(client_id=client_id)


@app.get("/projects/{project_id}", response_model=ProjectRead)
def get_project(project_id: str) -> ProjectRead:
    try:
        return store.get_project(project_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks", response_model=TaskRead)
def create_task(payload: TaskCreate) -> TaskRead:
    try:
        return store.create_task(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/tasks", response_model=list[TaskRead])
def list_tasks(project_id: str | None = None, client_id: str | None = None) -> list[TaskRead]:
    try:
        return store.list_tasks(project_id=project_id, client_id=client_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str) -> TaskRead:
    try:
        return store.get_task(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/timer", response_model=TaskRead)
def toggle_task_timer(task_id: str, x_member_id: str | None = Header(default=None)) -> TaskRead:
    member_id = _require_identity(x_member_id)
    try:
        return store.toggle_timer(task_id, member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/progress", response_model=TaskRead)
def log_task_progress(
    task_id: str,
    payload: ProgressLogRequest,
    x_member_id: str | None = Header(default=None),
) -> TaskRead:
    try:
        return store.log_progress(
            task_id,
            member_id=x_member_id,
            note=payload.note,
            percentage=payload.percentage,
            new_requirements=payload.new_requirements,
            new_addons=payload.new_addons,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(task_id: str, x_member_id: str | None = Header(default=None)) -> TaskRead:
    try:
        return store.complete_task(task_id, member_id=x_member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/subtasks/{subtask_id}/toggle", response_model=TaskRead)
def toggle_subtask(task_id: str, subtask_id: str) -> TaskRead:
    try:
        return store.toggle_subtask(task_id, subtask_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/tasks/{task_id}/priority", response_model=TaskRead)
def update_task_priority(task_id: str, payload: PriorityUpdate) -> TaskRead:
    try:
        return store.update_priority(task_id, payload.priority)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/tasks/{task_id}/deadline", response_model=TaskRead)
def update_task_deadline(task_id: str, payload: DeadlineUpdate) -> TaskRead:
    try:
        return store.update_deadline(task_id, payload.deadline)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.put("/tasks/{task_id}/assignees", response_model=TaskRead)
def set_task_assignees(task_id: str, payload: AssigneesUpdate) -> TaskRead:
    try:
        return store.set_assignees(task_id, payload.member_ids)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/assignees/{member_id}", response_model=TaskRead)
def toggle_task_assignee(task_id: str, member_id: str) -> TaskRead:
    try:
        return store.assign_task(task_id, member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/tasks/{task_id}/assignees/{member_id}", response_model=TaskRead)
def unassign_task(task_id: str, member_id: str) -> TaskRead:
    try:
        return store.unassign_task(task_id, member_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/settings", response_model=SettingsRead)
def get_settings() -> SettingsRead:
    return store.get_settings()


@app.put("/settings", response_model=SettingsRead)
def update_settings(payload: SettingsUpdate) -> SettingsRead:
    try:
        return store.update_settings(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/clock/tick", response_model=TickReport)
def tick_clock() -> TickReport:
    return store.tick()


@app.post("/sync/refresh", response_model=RefreshResult)
def refresh_from_remote() -> RefreshResult:
    return store.refresh()


def _require_identity(member_id: str | None) -> str:
    try:
        return store.require_member(member_id).id
    except (AuthenticationError, NotFoundError) as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
