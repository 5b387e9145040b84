from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import quote_plus

from pydantic import ValidationError as PydanticValidationError

from onboardflow_api.escalation import escalated_priority
from onboardflow_api.schemas import (
    ClientCreate,
    ClientRead,
    ClientStatus,
    Division,
    EventRead,
    ProjectCreate,
    ProjectRead,
    ProjectStatus,
    RefreshResult,
    Role,
    SettingsRead,
    SettingsUpdate,
    StateSnapshot,
    SubtaskRead,
    SyncAction,
    TaskCreate,
    TaskPriority,
    TaskRead,
    TeamMemberCreate,
    TeamMemberRead,
    TeamMemberUpdate,
    TickReport,
)
from onboardflow_api.security import passwords_match
from onboardflow_api.stage_transitions import (
    PlannedTask,
    plan_addon_tasks,
    plan_transition,
    resolve_stage_index,
)
from onboardflow_api.sync_client import SyncClient
from onboardflow_api.workflow_catalog import default_workflow_deadlines, days_for, first_stage


logger = logging.getLogger(__name__)

QUICK_COMPLETE_NOTE = "Quick Completed"
DEMO_MEMBER_ID = "admin"
MAX_EVENTS = 1000


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


class AuthenticationError(Exception):
    pass


@dataclass
class _SubtaskRecord:
    id: str
    title: str
    is_completed: bool = False
    completed_at: str | None = None


@dataclass
class _TaskRecord:
    id: str
    project_id: str
    title: str
    division: str
    priority: str
    deadline: str
    created_at: str
    stage_id: str | None = None
    assignees: list[str] = field(default_factory=list)
    active_user_ids: list[str] = field(default_factory=list)
    time_spent: int = 0
    completion_percentage: int = 0
    is_completed: bool = False
    completed_at: str | None = None
    subtasks: list[_SubtaskRecord] = field(default_factory=list)
    last_progress_note: str | None = None


@dataclass
class _ClientRecord:
    id: str
    name: str
    business_name: str
    status: str
    joined_date: str
    package: str = ""
    description: str = ""
    email: str = ""
    whatsapp: str = ""
    business_field: str = ""
    total_time_spent: int = 0
    requirements: list[str] = field(default_factory=list)
    addons: list[str] = field(default_factory=list)


@dataclass
class _ProjectRecord:
    id: str
    name: str
    client_id: str | None = None
    description: str | None = None
    status: str = ProjectStatus.ACTIVE.value


@dataclass
class _MemberRecord:
    id: str
    name: str
    email: str
    role: str
    avatar: str
    password: str = ""


@dataclass
class _SettingsRecord:
    theme: str = "light"
    compact_view: bool = False
    sidebar_collapsed: bool = False
    workflow_deadlines: dict[str, int] = field(default_factory=default_workflow_deadlines)


class InMemoryStore:
    """Authoritative session state for clients, projects, tasks and the team.

    Every public method runs under one re-entrant lock, so API mutations and
    clock ticks are applied one at a time against a consistent view. Remote
    sync calls are notifications only; nothing here waits on their outcome.
    """

    def __init__(
        self,
        *,
        sync: SyncClient | None = None,
        state_file: str | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._sync = sync if sync is not None else SyncClient()
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._now_fn = now or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._clients: dict[str, _ClientRecord] = {}
        self._projects: dict[str, _ProjectRecord] = {}
        self._tasks: dict[str, _TaskRecord] = {}
        self._team: dict[str, _MemberRecord] = {}
        self._settings = _SettingsRecord()
        self._events: list[EventRead] = []
        # member ids whose timer was stopped here but may still be active remotely
        self._stopped_timers: dict[str, set[str]] = {}
        self._event_seq = 1
        self._load_state()

    # Clients and projects

    def create_client(self, client: ClientCreate) -> ClientRead:
        with self._lock:
            now = self._now()
            stage = first_stage()
            record = _ClientRecord(
                id=self._new_id(),
                name=client.name,
                business_name=client.business_name,
                package=client.package,
                description=client.description,
                email=client.email,
                whatsapp=client.whatsapp,
                business_field=client.business_field,
                status=stage.stage.value,
                joined_date=now.isoformat(),
                requirements=list(client.requirements),
                addons=list(client.addons),
            )
            project = _ProjectRecord(
                id=self._new_id(),
                name=f"{record.business_name} Main Project",
                client_id=record.id,
            )
            first_task = self._materialize_task(
                PlannedTask(
                    title=stage.task_title,
                    division=stage.division,
                    priority=stage.priority,
                    deadline_days=days_for(stage, self._settings.workflow_deadlines),
                    stage_id=stage.stage,
                    subtasks=stage.default_subtasks,
                ),
                project_id=project.id,
                now=now,
            )
            addon_tasks = [
                self._materialize_task(planned, project_id=project.id, now=now)
                for planned in plan_addon_tasks(record.addons)
            ]

            self._clients[record.id] = record
            self._projects[project.id] = project
            for task in [first_task, *addon_tasks]:
                self._tasks[task.id] = task

            self._append_event(
                event_type="client.created",
                client_id=record.id,
                payload={"status": record.status, "first_task_id": first_task.id, "addon_tasks": len(addon_tasks)},
            )
            logger.info("client %s created at stage %r", record.id, record.status)

            self._notify(SyncAction.CREATE_CLIENT, self._to_client_read(record).model_dump(mode="json"))
            self._notify(SyncAction.CREATE_PROJECT, self._to_project_read(project).model_dump(mode="json"))
            self._notify(
                SyncAction.BATCH_CREATE_TASKS,
                [self._task_payload(task) for task in [first_task, *addon_tasks]],
            )
            self._persist_state()
            return self._to_client_read(record)

    def list_clients(self) -> list[ClientRead]:
        with self._lock:
            return [self._to_client_read(record) for record in self._clients.values()]

    def get_client(self, client_id: str) -> ClientRead:
        with self._lock:
            return self._to_client_read(self._require_client(client_id))

    def update_client_status(self, client_id: str, status: ClientStatus | str) -> ClientRead:
        with self._lock:
            record = self._require_client(client_id)
            try:
                new_status = ClientStatus(status)
            except ValueError as exc:
                raise ValidationError(f"unknown client status {status!r}") from exc

            previous = record.status
            record.status = new_status.value
            self._append_event(
                event_type="client.status_overridden",
                client_id=record.id,
                payload={"from": previous, "to": record.status},
            )
            self._notify(SyncAction.UPDATE_CLIENT, self._to_client_read(record).model_dump(mode="json"))
            self._persist_state()
            return self._to_client_read(record)

    def create_project(self, project: ProjectCreate) -> ProjectRead:
        with self._lock:
            if project.client_id is not None:
                self._require_client(project.client_id)
            record = _ProjectRecord(
                id=self._new_id(),
                name=project.name,
                client_id=project.client_id,
                description=project.description,
            )
            self._projects[record.id] = record
            self._notify(SyncAction.CREATE_PROJECT, self._to_project_read(record).model_dump(mode="json"))
            self._persist_state()
            return self._to_project_read(record)

    def list_projects(self, *, client_id: str | None = None) -> list[ProjectRead]:
        with self._lock:
            records = [
                record
                for record in self._projects.values()
                if client_id is None or record.client_id == client_id
            ]
            return [self._to_project_read(record) for record in records]

    def get_project(self, project_id: str) -> ProjectRead:
        with self._lock:
            return self._to_project_read(self._require_project(project_id))

    # Tasks

    def create_task(self, task: TaskCreate) -> TaskRead:
        with self._lock:
            self._require_project(task.project_id)
            for member_id in task.assignees:
                self._require_member(member_id)
            deadline = self._parse_deadline(task.deadline)
            now = self._now()
            record = _TaskRecord(
                id=self._new_id(),
                project_id=task.project_id,
                title=task.title,
                division=task.division.value,
                priority=task.priority.value,
                deadline=deadline.isoformat(),
                created_at=now.isoformat(),
                assignees=list(task.assignees),
                subtasks=[_SubtaskRecord(id=self._new_id(), title=title) for title in task.subtasks],
            )
            self._tasks[record.id] = record
            self._append_event(event_type="task.created", task_id=record.id, payload={"title": record.title})
            self._notify(SyncAction.CREATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def get_task(self, task_id: str) -> TaskRead:
        with self._lock:
            return self._to_task_read(self._require_task(task_id))

    def list_tasks(self, *, project_id: str | None = None, client_id: str | None = None) -> list[TaskRead]:
        with self._lock:
            if client_id is not None:
                self._require_client(client_id)
                project_ids = {p.id for p in self._projects.values() if p.client_id == client_id}
            else:
                project_ids = None
            records = [
                record
                for record in self._tasks.values()
                if (project_id is None or record.project_id == project_id)
                and (project_ids is None or record.project_id in project_ids)
            ]
            return [self._to_task_read(record) for record in records]

    def toggle_timer(self, task_id: str, member_id: str) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            self._require_member(member_id)

            if member_id in record.active_user_ids:
                self._stop_timer(record, member_id)
                event_type = "timer.stopped"
            else:
                # A member tracks time on one task at a time.
                for other in self._tasks.values():
                    if other.id != record.id and member_id in other.active_user_ids:
                        self._stop_timer(other, member_id)
                        self._append_event(event_type="timer.stopped", task_id=other.id, actor_id=member_id)
                        self._notify(SyncAction.UPDATE_TASK, self._task_payload(other))
                record.active_user_ids.append(member_id)
                self._stopped_timers.get(record.id, set()).discard(member_id)
                event_type = "timer.started"

            self._append_event(event_type=event_type, task_id=record.id, actor_id=member_id)
            logger.debug(
                "%s: task=%s member=%s",
                event_type,
                record.id,
                member_id,
                extra={"task_id": record.id, "member_id": member_id},
            )
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def log_progress(
        self,
        task_id: str,
        *,
        member_id: str | None,
        note: str,
        percentage: int,
        new_requirements: Iterable[str] | None = None,
        new_addons: Iterable[str] | None = None,
    ) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            percentage = self._require_percentage(percentage)
            requirements = [item.strip() for item in new_requirements or [] if item and item.strip()]
            addons = [item.strip() for item in new_addons or [] if item and item.strip()]

            was_completed = record.is_completed
            if member_id is not None and member_id in record.active_user_ids:
                self._stop_timer(record, member_id)
            record.completion_percentage = percentage
            record.last_progress_note = note
            newly_completed = not was_completed and percentage == 100
            if newly_completed:
                record.is_completed = True
                record.completed_at = self._now().isoformat()
                # A finished task stops every running timer on it.
                for other_member in list(record.active_user_ids):
                    self._stop_timer(record, other_member)
                    self._append_event(event_type="timer.stopped", task_id=record.id, actor_id=other_member)

            self._append_event(
                event_type="task.progress_logged",
                task_id=record.id,
                actor_id=member_id,
                payload={"percentage": percentage, "note": note},
            )
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))

            if newly_completed:
                self._advance_stage(record, new_requirements=requirements, new_addons=addons)

            self._persist_state()
            return self._to_task_read(record)

    def complete_task(self, task_id: str, *, member_id: str | None = None) -> TaskRead:
        return self.log_progress(task_id, member_id=member_id, note=QUICK_COMPLETE_NOTE, percentage=100)

    def toggle_subtask(self, task_id: str, subtask_id: str) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            subtask = next((item for item in record.subtasks if item.id == subtask_id), None)
            if subtask is None:
                raise NotFoundError(f"subtask {subtask_id} not found on task {task_id}")

            subtask.is_completed = not subtask.is_completed
            subtask.completed_at = self._now().isoformat() if subtask.is_completed else None

            total = len(record.subtasks)
            done = sum(1 for item in record.subtasks if item.is_completed)
            record.completion_percentage = _checklist_percentage(done, total)

            self._append_event(
                event_type="subtask.toggled",
                task_id=record.id,
                payload={"subtask_id": subtask.id, "is_completed": subtask.is_completed},
            )
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def update_priority(self, task_id: str, priority: TaskPriority | str) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            try:
                record.priority = TaskPriority(priority).value
            except ValueError as exc:
                raise ValidationError(f"unknown priority {priority!r}") from exc
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def update_deadline(self, task_id: str, deadline: datetime | str) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            parsed = deadline if isinstance(deadline, datetime) else self._parse_deadline(deadline)
            record.deadline = _ensure_aware(parsed).isoformat()
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def assign_task(self, task_id: str, member_id: str) -> TaskRead:
        """Toggle ``member_id`` in the task's assignees."""
        with self._lock:
            record = self._require_task(task_id)
            if member_id in record.assignees:
                record.assignees.remove(member_id)
            else:
                self._require_member(member_id)
                record.assignees.append(member_id)
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def unassign_task(self, task_id: str, member_id: str) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            if member_id in record.assignees:
                record.assignees.remove(member_id)
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    def set_assignees(self, task_id: str, member_ids: list[str]) -> TaskRead:
        with self._lock:
            record = self._require_task(task_id)
            for member_id in member_ids:
                self._require_member(member_id)
            record.assignees = list(dict.fromkeys(member_ids))
            self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            self._persist_state()
            return self._to_task_read(record)

    # Clock

    def tick(self, now: datetime | None = None) -> TickReport:
        with self._lock:
            now = _ensure_aware(now) if now is not None else self._now()
            deadlines = self._settings.workflow_deadlines
            credits: dict[str, int] = defaultdict(int)
            accrued: list[str] = []
            escalated: list[_TaskRecord] = []

            for record in self._tasks.values():
                active_count = len(record.active_user_ids)
                if active_count > 0 and not record.is_completed:
                    record.time_spent += active_count
                    accrued.append(record.id)
                    client_id = self._client_id_for_task(record)
                    if client_id is not None:
                        credits[client_id] += active_count

                if record.is_completed:
                    continue
                created_at = _parse_timestamp(record.created_at)
                if created_at is None:
                    continue
                new_priority = escalated_priority(
                    current=record.priority,
                    title=record.title,
                    created_at=created_at,
                    now=now,
                    workflow_deadlines=deadlines,
                )
                if new_priority is not None:
                    previous = record.priority
                    record.priority = new_priority.value
                    escalated.append(record)
                    self._append_event(
                        event_type="task.escalated",
                        task_id=record.id,
                        payload={"from": previous, "to": record.priority},
                    )
                    logger.info(
                        "task %s escalated %s -> %s",
                        record.id,
                        previous,
                        record.priority,
                        extra={"task_id": record.id},
                    )

            for client_id, seconds in credits.items():
                self._clients[client_id].total_time_spent += seconds

            for record in escalated:
                self._notify(SyncAction.UPDATE_TASK, self._task_payload(record))
            if escalated:
                self._persist_state()

            return TickReport(
                ticked_at=now.isoformat(),
                accrued_task_ids=accrued,
                escalated_task_ids=[record.id for record in escalated],
                client_time_credits=dict(credits),
            )

    # Team and login

    def create_team_member(self, member: TeamMemberCreate) -> TeamMemberRead:
        with self._lock:
            self._ensure_email_available(member.email)
            record = _MemberRecord(
                id=self._new_id(),
                name=member.name,
                email=member.email,
                role=member.role.value,
                avatar=member.avatar or _avatar_url(member.name),
                password=member.password,
            )
            self._team[record.id] = record
            self._notify(SyncAction.CREATE_TEAM, self._member_payload(record))
            self._persist_state()
            return self._to_member_read(record)

    def update_team_member(self, member_id: str, member: TeamMemberUpdate) -> TeamMemberRead:
        with self._lock:
            record = self._require_member(member_id)
            self._ensure_email_available(member.email, exclude_id=member_id)
            record.name = member.name
            record.email = member.email
            record.role = member.role.value
            record.password = member.password
            if member.avatar:
                record.avatar = member.avatar
            self._notify(SyncAction.UPDATE_TEAM, self._member_payload(record))
            self._persist_state()
            return self._to_member_read(record)

    def delete_team_member(self, member_id: str) -> None:
        with self._lock:
            self._require_member(member_id)
            del self._team[member_id]
            for task in self._tasks.values():
                if member_id in task.assignees or member_id in task.active_user_ids:
                    task.assignees = [item for item in task.assignees if item != member_id]
                    if member_id in task.active_user_ids:
                        self._stop_timer(task, member_id)
                    self._notify(SyncAction.UPDATE_TASK, self._task_payload(task))
            self._notify(SyncAction.DELETE_TEAM, {"id": member_id})
            self._persist_state()

    def list_team(self) -> list[TeamMemberRead]:
        with self._lock:
            return [self._to_member_read(record) for record in self._team.values()]

    def get_team_member(self, member_id: str) -> TeamMemberRead:
        with self._lock:
            return self._to_member_read(self._require_member(member_id))

    def login(self, email: str, password: str | None) -> tuple[TeamMemberRead, bool]:
        """Resolve a team member by email; an empty roster bootstraps a demo manager."""
        with self._lock:
            needle = email.strip().lower()
            for record in self._team.values():
                if record.email.lower() == needle:
                    if not passwords_match(record.password, password):
                        raise AuthenticationError("invalid email or password")
                    return self._to_member_read(record), False

            if self._team:
                raise AuthenticationError("invalid email or password")

            record = _MemberRecord(
                id=DEMO_MEMBER_ID,
                name="Admin Demo",
                email=email.strip(),
                role=Role.MANAGER.value,
                avatar=_avatar_url("Admin"),
                password=password or "",
            )
            self._team[record.id] = record
            logger.info("bootstrapped demo member for empty roster")
            self._notify(SyncAction.CREATE_TEAM, self._member_payload(record))
            self._persist_state()
            return self._to_member_read(record), True

    def require_member(self, member_id: str | None) -> TeamMemberRead:
        with self._lock:
            if not member_id:
                raise AuthenticationError("caller identity required")
            return self._to_member_read(self._require_member(member_id))

    # Settings

    def get_settings(self) -> SettingsRead:
        with self._lock:
            return self._to_settings_read()

    def update_settings(self, update: SettingsUpdate) -> SettingsRead:
        with self._lock:
            if update.workflow_deadlines is not None:
                overrides: dict[str, int] = {}
                for title, days in update.workflow_deadlines.items():
                    if not title.strip():
                        raise ValidationError("workflow deadline keys must be non-empty task titles")
                    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
                        raise ValidationError(f"workflow deadline for {title!r} must be a positive integer")
                    overrides[title] = days
                self._settings.workflow_deadlines.update(overrides)
            if update.theme is not None:
                self._settings.theme = update.theme
            if update.compact_view is not None:
                self._settings.compact_view = update.compact_view
            if update.sidebar_collapsed is not None:
                self._settings.sidebar_collapsed = update.sidebar_collapsed
            self._persist_state()
            return self._to_settings_read()

    # Read access and reconciliation

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                clients=[self._to_client_read(record) for record in self._clients.values()],
                projects=[self._to_project_read(record) for record in self._projects.values()],
                tasks=[self._to_task_read(record) for record in self._tasks.values()],
                team=[self._to_member_read(record) for record in self._team.values()],
                settings=self._to_settings_read(),
            )

    def list_events(
        self,
        *,
        task_id: str | None = None,
        client_id: str | None = None,
        event_type: str | None = None,
        limit: int = 200,
    ) -> list[EventRead]:
        with self._lock:
            selected = [
                event
                for event in self._events
                if (task_id is None or event.task_id == task_id)
                and (client_id is None or event.client_id == client_id)
                and (event_type is None or event.event_type == event_type)
            ]
            if limit > 0:
                selected = selected[-limit:]
            return list(selected)

    def refresh(self) -> RefreshResult:
        data = self._sync.fetch_all()
        if data is None:
            return RefreshResult(refreshed=False, message="remote state unavailable")
        return self.merge_remote_state(data)

    def merge_remote_state(self, data: dict[str, list[dict[str, Any]]]) -> RefreshResult:
        """Fold a remote snapshot into local state.

        Remote wins for descriptive fields. Time counters keep the larger
        value, completion never reverts, timer memberships are unioned and then
        narrowed back to one task per member, preferring the local choice.
        """
        with self._lock:
            previous_active = {
                member_id: task.id
                for task in self._tasks.values()
                for member_id in task.active_user_ids
            }
            counts = {"clients": 0, "projects": 0, "tasks": 0, "team": 0}

            for item in data.get("team", []):
                remote = _validate_remote(TeamMemberRead, item)
                if remote is None:
                    continue
                local = self._team.get(remote.id)
                password = item.get("password") if isinstance(item.get("password"), str) else None
                self._team[remote.id] = _MemberRecord(
                    id=remote.id,
                    name=remote.name,
                    email=remote.email,
                    role=remote.role.value,
                    avatar=remote.avatar,
                    password=password if password is not None else (local.password if local else ""),
                )
                counts["team"] += 1

            for item in data.get("clients", []):
                remote = _validate_remote(ClientRead, item)
                if remote is None:
                    continue
                local = self._clients.get(remote.id)
                record = self._client_from_read(remote)
                if local is not None:
                    record.total_time_spent = max(local.total_time_spent, record.total_time_spent)
                self._clients[record.id] = record
                counts["clients"] += 1

            for item in data.get("projects", []):
                remote = _validate_remote(ProjectRead, item)
                if remote is None:
                    continue
                self._projects[remote.id] = _ProjectRecord(
                    id=remote.id,
                    name=remote.name,
                    client_id=remote.client_id,
                    description=remote.description,
                    status=remote.status.value,
                )
                counts["projects"] += 1

            for item in data.get("tasks", []):
                remote = _validate_remote(TaskRead, item)
                if remote is None:
                    continue
                local = self._tasks.get(remote.id)
                record = self._task_from_read(remote)
                if local is not None:
                    record.time_spent = max(local.time_spent, record.time_spent)
                    if local.is_completed and not record.is_completed:
                        record.is_completed = True
                        record.completed_at = local.completed_at
                        record.completion_percentage = local.completion_percentage
                    stopped = self._stopped_timers.get(record.id, set())
                    remote_active = [member_id for member_id in record.active_user_ids if member_id not in stopped]
                    still_stale = stopped & set(record.active_user_ids)
                    if still_stale:
                        self._stopped_timers[record.id] = still_stale
                    else:
                        self._stopped_timers.pop(record.id, None)
                    record.active_user_ids = list(dict.fromkeys(local.active_user_ids + remote_active))
                self._tasks[record.id] = record
                counts["tasks"] += 1

            self._restore_single_active_task(previous_active)
            self._append_event(event_type="state.refreshed", payload=dict(counts))
            self._persist_state()
            return RefreshResult(refreshed=True, message="merged remote state", **counts)

    # Internals

    def _advance_stage(
        self,
        completed: _TaskRecord,
        *,
        new_requirements: list[str],
        new_addons: list[str],
    ) -> None:
        stage_index = resolve_stage_index(stage_id=completed.stage_id, title=completed.title)
        if stage_index is None:
            return
        project = self._projects.get(completed.project_id)
        if project is None or project.client_id is None:
            return
        client = self._clients.get(project.client_id)
        if client is None:
            return

        plan = plan_transition(
            stage_index=stage_index,
            client_requirements=client.requirements,
            client_addons=client.addons,
            completed_assignees=completed.assignees,
            new_requirements=new_requirements,
            new_addons=new_addons,
            workflow_deadlines=self._settings.workflow_deadlines,
        )
        if plan is None:
            return

        now = self._now()
        previous_status = client.status
        client.requirements = plan.requirements
        client.addons = plan.addons
        client.status = plan.next_status.value

        created = [self._materialize_task(planned, project_id=project.id, now=now) for planned in plan.new_tasks]
        for task in created:
            self._tasks[task.id] = task
            self._append_event(
                event_type="task.created",
                task_id=task.id,
                client_id=client.id,
                payload={"title": task.title, "stage_id": task.stage_id},
            )

        self._append_event(
            event_type="client.activated" if plan.next_status == ClientStatus.ACTIVE else "stage.advanced",
            task_id=completed.id,
            client_id=client.id,
            payload={"from": previous_status, "to": client.status, "created_task_ids": [task.id for task in created]},
        )
        logger.info(
            "client %s moved %r -> %r",
            client.id,
            previous_status,
            client.status,
            extra={"client_id": client.id, "task_id": completed.id, "stage": client.status},
        )

        if created:
            self._notify(SyncAction.BATCH_CREATE_TASKS, [self._task_payload(task) for task in created])
        self._notify(SyncAction.UPDATE_CLIENT, self._to_client_read(client).model_dump(mode="json"))

    def _materialize_task(self, planned: PlannedTask, *, project_id: str, now: datetime) -> _TaskRecord:
        return _TaskRecord(
            id=self._new_id(),
            project_id=project_id,
            title=planned.title,
            division=planned.division.value,
            priority=planned.priority.value,
            deadline=(now + timedelta(days=planned.deadline_days)).isoformat(),
            created_at=now.isoformat(),
            stage_id=planned.stage_id.value if planned.stage_id is not None else None,
            assignees=list(planned.assignees),
            subtasks=[_SubtaskRecord(id=self._new_id(), title=title) for title in planned.subtasks],
        )

    def _stop_timer(self, record: _TaskRecord, member_id: str) -> None:
        record.active_user_ids.remove(member_id)
        self._stopped_timers.setdefault(record.id, set()).add(member_id)

    def _restore_single_active_task(self, previous_active: dict[str, str]) -> None:
        seen: dict[str, str] = {}
        for task in self._tasks.values():
            for member_id in task.active_user_ids:
                seen.setdefault(member_id, task.id)
        for member_id, first_task_id in seen.items():
            keep = previous_active.get(member_id, first_task_id)
            if keep not in self._tasks or member_id not in self._tasks[keep].active_user_ids:
                keep = first_task_id
            for task in self._tasks.values():
                if task.id != keep and member_id in task.active_user_ids:
                    task.active_user_ids.remove(member_id)

    def _client_id_for_task(self, record: _TaskRecord) -> str | None:
        project = self._projects.get(record.project_id)
        if project is None or project.client_id is None:
            return None
        if project.client_id not in self._clients:
            return None
        return project.client_id

    def _require_client(self, client_id: str) -> _ClientRecord:
        record = self._clients.get(client_id)
        if record is None:
            raise NotFoundError(f"client {client_id} not found")
        return record

    def _require_project(self, project_id: str) -> _ProjectRecord:
        record = self._projects.get(project_id)
        if record is None:
            raise NotFoundError(f"project {project_id} not found")
        return record

    def _require_task(self, task_id: str) -> _TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise NotFoundError(f"task {task_id} not found")
        return record

    def _require_member(self, member_id: str) -> _MemberRecord:
        record = self._team.get(member_id)
        if record is None:
            raise NotFoundError(f"team member {member_id} not found")
        return record

    def _ensure_email_available(self, email: str, *, exclude_id: str | None = None) -> None:
        needle = email.lower()
        for record in self._team.values():
            if record.id != exclude_id and record.email.lower() == needle:
                raise ConflictError(f"email '{email}' is already registered")

    @staticmethod
    def _require_percentage(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError("percentage must be an integer")
        if value < 0 or value > 100:
            raise ValidationError("percentage must be between 0 and 100")
        return value

    @staticmethod
    def _parse_deadline(value: str) -> datetime:
        parsed = _parse_timestamp(value)
        if parsed is None:
            raise ValidationError(f"deadline {value!r} is not an ISO-8601 timestamp")
        return parsed

    def _notify(self, action: SyncAction, payload: Any) -> None:
        try:
            self._sync.notify(action, payload)
        except Exception:  # noqa: BLE001
            logger.exception("failed to queue sync %s", action.value)

    def _append_event(
        self,
        *,
        event_type: str,
        task_id: str | None = None,
        client_id: str | None = None,
        actor_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventRead:
        event = EventRead(
            id=self._event_seq,
            event_type=event_type,
            task_id=task_id,
            client_id=client_id,
            actor_id=actor_id,
            payload=payload or {},
            created_at=self._now().isoformat(),
        )
        self._event_seq += 1
        self._events.append(event)
        if len(self._events) > MAX_EVENTS:
            self._events = self._events[-MAX_EVENTS:]
        return event

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
        tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(self._state_file)

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        raw = self._state_file.read_text(encoding="utf-8")
        data = json.loads(raw)
        self._clients = {key: _ClientRecord(**value) for key, value in data.get("clients", {}).items()}
        self._projects = {key: _ProjectRecord(**value) for key, value in data.get("projects", {}).items()}
        self._tasks = {
            key: _TaskRecord(
                **{
                    **value,
                    "subtasks": [_SubtaskRecord(**subtask) for subtask in value.get("subtasks", [])],
                }
            )
            for key, value in data.get("tasks", {}).items()
        }
        self._team = {key: _MemberRecord(**value) for key, value in data.get("team", {}).items()}
        settings = data.get("settings")
        if settings is not None:
            deadlines = default_workflow_deadlines()
            deadlines.update({str(k): int(v) for k, v in settings.get("workflow_deadlines", {}).items()})
            self._settings = _SettingsRecord(
                theme=settings.get("theme", "light"),
                compact_view=bool(settings.get("compact_view", False)),
                sidebar_collapsed=bool(settings.get("sidebar_collapsed", False)),
                workflow_deadlines=deadlines,
            )
        self._events = [EventRead(**event) for event in data.get("events", [])]
        self._event_seq = int(data.get("sequences", {}).get("event_seq", len(self._events) + 1))
        self._stopped_timers = {key: set(value) for key, value in data.get("stopped_timers", {}).items()}
        logger.info("restored %d clients and %d tasks from %s", len(self._clients), len(self._tasks), self._state_file)

    def _snapshot(self) -> dict[str, Any]:
        return {
            "clients": {key: _record_dict(value) for key, value in self._clients.items()},
            "projects": {key: _record_dict(value) for key, value in self._projects.items()},
            "tasks": {key: _record_dict(value) for key, value in self._tasks.items()},
            "team": {key: _record_dict(value) for key, value in self._team.items()},
            "settings": _record_dict(self._settings),
            "events": [event.model_dump() for event in self._events],
            "sequences": {"event_seq": self._event_seq},
            "stopped_timers": {key: sorted(value) for key, value in self._stopped_timers.items() if value},
        }

    def _task_payload(self, record: _TaskRecord) -> dict[str, Any]:
        return self._to_task_read(record).model_dump(mode="json")

    def _member_payload(self, record: _MemberRecord) -> dict[str, Any]:
        payload = self._to_member_read(record).model_dump(mode="json")
        payload["password"] = record.password
        return payload

    def _to_settings_read(self) -> SettingsRead:
        return SettingsRead(
            theme=self._settings.theme,
            compact_view=self._settings.compact_view,
            sidebar_collapsed=self._settings.sidebar_collapsed,
            workflow_deadlines=dict(self._settings.workflow_deadlines),
        )

    @staticmethod
    def _to_client_read(record: _ClientRecord) -> ClientRead:
        return ClientRead(
            id=record.id,
            name=record.name,
            business_name=record.business_name,
            package=record.package,
            description=record.description,
            email=record.email,
            whatsapp=record.whatsapp,
            business_field=record.business_field,
            status=record.status,
            joined_date=record.joined_date,
            total_time_spent=record.total_time_spent,
            requirements=list(record.requirements),
            addons=list(record.addons),
        )

    @staticmethod
    def _client_from_read(read: ClientRead) -> _ClientRecord:
        return _ClientRecord(
            id=read.id,
            name=read.name,
            business_name=read.business_name,
            status=read.status.value,
            joined_date=read.joined_date,
            package=read.package,
            description=read.description,
            email=read.email,
            whatsapp=read.whatsapp,
            business_field=read.business_field,
            total_time_spent=max(0, read.total_time_spent),
            requirements=list(read.requirements),
            addons=list(read.addons),
        )

    @staticmethod
    def _to_project_read(record: _ProjectRecord) -> ProjectRead:
        return ProjectRead(
            id=record.id,
            name=record.name,
            client_id=record.client_id,
            description=record.description,
            status=record.status,
        )

    @staticmethod
    def _to_task_read(record: _TaskRecord) -> TaskRead:
        return TaskRead(
            id=record.id,
            project_id=record.project_id,
            title=record.title,
            division=record.division,
            stage_id=record.stage_id,
            assignees=list(record.assignees),
            active_user_ids=list(record.active_user_ids),
            time_spent=record.time_spent,
            completion_percentage=record.completion_percentage,
            priority=record.priority,
            is_completed=record.is_completed,
            completed_at=record.completed_at,
            deadline=record.deadline,
            created_at=record.created_at,
            subtasks=[
                SubtaskRead(
                    id=subtask.id,
                    title=subtask.title,
                    is_completed=subtask.is_completed,
                    completed_at=subtask.completed_at,
                )
                for subtask in record.subtasks
            ],
            last_progress_note=record.last_progress_note,
        )

    @staticmethod
    def _task_from_read(read: TaskRead) -> _TaskRecord:
        return _TaskRecord(
            id=read.id,
            project_id=read.project_id,
            title=read.title,
            division=Division(read.division).value,
            priority=read.priority.value,
            deadline=read.deadline,
            created_at=read.created_at,
            stage_id=read.stage_id.value if read.stage_id is not None else None,
            assignees=list(dict.fromkeys(read.assignees)),
            active_user_ids=list(dict.fromkeys(read.active_user_ids)),
            time_spent=max(0, read.time_spent),
            completion_percentage=min(100, max(0, read.completion_percentage)),
            is_completed=read.is_completed,
            completed_at=read.completed_at,
            subtasks=[
                _SubtaskRecord(
                    id=subtask.id,
                    title=subtask.title,
                    is_completed=subtask.is_completed,
                    completed_at=subtask.completed_at,
                )
                for subtask in read.subtasks
            ],
            last_progress_note=read.last_progress_note,
        )

    @staticmethod
    def _to_member_read(record: _MemberRecord) -> TeamMemberRead:
        return TeamMemberRead(
            id=record.id,
            name=record.name,
            email=record.email,
            role=record.role,
            avatar=record.avatar,
        )

    def _now(self) -> datetime:
        return _ensure_aware(self._now_fn())

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex[:12]


def _checklist_percentage(done: int, total: int) -> int:
    if total <= 0:
        return 0
    # Integer half-up rounding of 100 * done / total.
    return (200 * done + total) // (2 * total)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return _ensure_aware(parsed)


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _avatar_url(name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote_plus(name)}&background=random&color=fff"


def _record_dict(record: Any) -> dict[str, Any]:
    data = dict(record.__dict__)
    if "subtasks" in data:
        data["subtasks"] = [dict(subtask.__dict__) for subtask in data["subtasks"]]
    if "active_user_ids" in data:
        data["active_user_ids"] = list(data["active_user_ids"])
    return data


def _validate_remote(model: Any, item: Any) -> Any:
    try:
        return model.model_validate(item)
    except PydanticValidationError as exc:
        logger.warning("skipping malformed remote %s: %s", model.__name__, exc.errors()[:1])
        return None
