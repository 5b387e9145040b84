import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from onboardflow_api.schemas import (
    ClientCreate,
    ClientStatus,
    Division,
    ProjectCreate,
    Role,
    SettingsUpdate,
    SyncAction,
    TaskCreate,
    TaskPriority,
    TeamMemberCreate,
)
from onboardflow_api.store import InMemoryStore, NotFoundError, ValidationError
from onboardflow_api.workflow_catalog import WORKFLOW_SEQUENCE


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _RecordingSync:
    def __init__(self) -> None:
        self.calls: list[tuple[SyncAction, Any]] = []

    def notify(self, action: SyncAction, payload: Any = None) -> None:
        self.calls.append((action, payload))

    def fetch_all(self) -> None:
        return None

    def actions(self) -> list[SyncAction]:
        return [action for action, _ in self.calls]


class _ManualClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def _store() -> tuple[InMemoryStore, _RecordingSync, _ManualClock]:
    sync = _RecordingSync()
    clock = _ManualClock(START)
    return InMemoryStore(sync=sync, now=clock), sync, clock


def _member(store: InMemoryStore, name: str) -> str:
    return store.create_team_member(
        TeamMemberCreate(name=name, email=f"{name}@example.test", password="pw", role=Role.SUPPORT)
    ).id


def _stage_task(store: InMemoryStore, client_id: str, title: str):
    return next(task for task in store.list_tasks(client_id=client_id) if task.title == title)


def test_create_client_seeds_project_and_first_stage_task() -> None:
    store, sync, _ = _store()

    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    projects = store.list_projects(client_id=client.id)
    tasks = store.list_tasks(client_id=client.id)

    assert client.status == ClientStatus.WAITING_FOR_DATA
    assert client.total_time_spent == 0
    assert [project.name for project in projects] == ["Kopi Senja Main Project"]
    assert len(tasks) == 1
    first = tasks[0]
    assert first.title == "Waiting for Data"
    assert first.division == Division.SUPPORT
    assert first.priority == TaskPriority.HIGH
    assert first.stage_id == ClientStatus.WAITING_FOR_DATA
    assert first.completion_percentage == 0
    assert len(first.subtasks) == 5
    assert datetime.fromisoformat(first.deadline) == START + timedelta(days=3)
    assert sync.actions() == [
        SyncAction.CREATE_CLIENT,
        SyncAction.CREATE_PROJECT,
        SyncAction.BATCH_CREATE_TASKS,
    ]


def test_create_client_with_addons_creates_addon_tasks() -> None:
    store, _, _ = _store()

    client = store.create_client(ClientCreate(name="Budi", business_name="Toko Budi", addons=["CRM"]))
    addon = _stage_task(store, client.id, "Addon: CRM")

    assert addon.division == Division.IT
    assert addon.priority == TaskPriority.REGULAR
    assert addon.stage_id is None
    assert datetime.fromisoformat(addon.deadline) == START + timedelta(days=14)


def test_completing_first_stage_advances_client_and_carries_requirements() -> None:
    store, sync, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]
    sync.calls.clear()

    updated = store.log_progress(
        first.id,
        member_id=None,
        note="data received",
        percentage=100,
        new_requirements=["Req A"],
    )

    assert updated.is_completed is True
    assert updated.completed_at is not None
    refreshed = store.get_client(client.id)
    assert refreshed.status == ClientStatus.ONBOARDING
    assert refreshed.requirements == ["Req A"]
    onboarding = _stage_task(store, client.id, "Onboarding Process")
    assert onboarding.division == Division.SALES
    assert onboarding.stage_id == ClientStatus.ONBOARDING
    assert [subtask.title for subtask in onboarding.subtasks][:2] == ["Req A", "Konfirmasi kelengkapan data"]
    assert len(onboarding.subtasks) == 5
    assert sync.actions() == [
        SyncAction.UPDATE_TASK,
        SyncAction.BATCH_CREATE_TASKS,
        SyncAction.UPDATE_CLIENT,
    ]


def test_next_stage_task_inherits_assignees() -> None:
    store, _, _ = _store()
    first_member = _member(store, "ayu")
    second_member = _member(store, "dimas")
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]
    store.set_assignees(first.id, [first_member, second_member])

    store.complete_task(first.id)

    onboarding = _stage_task(store, client.id, "Onboarding Process")
    assert onboarding.assignees == [first_member, second_member]


def test_walking_the_whole_sequence_activates_client() -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))

    for entry in WORKFLOW_SEQUENCE:
        task = _stage_task(store, client.id, entry.task_title)
        store.complete_task(task.id)

    final = store.get_client(client.id)
    tasks = store.list_tasks(client_id=client.id)
    assert final.status == ClientStatus.ACTIVE
    assert len(tasks) == len(WORKFLOW_SEQUENCE)
    assert all(task.is_completed for task in tasks)
    assert store.list_events(client_id=client.id, event_type="client.activated")


def test_relogging_completion_does_not_advance_twice() -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]

    store.complete_task(first.id)
    first_completed_at = store.get_task(first.id).completed_at
    store.log_progress(first.id, member_id=None, note="again", percentage=100, new_requirements=["Late"])

    assert store.get_task(first.id).completed_at == first_completed_at
    assert store.get_client(client.id).status == ClientStatus.ONBOARDING
    assert store.get_client(client.id).requirements == []
    titles = [task.title for task in store.list_tasks(client_id=client.id)]
    assert titles.count("Onboarding Process") == 1


def test_completion_is_monotonic() -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]

    store.complete_task(first.id)
    lowered = store.log_progress(first.id, member_id=None, note="rework", percentage=40)

    assert lowered.completion_percentage == 40
    assert lowered.is_completed is True


def test_addons_supplied_at_completion_spawn_addon_tasks() -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]

    store.log_progress(first.id, member_id=None, note="", percentage=100, new_addons=["Chatbot"])

    assert store.get_client(client.id).addons == ["Chatbot"]
    addon = _stage_task(store, client.id, "Addon: Chatbot")
    assert addon.division == Division.IT


def test_completing_non_sequence_task_does_not_transition() -> None:
    store, sync, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    project = store.list_projects(client_id=client.id)[0]
    adhoc = store.create_task(
        TaskCreate(
            project_id=project.id,
            title="Kickoff call",
            division=Division.SALES,
            deadline=(START + timedelta(days=2)).isoformat(),
        )
    )
    sync.calls.clear()

    store.complete_task(adhoc.id)

    assert store.get_client(client.id).status == ClientStatus.WAITING_FOR_DATA
    assert sync.actions() == [SyncAction.UPDATE_TASK]


def test_internal_project_tasks_never_transition() -> None:
    store, _, _ = _store()
    project = store.create_project(ProjectCreate(name="Internal tooling"))
    task = store.create_task(
        TaskCreate(
            project_id=project.id,
            title="Waiting for Data",
            division=Division.IT,
            deadline=(START + timedelta(days=2)).isoformat(),
        )
    )

    store.complete_task(task.id)

    assert store.get_task(task.id).is_completed is True
    assert [t.title for t in store.list_tasks(project_id=project.id)] == ["Waiting for Data"]


def test_stage_id_drives_transition_when_title_was_edited() -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]
    store._tasks[first.id].title = "Collect onboarding data"

    store.complete_task(first.id)

    assert store.get_client(client.id).status == ClientStatus.ONBOARDING


def test_workflow_deadline_override_applies_to_next_stage_task() -> None:
    store, _, _ = _store()
    store.update_settings(SettingsUpdate(workflow_deadlines={"Onboarding Process": 6}))
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]

    store.complete_task(first.id)

    onboarding = _stage_task(store, client.id, "Onboarding Process")
    assert datetime.fromisoformat(onboarding.deadline) == START + timedelta(days=6)


def test_invalid_percentage_is_rejected() -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]

    with pytest.raises(ValidationError):
        store.log_progress(first.id, member_id=None, note="", percentage=101)
    with pytest.raises(ValidationError):
        store.log_progress(first.id, member_id=None, note="", percentage=-1)
    assert store.get_task(first.id).completion_percentage == 0


def test_unknown_task_raises_not_found() -> None:
    store, _, _ = _store()

    with pytest.raises(NotFoundError):
        store.complete_task("missing")


def test_status_override_does_not_create_tasks() -> None:
    store, sync, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    sync.calls.clear()

    updated = store.update_client_status(client.id, ClientStatus.DROP)

    assert updated.status == ClientStatus.DROP
    assert len(store.list_tasks(client_id=client.id)) == 1
    assert sync.actions() == [SyncAction.UPDATE_CLIENT]


def test_engine_log_lines_carry_context_fields(caplog) -> None:
    store, _, _ = _store()
    client = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    first = store.list_tasks(client_id=client.id)[0]

    with caplog.at_level(logging.INFO, logger="onboardflow_api.store"):
        store.complete_task(first.id)

    moved = [record for record in caplog.records if "moved" in record.getMessage()]
    assert len(moved) == 1
    assert moved[0].client_id == client.id
    assert moved[0].task_id == first.id
    assert moved[0].stage == ClientStatus.ONBOARDING.value
