import pytest

from onboardflow_api.schemas import (
    ClientCreate,
    Role,
    SettingsUpdate,
    SyncAction,
    TeamMemberCreate,
    TeamMemberUpdate,
)
from onboardflow_api.store import (
    AuthenticationError,
    ConflictError,
    InMemoryStore,
    NotFoundError,
    ValidationError,
)


class _RecordingSync:
    def __init__(self) -> None:
        self.calls: list[tuple[SyncAction, object]] = []

    def notify(self, action, payload=None) -> None:
        self.calls.append((action, payload))

    def fetch_all(self) -> None:
        return None


def _member(name: str, email: str, password: str = "pw", role: Role = Role.SUPPORT) -> TeamMemberCreate:
    return TeamMemberCreate(name=name, email=email, password=password, role=role)


def test_empty_roster_login_bootstraps_demo_manager() -> None:
    sync = _RecordingSync()
    store = InMemoryStore(sync=sync)

    member, bootstrapped = store.login("boss@example.test", "anything")

    assert bootstrapped is True
    assert member.id == "admin"
    assert member.name == "Admin Demo"
    assert member.role == Role.MANAGER
    assert [action for action, _ in sync.calls] == [SyncAction.CREATE_TEAM]


def test_login_is_case_insensitive_and_checks_password() -> None:
    store = InMemoryStore(sync=_RecordingSync())
    created = store.create_team_member(_member("Ayu", "Ayu@Example.test", password="s3cret"))

    member, bootstrapped = store.login("  ayu@example.TEST ", "s3cret")
    assert member.id == created.id
    assert bootstrapped is False

    with pytest.raises(AuthenticationError):
        store.login("ayu@example.test", "wrong")
    with pytest.raises(AuthenticationError):
        store.login("nobody@example.test", "s3cret")


def test_duplicate_email_is_rejected_case_insensitively() -> None:
    store = InMemoryStore(sync=_RecordingSync())
    store.create_team_member(_member("Ayu", "ayu@example.test"))

    with pytest.raises(ConflictError):
        store.create_team_member(_member("Ayu Two", "AYU@example.test"))


def test_update_team_member_keeps_email_unique() -> None:
    store = InMemoryStore(sync=_RecordingSync())
    first = store.create_team_member(_member("Ayu", "ayu@example.test"))
    store.create_team_member(_member("Dimas", "dimas@example.test"))

    updated = store.update_team_member(
        first.id, TeamMemberUpdate(name="Ayu P", email="ayu@example.test", password="pw2", role=Role.TRAINER)
    )
    assert updated.name == "Ayu P"
    assert updated.role == Role.TRAINER

    with pytest.raises(ConflictError):
        store.update_team_member(
            first.id, TeamMemberUpdate(name="Ayu", email="dimas@example.test", password="pw", role=Role.SUPPORT)
        )


def test_member_payload_synced_with_password_but_read_model_hides_it() -> None:
    sync = _RecordingSync()
    store = InMemoryStore(sync=sync)

    member = store.create_team_member(_member("Ayu", "ayu@example.test", password="s3cret"))

    assert "password" not in member.model_dump()
    _, payload = sync.calls[-1]
    assert payload["password"] == "s3cret"
    assert payload["avatar"].startswith("https://ui-avatars.com/api/?name=Ayu")


def test_require_member_needs_known_identity() -> None:
    store = InMemoryStore(sync=_RecordingSync())

    with pytest.raises(AuthenticationError):
        store.require_member(None)
    with pytest.raises(NotFoundError):
        store.require_member("ghost")


def test_settings_reject_non_positive_deadlines() -> None:
    store = InMemoryStore(sync=_RecordingSync())

    with pytest.raises(ValidationError):
        store.update_settings(SettingsUpdate(workflow_deadlines={"Onboarding Process": 0}))

    settings = store.update_settings(SettingsUpdate(compact_view=True, workflow_deadlines={"Custom": 5}))
    assert settings.compact_view is True
    assert settings.workflow_deadlines["Custom"] == 5
    assert settings.workflow_deadlines["Onboarding Process"] == 2


def test_events_can_be_filtered_and_limited() -> None:
    store = InMemoryStore(sync=_RecordingSync())
    first = store.create_client(ClientCreate(name="Rina", business_name="Kopi Senja"))
    store.create_client(ClientCreate(name="Budi", business_name="Toko Budi"))

    created = store.list_events(event_type="client.created")
    assert len(created) == 2
    assert [event.client_id for event in store.list_events(client_id=first.id)] == [first.id]
    assert len(store.list_events(limit=1)) == 1
