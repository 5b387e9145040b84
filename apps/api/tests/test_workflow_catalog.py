import pytest

from onboardflow_api.schemas import ClientStatus, Division, TaskPriority
from onboardflow_api.workflow_catalog import (
    WORKFLOW_SEQUENCE,
    days_for,
    default_workflow_deadlines,
    first_stage,
    index_of_stage,
    index_of_task_title,
    is_terminal,
    stage_at,
)


def test_catalog_starts_with_waiting_for_data_support_stage() -> None:
    entry = first_stage()

    assert entry.stage == ClientStatus.WAITING_FOR_DATA
    assert entry.task_title == "Waiting for Data"
    assert entry.division == Division.SUPPORT
    assert entry.priority == TaskPriority.HIGH
    assert len(entry.default_subtasks) == 5


def test_catalog_ends_with_integration_stage() -> None:
    last_index = len(WORKFLOW_SEQUENCE) - 1

    assert len(WORKFLOW_SEQUENCE) == 8
    assert stage_at(last_index).stage == ClientStatus.INTEGRATION
    assert is_terminal(last_index) is True
    assert is_terminal(0) is False


def test_stage_at_rejects_out_of_range_index() -> None:
    with pytest.raises(IndexError):
        stage_at(len(WORKFLOW_SEQUENCE))
    with pytest.raises(IndexError):
        stage_at(-1)


def test_task_title_lookup_is_exact_match() -> None:
    assert index_of_task_title("Onboarding Process") == 1
    assert index_of_task_title("onboarding process") is None
    assert index_of_task_title("Addon: CRM") is None


def test_stage_lookup_accepts_enum_and_raw_value() -> None:
    assert index_of_stage(ClientStatus.TRAINING_1) == 2
    assert index_of_stage("Training #1") == 2
    assert index_of_stage(ClientStatus.ACTIVE) is None
    assert index_of_stage(None) is None


def test_days_for_prefers_configured_override() -> None:
    entry = stage_at(1)

    assert days_for(entry, {}) == 2
    assert days_for(entry, {"Onboarding Process": 9}) == 9
    assert default_workflow_deadlines()["System Integration & Setup"] == 5
