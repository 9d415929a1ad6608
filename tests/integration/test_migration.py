"""Built-in approval chains and legacy request backfill."""

import pytest
import pytest_asyncio

from approvalflow.exceptions import DuplicateBusinessKey
from approvalflow.migration import (
    CLINIC_ADMIN_APPROVAL_WORKFLOW,
    CLINIC_STATUS_ENDPOINT,
    STAFF_APPROVAL_WORKFLOW,
    USER_APPROVAL_WORKFLOW,
    USER_STATUS_ENDPOINT,
    ApprovalMigrator,
    LegacyApprovalRequest,
    workflow_for_role,
)
from approvalflow.models import StepStatus, StepType, WorkflowStatus


@pytest.fixture
def auth_calls(services):
    calls = []

    @services.register(USER_STATUS_ENDPOINT)
    async def update_user(data):
        calls.append(("user", data["userId"], data.get("approved")))
        return {"updated": True}

    @services.register(CLINIC_STATUS_ENDPOINT)
    async def update_clinic(data):
        calls.append(("clinic", data["clinicId"], data.get("approved")))
        return {"updated": True}

    return calls


@pytest_asyncio.fixture
async def migrator(engine):
    migrator = ApprovalMigrator(engine)
    await migrator.ensure_definitions()
    return migrator


def test_workflow_for_role():
    assert workflow_for_role("PATIENT") == USER_APPROVAL_WORKFLOW
    assert workflow_for_role("CLINIC_ADMIN", 3) == CLINIC_ADMIN_APPROVAL_WORKFLOW
    assert workflow_for_role("CLINIC_ADMIN") == USER_APPROVAL_WORKFLOW
    assert workflow_for_role("DENTIST", 3) == STAFF_APPROVAL_WORKFLOW
    assert workflow_for_role("RECEPTIONIST", 3) == STAFF_APPROVAL_WORKFLOW


@pytest.mark.asyncio
async def test_ensure_definitions_is_idempotent(engine):
    migrator = ApprovalMigrator(engine)
    created = await migrator.ensure_definitions()
    assert {d.name for d in created} == {
        USER_APPROVAL_WORKFLOW,
        CLINIC_ADMIN_APPROVAL_WORKFLOW,
        STAFF_APPROVAL_WORKFLOW,
    }
    assert await migrator.ensure_definitions() == []

    staff = await engine.get_definition_by_name(STAFF_APPROVAL_WORKFLOW)
    assert [s.step_type for s in staff.steps] == [
        StepType.AUTOMATED,
        StepType.NOTIFICATION,
        StepType.MANUAL_APPROVAL,
        StepType.SERVICE_CALL,
        StepType.NOTIFICATION,
    ]
    assert staff.step(3).approval_roles == ["CLINIC_ADMIN"]


@pytest.mark.asyncio
async def test_request_approval_waits_for_admin(engine, migrator, notifier):
    instance = await migrator.request_approval(42, "PATIENT", reason="new patient")
    instance = await engine.join(instance.id)

    assert instance.business_key == "user_approval_42"
    assert instance.entity_type == "USER"
    assert instance.priority == 5
    assert instance.status is WorkflowStatus.RUNNING
    gate = await engine.waiting_execution(instance.id)
    assert gate.step_name == "await_system_admin_approval"
    assert notifier.templates() == ["user_approval_request", "step_approval_required"]

    with pytest.raises(DuplicateBusinessKey):
        await migrator.request_approval(42, "PATIENT")


@pytest.mark.asyncio
async def test_clinic_admin_approval_updates_user_and_clinic(engine, migrator, auth_calls, notifier):
    instance = await migrator.request_approval(
        5, "CLINIC_ADMIN", clinic_id=9, clinic_name="Bright Smiles"
    )
    instance = await engine.join(instance.id)
    assert instance.business_key == "clinic_admin_approval_5_9"
    assert instance.input_data["requestReason"] == "Clinic admin sign up for Bright Smiles"

    gate = await engine.waiting_execution(instance.id)
    await engine.approve_step(gate.id, True, approver_id="sys-admin")
    instance = await engine.join(instance.id)

    assert instance.status is WorkflowStatus.COMPLETED
    assert instance.context_data["reviewedBy"] == "sys-admin"
    assert auth_calls == [("user", 5, True), ("clinic", 9, True)]
    assert notifier.templates()[-1] == "clinic_admin_approval_result"


@pytest.mark.asyncio
async def test_batch_migrate_replays_decisions(engine, migrator, auth_calls):
    report = await migrator.batch_migrate(
        [
            LegacyApprovalRequest(user_id=1, status="PENDING"),
            {"user_id": 2, "requested_role": "DENTIST", "clinic_id": 4, "status": "APPROVED",
             "reviewed_by": "clinic-admin-4"},
            {"user_id": 3, "status": "REJECTED", "review_notes": "duplicate account"},
            {"requested_role": "PATIENT"},
        ]
    )

    assert report.success_count == 3
    assert report.failure_count == 1
    assert "Success: 3, Failures: 1" in report.summary()

    pending, approved, rejected = [await engine.get_instance(i) for i in report.migrated]
    assert pending.status is WorkflowStatus.RUNNING
    assert approved.workflow_name == STAFF_APPROVAL_WORKFLOW
    assert approved.status is WorkflowStatus.COMPLETED
    assert rejected.status is WorkflowStatus.FAILED
    assert "duplicate account" in rejected.error_message
    assert auth_calls == [("user", 2, True)]

    gate = (await engine.list_executions(approved.id))[2]
    assert gate.status is StepStatus.COMPLETED
    assert gate.approver_id == "clinic-admin-4"
