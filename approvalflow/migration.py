"""Built-in user approval chains and backfill of legacy approval requests.

Three chains cover account signups:

* ``user_approval_workflow`` for ordinary users, approved by a system admin
* ``clinic_admin_approval_workflow`` for clinic administrators, which also
  updates the clinic record
* ``staff_approval_workflow`` for dentists and receptionists, approved by
  their clinic admin
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from .exceptions import DefinitionNotFound, WorkflowError
from .models import (
    StepDefinition,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    utcnow,
)

logger = logging.getLogger(__name__)

USER_APPROVAL_WORKFLOW = "user_approval_workflow"
CLINIC_ADMIN_APPROVAL_WORKFLOW = "clinic_admin_approval_workflow"
STAFF_APPROVAL_WORKFLOW = "staff_approval_workflow"

USER_STATUS_ENDPOINT = "auth-service/user/{userId}/approval"
CLINIC_STATUS_ENDPOINT = "auth-service/clinic/{clinicId}/approval"

CATEGORY = "USER_MANAGEMENT"
SEVEN_DAYS = 7 * 24 * 60
THREE_DAYS = 3 * 24 * 60
SHORT_STEP = 5

STAFF_ROLES = {"DENTIST", "RECEPTIONIST"}
SETTLED_STATUSES = {"APPROVED", "REJECTED"}


def workflow_for_role(role: str, clinic_id: Optional[Any] = None) -> str:
    """Pick the approval chain for ``role``.

    Clinic admin and staff chains need a clinic; without one the request
    goes through the ordinary user chain.
    """
    if role == "CLINIC_ADMIN" and clinic_id is not None:
        return CLINIC_ADMIN_APPROVAL_WORKFLOW
    if role in STAFF_ROLES and clinic_id is not None:
        return STAFF_APPROVAL_WORKFLOW
    return USER_APPROVAL_WORKFLOW


def _validate(name: str, required: List[str]) -> StepDefinition:
    return StepDefinition(
        step_name=name,
        step_order=1,
        step_type=StepType.AUTOMATED,
        description="Validate registration data",
        timeout_minutes=SHORT_STEP,
        step_configuration={"required_fields": required},
    )


def _notify(name: str, order: int, template: str, description: str) -> StepDefinition:
    return StepDefinition(
        step_name=name,
        step_order=order,
        step_type=StepType.NOTIFICATION,
        description=description,
        notification_template=template,
        timeout_minutes=SHORT_STEP,
    )


def _approval(name: str, role: str, timeout: int) -> StepDefinition:
    return StepDefinition(
        step_name=name,
        step_order=3,
        step_type=StepType.MANUAL_APPROVAL,
        description=f"Wait for {role} approval",
        approval_roles=[role],
        timeout_minutes=timeout,
        output_mapping={"approved": "approved", "approver_id": "reviewedBy"},
    )


def _status_update(name: str, order: int, endpoint: str, description: str) -> StepDefinition:
    return StepDefinition(
        step_name=name,
        step_order=order,
        step_type=StepType.SERVICE_CALL,
        description=description,
        service_endpoint=endpoint,
        timeout_minutes=SHORT_STEP,
    )


def _definition(name: str, display_name: str, description: str, steps) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        display_name=display_name,
        description=description,
        category=CATEGORY,
        is_system_workflow=True,
        timeout_minutes=SEVEN_DAYS,
        auto_start=True,
        requires_approval=True,
        steps=steps,
        created_by="system",
    )


def builtin_definitions() -> List[WorkflowDefinition]:
    return [
        _definition(
            USER_APPROVAL_WORKFLOW,
            "User Approval Workflow",
            "Standard user approval workflow for patient registrations",
            [
                _validate("validate_user_data", ["userId"]),
                _notify(
                    "send_approval_notification", 2, "user_approval_request",
                    "Send notification to system admins for approval",
                ),
                _approval("await_system_admin_approval", "SYSTEM_ADMIN", SEVEN_DAYS),
                _status_update(
                    "update_user_status", 4, USER_STATUS_ENDPOINT,
                    "Update user approval status in auth service",
                ),
                _notify(
                    "send_approval_result", 5, "user_approval_result",
                    "Send approval result notification to user",
                ),
            ],
        ),
        _definition(
            CLINIC_ADMIN_APPROVAL_WORKFLOW,
            "Clinic Admin Approval Workflow",
            "Approval workflow for clinic administrator registrations",
            [
                _validate("validate_clinic_admin_data", ["userId", "clinicId"]),
                _notify(
                    "send_clinic_admin_approval_notification", 2,
                    "clinic_admin_approval_request",
                    "Send notification to system admins for clinic admin approval",
                ),
                _approval("await_system_admin_approval", "SYSTEM_ADMIN", SEVEN_DAYS),
                _status_update(
                    "update_user_status", 4, USER_STATUS_ENDPOINT,
                    "Update user approval status in auth service",
                ),
                _status_update(
                    "update_clinic_status", 5, CLINIC_STATUS_ENDPOINT,
                    "Update clinic approval status in auth service",
                ),
                _notify(
                    "send_approval_result", 6, "clinic_admin_approval_result",
                    "Send approval result notification to clinic admin",
                ),
            ],
        ),
        _definition(
            STAFF_APPROVAL_WORKFLOW,
            "Staff Approval Workflow",
            "Approval workflow for clinic staff registrations",
            [
                _validate("validate_staff_data", ["userId", "clinicId"]),
                _notify(
                    "send_clinic_admin_notification", 2, "staff_approval_request",
                    "Send notification to clinic admin for staff approval",
                ),
                _approval("await_clinic_admin_approval", "CLINIC_ADMIN", THREE_DAYS),
                _status_update(
                    "update_user_status", 4, USER_STATUS_ENDPOINT,
                    "Update user approval status in auth service",
                ),
                _notify(
                    "send_approval_result", 5, "staff_approval_result",
                    "Send approval result notification to staff member",
                ),
            ],
        ),
    ]


class LegacyApprovalRequest(BaseModel):
    """An approval request as stored by the previous user-profile service."""

    user_id: Union[int, str]
    requested_role: str = "PATIENT"
    clinic_id: Optional[Union[int, str]] = None
    clinic_name: Optional[str] = None
    request_reason: Optional[str] = None
    status: str = "PENDING"
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None


@dataclass
class MigrationReport:
    migrated: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.migrated)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def summary(self) -> str:
        return (
            f"Batch migration completed. Success: {self.success_count}, "
            f"Failures: {self.failure_count}"
        )


class ApprovalMigrator:
    """Starts approval chains on a ``WorkflowEngine`` and backfills old requests."""

    def __init__(self, engine) -> None:
        self._engine = engine

    async def ensure_definitions(self) -> List[WorkflowDefinition]:
        """Create any built-in chain that has no active definition yet."""
        created = []
        for definition in builtin_definitions():
            try:
                await self._engine.get_definition_by_name(definition.name)
            except DefinitionNotFound:
                version = await self._engine.definitions.next_version(definition.name)
                definition.version = version
                created.append(await self._engine.create_definition(definition))
        return created

    async def request_approval(
        self,
        user_id: Union[int, str],
        role: str,
        reason: Optional[str] = None,
        clinic_id: Optional[Union[int, str]] = None,
        clinic_name: Optional[str] = None,
        started_by: Optional[str] = None,
    ) -> WorkflowInstance:
        """Start the approval chain matching ``role`` for a new signup."""
        workflow_name = workflow_for_role(role, clinic_id)
        input_data: Dict[str, Any] = {
            "userId": user_id,
            "requestedRole": role,
            "createdAt": utcnow().isoformat(),
        }

        if workflow_name == CLINIC_ADMIN_APPROVAL_WORKFLOW:
            input_data.update(
                clinicId=clinic_id,
                clinicName=clinic_name,
                requestType="CLINIC_ADMIN_SIGNUP",
                requestReason=reason or f"Clinic admin sign up for {clinic_name}",
            )
            business_key = f"clinic_admin_approval_{user_id}_{clinic_id}"
            instance_name = f"Clinic Admin Approval - {user_id}"
            priority = 3
        elif workflow_name == STAFF_APPROVAL_WORKFLOW:
            input_data.update(
                clinicId=clinic_id,
                clinicName=clinic_name,
                requestType="STAFF_SIGNUP",
                requestReason=reason or f"Clinic staff sign up for {clinic_name}",
            )
            business_key = f"staff_approval_{user_id}_{clinic_id}"
            instance_name = f"Staff Approval - {user_id}"
            priority = 4
        else:
            input_data.update(requestType="USER_SIGNUP", requestReason=reason)
            business_key = f"user_approval_{user_id}"
            instance_name = f"User Approval - {user_id}"
            priority = 5

        logger.info(f"Requesting {workflow_name} for user {user_id} with role {role}")
        return await self._engine.start_workflow(
            workflow_name,
            input_data,
            business_key=business_key,
            instance_name=instance_name,
            entity_type="USER",
            entity_id=str(user_id),
            priority=priority,
            auto_start=True,
            started_by=started_by or str(user_id),
        )

    async def migrate(self, request: LegacyApprovalRequest) -> WorkflowInstance:
        """Start a chain for ``request`` and replay a decision it already has."""
        instance = await self.request_approval(
            request.user_id,
            request.requested_role,
            reason=request.request_reason,
            clinic_id=request.clinic_id,
            clinic_name=request.clinic_name or "Migrated Clinic",
        )
        status = request.status.upper()
        if status not in SETTLED_STATUSES:
            return instance

        instance = await self._engine.join(instance.id)
        gate = await self._engine.waiting_execution(instance.id)
        if gate is None or gate.step_type is not StepType.MANUAL_APPROVAL:
            logger.warning(
                f"Instance {instance.id} has no open approval gate; "
                f"legacy decision {status} was not applied"
            )
            return instance

        await self._engine.approve_step(
            gate.id,
            approved=status == "APPROVED",
            approver_id=request.reviewed_by,
            notes=request.review_notes or f"Migrated legacy decision {status}",
        )
        logger.info(f"Replayed legacy decision {status} on instance {instance.id}")
        return await self._engine.join(instance.id)

    async def batch_migrate(
        self, requests: Iterable[Union[LegacyApprovalRequest, Mapping[str, Any]]]
    ) -> MigrationReport:
        report = MigrationReport()
        for raw in requests:
            label = str(raw.get("user_id") if isinstance(raw, Mapping) else raw.user_id)
            try:
                request = (
                    raw
                    if isinstance(raw, LegacyApprovalRequest)
                    else LegacyApprovalRequest.model_validate(raw)
                )
                instance = await self.migrate(request)
            except (WorkflowError, ValidationError) as exc:
                logger.error(f"Failed to migrate approval request for user {label}: {exc}")
                report.failures.append((label, str(exc)))
                continue
            report.migrated.append(instance.id)
        logger.info(report.summary())
        return report
