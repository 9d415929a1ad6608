"""Workflow definitions, instances and step executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_DEFINITION_VERSION,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_PRIORITY,
    DEFAULT_STEP_RETRY_ATTEMPTS,
)
from .exceptions import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def deadline(minutes: Optional[float], start: Optional[datetime] = None) -> Optional[datetime]:
    """Return ``start + minutes`` or ``None`` when no timeout is configured."""
    if not minutes:
        return None
    return (start or utcnow()) + timedelta(minutes=minutes)


class StepType(str, Enum):
    AUTOMATED = "AUTOMATED"
    MANUAL_APPROVAL = "MANUAL_APPROVAL"
    SERVICE_CALL = "SERVICE_CALL"
    NOTIFICATION = "NOTIFICATION"
    CONDITIONAL = "CONDITIONAL"
    WAIT = "WAIT"


class WorkflowStatus(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STEP_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)
LIVE_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.CREATED, WorkflowStatus.RUNNING, WorkflowStatus.WAITING}
)
TERMINAL_STEP_STATUSES = frozenset(
    {
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.CANCELLED,
        StepStatus.TIMEOUT,
    }
)
ACTIVE_STEP_STATUSES = frozenset({StepStatus.RUNNING, StepStatus.WAITING_APPROVAL})


INSTANCE_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.CREATED: {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED},
    WorkflowStatus.RUNNING: {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.WAITING,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.WAITING: {
        WorkflowStatus.RUNNING,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}

STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.RUNNING},
    StepStatus.RUNNING: {
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.WAITING_APPROVAL,
        StepStatus.TIMEOUT,
        StepStatus.CANCELLED,
    },
    StepStatus.WAITING_APPROVAL: {
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.TIMEOUT,
        StepStatus.CANCELLED,
    },
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
    StepStatus.CANCELLED: set(),
    StepStatus.TIMEOUT: set(),
}


class StepDefinition(BaseModel):
    """One ordered step of a workflow template."""

    id: str = Field(default_factory=new_id)
    workflow_definition_id: Optional[str] = None
    step_name: str
    step_order: int
    step_type: StepType
    description: Optional[str] = None
    is_required: bool = True
    is_parallel: bool = False
    timeout_minutes: Optional[float] = None
    retry_attempts: int = DEFAULT_STEP_RETRY_ATTEMPTS
    condition_expression: Optional[str] = None
    approval_roles: List[str] = Field(default_factory=list)
    service_endpoint: Optional[str] = None
    notification_template: Optional[str] = None
    step_configuration: Dict[str, Any] = Field(default_factory=dict)
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    output_mapping: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowDefinition(BaseModel):
    """Versioned, immutable workflow template."""

    id: str = Field(default_factory=new_id)
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    version: int = DEFAULT_DEFINITION_VERSION
    category: Optional[str] = None
    is_active: bool = True
    is_system_workflow: bool = False
    timeout_minutes: Optional[float] = None
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    auto_start: bool = False
    requires_approval: bool = False
    configuration: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepDefinition] = Field(default_factory=list)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def step(self, step_order: int) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.step_order == step_order:
                return step
        return None


class WorkflowInstance(BaseModel):
    """One run of a workflow definition."""

    id: str = Field(default_factory=new_id)
    workflow_definition_id: str
    workflow_name: str
    workflow_version: int
    instance_name: Optional[str] = None
    business_key: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.CREATED
    priority: int = DEFAULT_PRIORITY
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    context_data: Dict[str, Any] = Field(default_factory=dict)
    current_step_order: Optional[int] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    failed_step_order: Optional[int] = None
    retry_count: int = 0
    started_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, target: WorkflowStatus) -> None:
        if target not in INSTANCE_TRANSITIONS[self.status]:
            raise InvalidTransition(f"Workflow instance {self.id}", self.status, target)
        self.status = target
        if target.is_terminal:
            self.completed_at = utcnow()

    def fail(
        self, message: str, kind: str, step_order: Optional[int] = None
    ) -> None:
        self.transition(WorkflowStatus.FAILED)
        self.error_message = message
        self.error_kind = kind
        self.failed_step_order = step_order


class StepExecution(BaseModel):
    """Audit record of one step's run inside one instance."""

    id: str = Field(default_factory=new_id)
    workflow_instance_id: str
    step_definition_id: str
    step_name: str
    step_order: int
    step_type: StepType
    status: StepStatus = StepStatus.PENDING
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    retry_count: int = 0
    approver_id: Optional[str] = None
    approval_notes: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def from_step(cls, instance_id: str, step: StepDefinition) -> "StepExecution":
        return cls(
            workflow_instance_id=instance_id,
            step_definition_id=step.id,
            step_name=step.step_name,
            step_order=step.step_order,
            step_type=step.step_type,
        )

    def transition(self, target: StepStatus) -> None:
        if target not in STEP_TRANSITIONS[self.status]:
            raise InvalidTransition(f"Step execution {self.id}", self.status, target)
        self.status = target
        if target is StepStatus.RUNNING:
            self.started_at = utcnow()
        elif target.is_terminal:
            self.completed_at = utcnow()


class StartWorkflowRequest(BaseModel):
    """Caller-supplied parameters for starting an instance."""

    workflow_name: str
    workflow_version: Optional[int] = None
    instance_name: Optional[str] = None
    business_key: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    input_data: Dict[str, Any] = Field(default_factory=dict)
    context_data: Dict[str, Any] = Field(default_factory=dict)
    auto_start: Optional[bool] = None
    started_by: Optional[str] = None


class DefinitionUpdate(BaseModel):
    """Fields of a definition that may change after creation."""

    display_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: Optional[bool] = None
    timeout_minutes: Optional[float] = None
    max_retry_attempts: Optional[int] = None
    auto_start: Optional[bool] = None
    requires_approval: Optional[bool] = None
    configuration: Optional[Dict[str, Any]] = None
    updated_by: Optional[str] = None
