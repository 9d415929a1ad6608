"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Iterable, Optional

from ..exceptions import (
    ConcurrentModification,
    DefinitionAlreadyExists,
    DefinitionNotFound,
    DuplicateBusinessKey,
    InstanceNotFound,
    StepExecutionNotFound,
)
from ..models import (
    ACTIVE_STEP_STATUSES,
    LIVE_WORKFLOW_STATUSES,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store definitions and instances in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._executions: Dict[str, StepExecution] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Definitions
    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            for existing in self._definitions.values():
                if (existing.name, existing.version) == (definition.name, definition.version):
                    raise DefinitionAlreadyExists(
                        f"Workflow definition {definition.name} v{definition.version} already exists"
                    )
            self._definitions[definition.id] = definition.model_copy(deep=True)
        return definition

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            return _copy(self._definitions.get(definition_id))

    async def get_definition_version(
        self, name: str, version: int
    ) -> Optional[WorkflowDefinition]:
        with self._lock:
            for definition in self._definitions.values():
                if definition.name == name and definition.version == version:
                    return _copy(definition)
        return None

    async def get_latest_definition(self, name: str) -> Optional[WorkflowDefinition]:
        with self._lock:
            candidates = [
                d for d in self._definitions.values() if d.name == name and d.is_active
            ]
            if not candidates:
                return None
            return _copy(max(candidates, key=lambda d: d.version))

    async def list_definitions(
        self, active_only: bool = False, category: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        with self._lock:
            found = [
                d.model_copy(deep=True)
                for d in self._definitions.values()
                if (not active_only or d.is_active)
                and (category is None or d.category == category)
            ]
        return sorted(found, key=lambda d: (d.name, d.version))

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            stored = self._definitions.get(definition.id)
            if stored is None:
                raise DefinitionNotFound(f"Workflow definition {definition.id} not found")
            # steps are immutable once stored
            updated = definition.model_copy(deep=True, update={"steps": stored.steps})
            updated.updated_at = utcnow()
            self._definitions[definition.id] = updated
            definition.updated_at = updated.updated_at
        return definition

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(
        self, instance: WorkflowInstance, executions: list[StepExecution]
    ) -> WorkflowInstance:
        with self._lock:
            if instance.business_key:
                for existing in self._instances.values():
                    if (
                        existing.business_key == instance.business_key
                        and existing.status in LIVE_WORKFLOW_STATUSES
                    ):
                        raise DuplicateBusinessKey(instance.business_key, existing.id)
            self._instances[instance.id] = instance.model_copy(deep=True)
            for execution in executions:
                self._executions[execution.id] = execution.model_copy(deep=True)
        return instance

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        with self._lock:
            return _copy(self._instances.get(instance_id))

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        with self._lock:
            found = [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if status is None or i.status == status
            ]
        return sorted(found, key=lambda i: i.created_at)

    async def find_instance_by_business_key(
        self, business_key: str, statuses: Iterable[WorkflowStatus]
    ) -> Optional[WorkflowInstance]:
        wanted = set(statuses)
        with self._lock:
            for instance in self._instances.values():
                if instance.business_key == business_key and instance.status in wanted:
                    return instance.model_copy(deep=True)
        return None

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            stored = self._instances.get(instance.id)
            _check_version(
                InstanceNotFound, "Workflow instance", instance.id, stored, instance.version
            )
            instance.version += 1
            instance.updated_at = utcnow()
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    # ------------------------------------------------------------------
    # Step executions
    async def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        with self._lock:
            return _copy(self._executions.get(execution_id))

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        with self._lock:
            found = [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.workflow_instance_id == instance_id
            ]
        return sorted(found, key=lambda e: e.step_order)

    async def save_execution(self, execution: StepExecution) -> StepExecution:
        with self._lock:
            stored = self._executions.get(execution.id)
            _check_version(
                StepExecutionNotFound, "Step execution", execution.id, stored, execution.version
            )
            execution.version += 1
            execution.updated_at = utcnow()
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def next_pending_execution(
        self, instance_id: str, min_order: Optional[int] = None
    ) -> Optional[StepExecution]:
        for execution in await self.list_executions(instance_id):
            if execution.status != StepStatus.PENDING:
                continue
            if min_order is not None and execution.step_order < min_order:
                continue
            return execution
        return None

    async def active_execution(self, instance_id: str) -> Optional[StepExecution]:
        for execution in await self.list_executions(instance_id):
            if execution.status in ACTIVE_STEP_STATUSES:
                return execution
        return None

    async def list_expired_instances(self, now: datetime) -> list[WorkflowInstance]:
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if i.status in (WorkflowStatus.RUNNING, WorkflowStatus.WAITING)
                and i.timeout_at is not None
                and i.timeout_at < now
            ]

    async def list_expired_executions(self, now: datetime) -> list[StepExecution]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.status in ACTIVE_STEP_STATUSES
                and e.timeout_at is not None
                and e.timeout_at < now
            ]

    async def list_due_wait_executions(self, now: datetime) -> list[StepExecution]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.step_type == StepType.WAIT
                and e.status == StepStatus.WAITING_APPROVAL
                and e.resume_at is not None
                and e.resume_at <= now
            ]


def _copy(record):
    return record.model_copy(deep=True) if record is not None else None


def _check_version(missing, label: str, record_id: str, stored, expected: int) -> None:
    if stored is None:
        raise missing(f"{label} {record_id} not found")
    if stored.version != expected:
        raise ConcurrentModification(
            f"{label} {record_id} was modified concurrently "
            f"(expected version {expected}, found {stored.version})"
        )
