"""Repository abstractions for definitions, instances and step executions."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..models import (
    StepExecution,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)


class DefinitionStore(Protocol):
    """Persistence for workflow templates."""

    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a definition; raise ``DefinitionAlreadyExists`` on a duplicate (name, version)."""

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Return the definition with ``definition_id``."""

    async def get_definition_version(
        self, name: str, version: int
    ) -> Optional[WorkflowDefinition]:
        """Return the exact ``(name, version)`` definition."""

    async def get_latest_definition(self, name: str) -> Optional[WorkflowDefinition]:
        """Return the highest active version of ``name``."""

    async def list_definitions(
        self, active_only: bool = False, category: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        """Return definitions ordered by name and version."""

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Persist the mutable fields of an existing definition."""


class InstanceStore(Protocol):
    """Persistence for workflow instances and their step executions."""

    async def create_instance(
        self, instance: WorkflowInstance, executions: list[StepExecution]
    ) -> WorkflowInstance:
        """Insert an instance and its executions in one critical section.

        Raises ``DuplicateBusinessKey`` when a live instance already owns the
        instance's business key.
        """

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Return the instance with ``instance_id``."""

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        """Return instances, optionally filtered by status."""

    async def find_instance_by_business_key(
        self, business_key: str, statuses: Iterable[WorkflowStatus]
    ) -> Optional[WorkflowInstance]:
        """Return an instance with ``business_key`` in one of ``statuses``."""

    async def save_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist ``instance``; raise ``ConcurrentModification`` on a stale version."""

    async def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        """Return the step execution with ``execution_id``."""

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        """Return the instance's step executions ordered by step order."""

    async def save_execution(self, execution: StepExecution) -> StepExecution:
        """Persist ``execution``; raise ``ConcurrentModification`` on a stale version."""

    async def next_pending_execution(
        self, instance_id: str, min_order: Optional[int] = None
    ) -> Optional[StepExecution]:
        """Return the PENDING execution with the smallest order >= ``min_order``."""

    async def active_execution(self, instance_id: str) -> Optional[StepExecution]:
        """Return the RUNNING or WAITING_APPROVAL execution, if any."""

    async def list_expired_instances(self, now: datetime) -> list[WorkflowInstance]:
        """Return RUNNING or WAITING instances whose deadline passed."""

    async def list_expired_executions(self, now: datetime) -> list[StepExecution]:
        """Return RUNNING or WAITING_APPROVAL executions whose deadline passed."""

    async def list_due_wait_executions(self, now: datetime) -> list[StepExecution]:
        """Return suspended WAIT executions whose resume time has come."""


class WorkflowRepository(DefinitionStore, InstanceStore, Protocol):
    """A backend providing both stores."""
