"""Engine facade wiring stores, collaborators and services together."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .authoring import DefinitionService
from .config import ApprovalflowConfig, load_config
from .coordinator import ExecutionCoordinator
from .executor import StepExecutor
from .models import (
    DefinitionUpdate,
    StartWorkflowRequest,
    StepExecution,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)
from .notifications import BaseNotifier, get_notifier
from .persistence import WorkflowRepository, get_repository
from .registry import HandlerRegistry, build_service_registry
from .sweeper import SweepReport, TimeoutSweeper
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Single entry point for authoring, submission and approval."""

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier: BaseNotifier,
        services: Optional[HandlerRegistry] = None,
        actions: Optional[HandlerRegistry] = None,
        config: Optional[ApprovalflowConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config or ApprovalflowConfig()
        self.repository = repository
        self.notifier = notifier
        self.services = services if services is not None else HandlerRegistry("service endpoint")
        self.actions = actions if actions is not None else HandlerRegistry("automated action")

        engine_conf = self.config.engine
        self.definitions = DefinitionService(repository)
        self.executor = StepExecutor(
            repository,
            notifier,
            self.services,
            self.actions,
            max_concurrent_calls=engine_conf.max_concurrent_calls,
            retry_policy=retry_policy
            or RetryPolicy(
                base=engine_conf.retry_backoff_base, jitter=engine_conf.retry_backoff_jitter
            ),
        )
        self.coordinator = ExecutionCoordinator(repository, repository, self.executor)
        self.sweeper = TimeoutSweeper(
            self.coordinator, repository, interval_seconds=engine_conf.sweep_interval_seconds
        )

    # ------------------------------------------------------------------
    # Definitions
    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await self.definitions.create_definition(definition)

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        return await self.definitions.get_definition(definition_id)

    async def get_definition_by_name(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        return await self.definitions.get_definition_by_name(name, version)

    async def list_definitions(
        self, active_only: bool = True, category: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        return await self.definitions.list_definitions(active_only=active_only, category=category)

    async def update_definition(
        self, definition_id: str, update: DefinitionUpdate
    ) -> WorkflowDefinition:
        return await self.definitions.update_definition(definition_id, update)

    # ------------------------------------------------------------------
    # Instances
    async def start_workflow(
        self,
        workflow_name: str,
        input_data: Optional[Dict[str, Any]] = None,
        *,
        version: Optional[int] = None,
        business_key: Optional[str] = None,
        auto_start: Optional[bool] = None,
        context_data: Optional[Dict[str, Any]] = None,
        instance_name: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        priority: Optional[int] = None,
        started_by: Optional[str] = None,
    ) -> WorkflowInstance:
        request = StartWorkflowRequest(
            workflow_name=workflow_name,
            workflow_version=version,
            instance_name=instance_name,
            business_key=business_key,
            entity_type=entity_type,
            entity_id=entity_id,
            input_data=input_data or {},
            context_data=context_data or {},
            auto_start=auto_start,
            started_by=started_by,
            **({"priority": priority} if priority is not None else {}),
        )
        return await self.coordinator.start_workflow(request)

    async def submit(self, request: StartWorkflowRequest) -> WorkflowInstance:
        return await self.coordinator.start_workflow(request)

    async def run_instance(self, instance_id: str) -> WorkflowInstance:
        return await self.coordinator.run_instance(instance_id)

    async def approve_step(
        self,
        execution_id: str,
        approved: bool,
        approver_id: Optional[str] = None,
        notes: Optional[str] = None,
        output_data: Optional[Dict[str, Any]] = None,
    ) -> StepExecution:
        return await self.coordinator.approve_step(
            execution_id, approved, approver_id=approver_id, notes=notes, output_data=output_data
        )

    async def resume_wait_step(self, execution_id: str) -> StepExecution:
        return await self.coordinator.resume_wait_step(execution_id)

    async def cancel(self, instance_id: str, reason: Optional[str] = None) -> WorkflowInstance:
        return await self.coordinator.cancel(instance_id, reason)

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        return await self.coordinator.get_instance(instance_id)

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        return await self.coordinator.list_executions(instance_id)

    async def waiting_execution(self, instance_id: str) -> Optional[StepExecution]:
        """Return the step currently awaiting a decision, if any."""
        return await self.repository.active_execution(instance_id)

    async def list_instances_by_status(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        return await self.coordinator.list_instances_by_status(status)

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return await self.sweeper.sweep_once(now)

    async def join(self, instance_id: str) -> WorkflowInstance:
        return await self.coordinator.join(instance_id)

    async def drain(self) -> None:
        await self.coordinator.drain()


def build_engine(
    config: Optional[ApprovalflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    notifier: Optional[BaseNotifier] = None,
    services: Optional[HandlerRegistry] = None,
    actions: Optional[HandlerRegistry] = None,
) -> WorkflowEngine:
    """Build an engine from configuration, filling in anything not supplied."""
    explicit = config is not None
    config = config or load_config()
    if repository is None:
        repository = get_repository(config=config) if explicit else get_repository()
    if notifier is None:
        notifier = get_notifier(config=config)
    if services is None:
        services = build_service_registry(config)
    logger.debug(
        f"Building engine with {type(repository).__name__}, {type(notifier).__name__} "
        f"and {len(services)} service endpoints"
    )
    return WorkflowEngine(repository, notifier, services=services, actions=actions, config=config)
