"""Instance lifecycle: start, advance, approve, cancel and expire."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, AsyncIterator, Dict, Optional

from .constants import REJECTION_PREFIX
from .exceptions import (
    ApprovalRejected,
    ConcurrentModification,
    DefinitionInactive,
    DefinitionNotFound,
    InstanceNotFound,
    InvalidTransition,
    StepExecutionFailure,
    StepExecutionNotFound,
    WorkflowTimeout,
)
from .executor import StepExecutor, merge_output
from .models import (
    ACTIVE_STEP_STATUSES,
    StartWorkflowRequest,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
    deadline,
    utcnow,
)
from .persistence import DefinitionStore, InstanceStore

logger = logging.getLogger(__name__)


class ExecutionCoordinator:
    """Owns the lifecycle of workflow instances.

    Every read-modify-write of an instance happens under that instance's
    lock, so each instance has a single writer at a time while different
    instances proceed concurrently. Steps are advanced by one asyncio task
    per instance; ``start_workflow``, ``run_instance`` and ``approve_step``
    return as soon as that task has been scheduled. Use ``join`` or
    ``drain`` to wait for the instance to reach its next resting point.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        instances: InstanceStore,
        executor: StepExecutor,
    ) -> None:
        self._definitions = definitions
        self._instances = instances
        self._executor = executor
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public operations
    async def start_workflow(self, request: StartWorkflowRequest) -> WorkflowInstance:
        """Create an instance and its PENDING step executions.

        Raises ``DuplicateBusinessKey`` without creating anything when a live
        instance already owns ``request.business_key``.
        """
        definition = await self._resolve_definition(
            request.workflow_name, request.workflow_version
        )
        instance = WorkflowInstance(
            workflow_definition_id=definition.id,
            workflow_name=definition.name,
            workflow_version=definition.version,
            instance_name=request.instance_name or definition.label,
            business_key=request.business_key,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            priority=request.priority,
            input_data=dict(request.input_data),
            context_data=dict(request.context_data),
            started_by=request.started_by,
            timeout_at=deadline(definition.timeout_minutes),
        )
        executions = [StepExecution.from_step(instance.id, step) for step in definition.steps]
        await self._instances.create_instance(instance, executions)
        logger.info(
            f"Created instance {instance.id} of {definition.name} v{definition.version} "
            f"with {len(executions)} steps"
            + (f" (business key {instance.business_key})" if instance.business_key else "")
        )

        auto_start = request.auto_start if request.auto_start is not None else definition.auto_start
        if auto_start:
            return await self.run_instance(instance.id)
        return instance

    async def run_instance(self, instance_id: str) -> WorkflowInstance:
        """Move a CREATED or WAITING instance to RUNNING and dispatch its next step."""
        async with self._lock(instance_id):
            instance = await self.get_instance(instance_id)
            if instance.status is WorkflowStatus.WAITING:
                unresolved = await self._instances.active_execution(instance.id)
                if unresolved is not None:
                    raise InvalidTransition(
                        f"Workflow instance {instance.id} (step '{unresolved.step_name}' "
                        f"is {unresolved.status.value})",
                        instance.status,
                        WorkflowStatus.RUNNING,
                    )
            instance.transition(WorkflowStatus.RUNNING)
            if instance.started_at is None:
                instance.started_at = utcnow()
            pending = await self._instances.next_pending_execution(instance.id)
            if pending is not None:
                instance.current_step_order = pending.step_order
            await self._instances.save_instance(instance)
        logger.info(f"Instance {instance.id} is RUNNING")
        self._schedule(instance.id)
        return instance

    async def approve_step(
        self,
        execution_id: str,
        approved: bool,
        approver_id: Optional[str] = None,
        notes: Optional[str] = None,
        output_data: Optional[Dict[str, Any]] = None,
    ) -> StepExecution:
        """Record an approval decision for a WAITING_APPROVAL step.

        Approval completes the step and resumes the instance. Rejection fails
        the step and the whole instance. A second decision for the same step
        raises ``InvalidTransition`` and changes nothing, including one racing
        in from another engine on the same store.
        """
        target = StepStatus.COMPLETED if approved else StepStatus.FAILED
        first_look = await self._get_execution(execution_id)
        instance_id = first_look.workflow_instance_id

        async with self._lock(instance_id):
            execution = await self._get_execution(execution_id)
            instance = await self.get_instance(instance_id)
            if execution.status is not StepStatus.WAITING_APPROVAL or instance.is_terminal:
                raise InvalidTransition(f"Step execution {execution.id}", execution.status, target)

            definition = await self._definition_for(instance)
            execution.approver_id = approver_id
            execution.approval_notes = notes
            execution.output_data = {
                **execution.output_data,
                "approved": approved,
                **({"approver_id": approver_id} if approver_id else {}),
                **(output_data or {}),
            }

            if not approved:
                execution.error_message = f"{REJECTION_PREFIX}{notes or 'no reason given'}"
                execution.transition(StepStatus.FAILED)
                await self._claim(execution, target)
                await self._fail(
                    instance,
                    execution.error_message,
                    ApprovalRejected.__name__,
                    execution.step_order,
                )
                return execution

            execution.transition(StepStatus.COMPLETED)
            await self._claim(execution, target)
            merge_output(definition.step(execution.step_order), instance, execution.output_data)
            await self._instances.save_instance(instance)
            resume = instance.status is WorkflowStatus.WAITING

        logger.info(
            f"Step '{execution.step_name}' of instance {instance_id} approved"
            + (f" by {approver_id}" if approver_id else "")
        )
        if resume:
            await self.run_instance(instance_id)
        else:
            self._schedule(instance_id)
        return execution

    async def resume_wait_step(self, execution_id: str) -> StepExecution:
        """Complete a suspended WAIT step and re-enter the instance."""
        first_look = await self._get_execution(execution_id)
        instance_id = first_look.workflow_instance_id

        async with self._lock(instance_id):
            execution = await self._get_execution(execution_id)
            if (
                execution.step_type is not StepType.WAIT
                or execution.status is not StepStatus.WAITING_APPROVAL
            ):
                raise InvalidTransition(
                    f"Step execution {execution.id}", execution.status, StepStatus.COMPLETED
                )
            instance = await self.get_instance(instance_id)
            definition = await self._definition_for(instance)
            execution.output_data = {**execution.output_data, "resumed_at": utcnow().isoformat()}
            execution.transition(StepStatus.COMPLETED)
            await self._claim(execution, StepStatus.COMPLETED)
            merge_output(definition.step(execution.step_order), instance, execution.output_data)
            await self._instances.save_instance(instance)
            resume = instance.status is WorkflowStatus.WAITING

        logger.info(f"WAIT step '{execution.step_name}' of instance {instance_id} resumed")
        if resume:
            await self.run_instance(instance_id)
        else:
            self._schedule(instance_id)
        return execution

    async def cancel(self, instance_id: str, reason: Optional[str] = None) -> WorkflowInstance:
        """Cancel a non-terminal instance and its in-flight step."""
        await self._halt(instance_id)
        async with self._lock(instance_id):
            instance = await self.get_instance(instance_id)
            if instance.is_terminal:
                raise InvalidTransition(
                    f"Workflow instance {instance.id}", instance.status, WorkflowStatus.CANCELLED
                )
            active = await self._instances.active_execution(instance.id)
            if active is not None:
                active.error_message = reason or "Cancelled"
                active.transition(StepStatus.CANCELLED)
                await self._instances.save_execution(active)
            instance.transition(WorkflowStatus.CANCELLED)
            instance.error_message = reason
            await self._instances.save_instance(instance)
        logger.info(
            f"Instance {instance_id} cancelled" + (f": {reason}" if reason else "")
        )
        return instance

    async def expire_step(
        self, execution_id: str, now: Optional[datetime] = None
    ) -> StepExecution:
        """Time out an active step whose deadline passed and fail its instance."""
        now = now or utcnow()
        execution = await self._get_execution(execution_id)
        if not _step_expired(execution, now):
            return execution

        instance_id = execution.workflow_instance_id
        await self._halt(instance_id)
        async with self._lock(instance_id):
            execution = await self._get_execution(execution_id)
            instance = await self.get_instance(instance_id)
            if _step_expired(execution, now) and not instance.is_terminal:
                message = (
                    f"Step '{execution.step_name}' exceeded its deadline "
                    f"{execution.timeout_at.isoformat()}"
                )
                execution.error_message = message
                execution.transition(StepStatus.TIMEOUT)
                await self._instances.save_execution(execution)
                await self._fail(instance, message, WorkflowTimeout.__name__, execution.step_order)
                return execution
        if instance.status is WorkflowStatus.RUNNING:
            self._schedule(instance_id)
        return execution

    async def expire_instance(
        self, instance_id: str, now: Optional[datetime] = None
    ) -> WorkflowInstance:
        """Fail a RUNNING or WAITING instance whose deadline passed."""
        now = now or utcnow()
        instance = await self.get_instance(instance_id)
        if not _instance_expired(instance, now):
            return instance

        await self._halt(instance_id)
        async with self._lock(instance_id):
            instance = await self.get_instance(instance_id)
            if _instance_expired(instance, now):
                active = await self._instances.active_execution(instance.id)
                message = f"Workflow exceeded its deadline {instance.timeout_at.isoformat()}"
                if active is not None:
                    active.error_message = message
                    active.transition(StepStatus.TIMEOUT)
                    await self._instances.save_execution(active)
                await self._fail(
                    instance,
                    message,
                    WorkflowTimeout.__name__,
                    active.step_order if active else instance.current_step_order,
                )
                return instance
        if instance.status is WorkflowStatus.RUNNING:
            self._schedule(instance_id)
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self._instances.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(f"Workflow instance {instance_id} not found")
        return instance

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        await self.get_instance(instance_id)
        return await self._instances.list_executions(instance_id)

    async def list_instances_by_status(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        return await self._instances.list_instances(status)

    async def join(self, instance_id: str) -> WorkflowInstance:
        """Wait until no drive task is pending for ``instance_id``.

        Re-raises the exception of a drive task that crashed, once; the task
        is forgotten afterwards.
        """
        seen: Optional[asyncio.Task] = None
        while True:
            task = self._tasks.get(instance_id)
            if task is None or task is seen:
                break
            seen = task
            await asyncio.wait([task])
            if not task.cancelled() and task.exception() is not None:
                if self._tasks.get(instance_id) is task:
                    del self._tasks[instance_id]
                raise task.exception()
        return await self.get_instance(instance_id)

    async def drain(self) -> None:
        """Wait for every scheduled drive task to settle."""
        while True:
            pending = [i for i, t in self._tasks.items() if not t.done()]
            if not pending:
                break
            for instance_id in pending:
                await self.join(instance_id)
        for instance_id in list(self._tasks):
            await self.join(instance_id)

    # ------------------------------------------------------------------
    # Drive loop
    def _schedule(self, instance_id: str) -> None:
        previous = self._tasks.get(instance_id)
        if previous is not None and previous.done():
            previous = None
        task = asyncio.create_task(
            self._drive(instance_id, previous), name=f"approvalflow-drive-{instance_id}"
        )
        self._tasks[instance_id] = task
        task.add_done_callback(partial(self._forget, instance_id))

    def _forget(self, instance_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(instance_id) is not task:
            return
        if task.cancelled() or task.exception() is None:
            del self._tasks[instance_id]

    async def _drive(self, instance_id: str, previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            async with self._lock(instance_id):
                await self._advance(instance_id)
        except Exception:
            logger.exception(f"Advancing instance {instance_id} failed")
            raise

    async def _advance(self, instance_id: str) -> None:
        """Dispatch PENDING steps in order until the instance rests or ends."""
        instance = await self.get_instance(instance_id)
        definition = await self._definition_for(instance)

        while instance.status is WorkflowStatus.RUNNING:
            if await self._instances.active_execution(instance.id) is not None:
                return

            execution = await self._instances.next_pending_execution(
                instance.id, instance.current_step_order
            )
            if execution is None:
                instance.transition(WorkflowStatus.COMPLETED)
                await self._instances.save_instance(instance)
                logger.info(f"Instance {instance.id} COMPLETED")
                return

            instance.current_step_order = execution.step_order
            await self._instances.save_instance(instance)
            try:
                execution = await self._executor.execute(definition, instance, execution)
            except Exception as exc:
                logger.exception(
                    f"Step '{execution.step_name}' of instance {instance.id} could not be recorded"
                )
                await self._abort_step(execution.id, str(exc) or type(exc).__name__)
                return

            if execution.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                continue
            if execution.status is StepStatus.WAITING_APPROVAL:
                if execution.step_type is StepType.WAIT:
                    instance.transition(WorkflowStatus.WAITING)
                    await self._instances.save_instance(instance)
                    logger.info(f"Instance {instance.id} WAITING on '{execution.step_name}'")
                return

            kind = (
                WorkflowTimeout.__name__
                if execution.status is StepStatus.TIMEOUT
                else StepExecutionFailure.__name__
            )
            await self._fail(
                instance,
                execution.error_message or f"Step '{execution.step_name}' failed",
                kind,
                execution.step_order,
            )
            return

    # ------------------------------------------------------------------
    # Helpers
    @asynccontextmanager
    async def _lock(self, instance_id: str) -> AsyncIterator[None]:
        """Hold the instance's lock; it is dropped once nobody holds or awaits it."""
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        self._lock_holders[instance_id] = self._lock_holders.get(instance_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[instance_id] -= 1
            if not self._lock_holders[instance_id]:
                del self._lock_holders[instance_id]
                del self._locks[instance_id]

    async def _claim(self, execution: StepExecution, target: StepStatus) -> None:
        """Persist a decision, losing to any writer that got there first."""
        try:
            await self._instances.save_execution(execution)
        except ConcurrentModification:
            current = await self._get_execution(execution.id)
            raise InvalidTransition(
                f"Step execution {execution.id}", current.status, target
            ) from None

    async def _abort_step(self, execution_id: str, message: str) -> None:
        """Fail a step whose outcome could not be stored, and its instance."""
        execution = await self._get_execution(execution_id)
        if execution.status is StepStatus.PENDING:
            execution.transition(StepStatus.RUNNING)
        if execution.status in ACTIVE_STEP_STATUSES:
            execution.output_data = {}
            execution.error_message = message
            execution.transition(StepStatus.FAILED)
            await self._instances.save_execution(execution)
        instance = await self.get_instance(execution.workflow_instance_id)
        if not instance.is_terminal:
            await self._fail(
                instance, message, StepExecutionFailure.__name__, execution.step_order
            )

    async def _halt(self, instance_id: str) -> None:
        task = self._tasks.get(instance_id)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _fail(
        self,
        instance: WorkflowInstance,
        message: str,
        kind: str,
        step_order: Optional[int],
    ) -> None:
        instance.fail(message, kind, step_order)
        await self._instances.save_instance(instance)
        logger.error(
            f"Instance {instance.id} FAILED at step {step_order} ({kind}): {message}"
        )

    async def _get_execution(self, execution_id: str) -> StepExecution:
        execution = await self._instances.get_execution(execution_id)
        if execution is None:
            raise StepExecutionNotFound(f"Step execution {execution_id} not found")
        return execution

    async def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = await self._definitions.get_definition(instance.workflow_definition_id)
        if definition is None:
            raise DefinitionNotFound(
                f"Workflow definition {instance.workflow_definition_id} not found"
            )
        return definition

    async def _resolve_definition(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        if version is not None:
            definition = await self._definitions.get_definition_version(name, version)
            if definition is None:
                raise DefinitionNotFound(f"Workflow definition {name} v{version} not found")
            if not definition.is_active:
                raise DefinitionInactive(f"Workflow definition {name} v{version} is not active")
            return definition

        definition = await self._definitions.get_latest_definition(name)
        if definition is not None:
            return definition
        known = [d for d in await self._definitions.list_definitions() if d.name == name]
        if known:
            raise DefinitionInactive(f"Workflow definition {name} has no active version")
        raise DefinitionNotFound(f"Workflow definition {name} not found")


def _step_expired(execution: StepExecution, now: datetime) -> bool:
    return (
        execution.status in ACTIVE_STEP_STATUSES
        and execution.timeout_at is not None
        and execution.timeout_at < now
    )


def _instance_expired(instance: WorkflowInstance, now: datetime) -> bool:
    return (
        instance.status in (WorkflowStatus.RUNNING, WorkflowStatus.WAITING)
        and instance.timeout_at is not None
        and instance.timeout_at < now
    )
