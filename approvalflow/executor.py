"""Step execution for approvalflow workflow instances."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import TypeAdapter

from .conditions import evaluate_condition
from .constants import APPROVAL_REQUEST_TEMPLATE, DEFAULT_MAX_CONCURRENT_CALLS
from .exceptions import StepExecutionFailure, UnknownHandler
from .models import (
    StepDefinition,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    deadline,
    utcnow,
)
from .notifications import BaseNotifier
from .persistence import InstanceStore
from .registry import HandlerRegistry
from .utils.retry import RetryPolicy, retries_allowed

logger = logging.getLogger(__name__)

RETRYABLE_STEP_TYPES = frozenset(
    {StepType.AUTOMATED, StepType.SERVICE_CALL, StepType.NOTIFICATION}
)

# step output is stored as JSON
_OUTPUT = TypeAdapter(Dict[str, Any])


@dataclass
class StepOutcome:
    """Result of dispatching one step once."""

    status: StepStatus
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


StepHandler = Callable[
    [WorkflowDefinition, StepDefinition, WorkflowInstance, StepExecution],
    Awaitable[StepOutcome],
]


class StepExecutor:
    """Performs the type-specific work of one step execution.

    Collaborator failures never escape ``execute``: they are recorded on the
    step as FAILED (or TIMEOUT) and left for the coordinator to act on.
    Outbound SERVICE_CALL and NOTIFICATION work shares a bounded pool of call
    slots, independent of how many instances are waiting for approval.
    """

    def __init__(
        self,
        instances: InstanceStore,
        notifier: BaseNotifier,
        services: Optional[HandlerRegistry] = None,
        actions: Optional[HandlerRegistry] = None,
        *,
        max_concurrent_calls: int = DEFAULT_MAX_CONCURRENT_CALLS,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._instances = instances
        self._notifier = notifier
        self._services = services if services is not None else HandlerRegistry("service endpoint")
        self._actions = actions if actions is not None else HandlerRegistry("automated action")
        self._call_slots = asyncio.Semaphore(max_concurrent_calls)
        self._retry_policy = retry_policy or RetryPolicy()
        self._handlers: Dict[StepType, StepHandler] = {
            StepType.AUTOMATED: self._run_automated,
            StepType.MANUAL_APPROVAL: self._run_manual_approval,
            StepType.SERVICE_CALL: self._run_service_call,
            StepType.NOTIFICATION: self._run_notification,
            StepType.CONDITIONAL: self._run_conditional,
            StepType.WAIT: self._run_wait,
        }

    async def execute(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        execution: StepExecution,
    ) -> StepExecution:
        """Run ``execution`` to a terminal or waiting status and persist it."""
        step = definition.step(execution.step_order)
        if step is None:
            raise StepExecutionFailure(
                f"Definition {definition.name} v{definition.version} has no step {execution.step_order}"
            )

        execution.transition(StepStatus.RUNNING)
        execution.timeout_at = deadline(step.timeout_minutes, execution.started_at)
        execution.input_data = project_inputs(step, instance)
        await self._instances.save_execution(execution)
        logger.info(
            f"Step {step.step_order} '{step.step_name}' ({step.step_type.value}) started "
            f"for instance {instance.id}"
        )

        outcome = await self._run_with_retries(definition, step, instance, execution)

        execution.output_data = outcome.output
        if outcome.error:
            execution.error_message = outcome.error
        execution.transition(outcome.status)
        await self._instances.save_execution(execution)

        if outcome.status is StepStatus.COMPLETED:
            merge_output(step, instance, outcome.output)
            await self._instances.save_instance(instance)

        if outcome.status in (StepStatus.FAILED, StepStatus.TIMEOUT):
            logger.error(
                f"Step '{step.step_name}' of instance {instance.id} ended "
                f"{outcome.status.value}: {outcome.error}"
            )
        else:
            logger.info(
                f"Step '{step.step_name}' of instance {instance.id} -> {outcome.status.value}"
            )
        return execution

    async def _run_with_retries(
        self,
        definition: WorkflowDefinition,
        step: StepDefinition,
        instance: WorkflowInstance,
        execution: StepExecution,
    ) -> StepOutcome:
        while True:
            outcome = await self._dispatch(definition, step, instance, execution)
            if outcome.status is not StepStatus.FAILED:
                return outcome
            if step.step_type not in RETRYABLE_STEP_TYPES or not retries_allowed(
                step.retry_attempts,
                execution.retry_count,
                instance.retry_count,
                definition.max_retry_attempts,
            ):
                return outcome

            execution.retry_count += 1
            execution.error_message = outcome.error
            instance.retry_count += 1
            await self._instances.save_execution(execution)
            await self._instances.save_instance(instance)
            delay = await self._retry_policy.wait(execution.retry_count)
            logger.warning(
                f"Retrying step '{step.step_name}' of instance {instance.id} "
                f"(attempt {execution.retry_count}/{step.retry_attempts}, "
                f"waited {delay:.2f}s): {outcome.error}"
            )

    async def _dispatch(
        self,
        definition: WorkflowDefinition,
        step: StepDefinition,
        instance: WorkflowInstance,
        execution: StepExecution,
    ) -> StepOutcome:
        handler = self._handlers[step.step_type]
        timeout = step.timeout_minutes * 60 if step.timeout_minutes else None
        try:
            if timeout and step.step_type in RETRYABLE_STEP_TYPES:
                outcome = await asyncio.wait_for(
                    handler(definition, step, instance, execution), timeout=timeout
                )
            else:
                outcome = await handler(definition, step, instance, execution)
            _OUTPUT.dump_json(outcome.output)
            return outcome
        except asyncio.TimeoutError:
            return StepOutcome(
                StepStatus.TIMEOUT,
                error=f"Step '{step.step_name}' timed out after {step.timeout_minutes} minutes",
            )
        except Exception as exc:
            logger.exception(f"Step '{step.step_name}' of instance {instance.id} raised")
            return StepOutcome(StepStatus.FAILED, error=str(exc) or type(exc).__name__)

    # ------------------------------------------------------------------
    # Step types
    async def _run_automated(self, definition, step, instance, execution) -> StepOutcome:
        config = step.step_configuration
        missing = [f for f in config.get("required_fields", []) if f not in instance.input_data]
        if missing:
            raise StepExecutionFailure(f"Missing required fields: {', '.join(missing)}")

        output: Dict[str, Any] = {
            "executed_at": utcnow().isoformat(),
            "step_name": step.step_name,
        }
        if step.input_mapping:
            output.update(execution.input_data)

        action = config.get("action")
        if action:
            result = await self._actions.invoke(
                action, dict(execution.input_data), instance.context_data, config
            )
            output.update(result)
        return StepOutcome(StepStatus.COMPLETED, output)

    async def _run_manual_approval(self, definition, step, instance, execution) -> StepOutcome:
        variables = {
            "step_name": step.step_name,
            "workflow_name": definition.label,
            "instance_id": instance.id,
            "execution_id": execution.id,
            "approval_roles": ",".join(step.approval_roles),
        }
        template = step.notification_template or APPROVAL_REQUEST_TEMPLATE
        output: Dict[str, Any] = {"approval_roles": list(step.approval_roles)}
        try:
            async with self._call_slots:
                await self._notifier.send(template, variables)
            output["notification_sent"] = True
        except Exception as exc:
            logger.warning(
                f"Approval request for step '{step.step_name}' of instance {instance.id} "
                f"was not sent: {exc}"
            )
            output["notification_sent"] = False
            output["notification_error"] = str(exc)
        return StepOutcome(StepStatus.WAITING_APPROVAL, output)

    async def _run_service_call(self, definition, step, instance, execution) -> StepOutcome:
        endpoint = step.service_endpoint
        if not endpoint or endpoint not in self._services:
            raise UnknownHandler(f"No service endpoint registered for '{endpoint}'")
        async with self._call_slots:
            result = await self._services.invoke(endpoint, dict(execution.input_data))
        return StepOutcome(StepStatus.COMPLETED, result)

    async def _run_notification(self, definition, step, instance, execution) -> StepOutcome:
        template = step.notification_template
        variables = {k: _as_text(v) for k, v in execution.input_data.items()}
        try:
            async with self._call_slots:
                await self._notifier.send(template, variables)
        except Exception as exc:
            raise StepExecutionFailure(f"Notification failed: {exc}") from exc
        return StepOutcome(
            StepStatus.COMPLETED, {"notification_sent": True, "template": template}
        )

    async def _run_conditional(self, definition, step, instance, execution) -> StepOutcome:
        met = evaluate_condition(step.condition_expression, instance.context_data)
        output = {"condition_met": met, "expression": step.condition_expression}
        return StepOutcome(StepStatus.COMPLETED if met else StepStatus.SKIPPED, output)

    async def _run_wait(self, definition, step, instance, execution) -> StepOutcome:
        execution.resume_at = deadline(step.step_configuration.get("wait_minutes"))
        resume_at = execution.resume_at.isoformat() if execution.resume_at else None
        return StepOutcome(StepStatus.WAITING_APPROVAL, {"resume_at": resume_at})


def project_inputs(step: StepDefinition, instance: WorkflowInstance) -> Dict[str, Any]:
    """Build a step's input from the instance's input and context data.

    Context values shadow input values. With an ``input_mapping`` only the
    mapped fields are passed, renamed to their parameter names.
    """
    merged = {**instance.input_data, **instance.context_data}
    if not step.input_mapping:
        return merged
    return {param: merged[source] for param, source in step.input_mapping.items() if source in merged}


def merge_output(
    step: StepDefinition, instance: WorkflowInstance, output: Dict[str, Any]
) -> None:
    """Record a completed step's output and promote mapped fields into context."""
    instance.output_data[step.step_name] = output
    for source, target in step.output_mapping.items():
        if source in output:
            instance.context_data[target] = output[source]


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
