"""Tests for StepExecutor's type-specific step handling."""

import asyncio

import pytest

from approvalflow.exceptions import StepExecutionFailure
from approvalflow.executor import StepExecutor, merge_output, project_inputs
from approvalflow.models import (
    StepDefinition,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)
from approvalflow.notifications import InMemoryNotifier
from approvalflow.registry import HandlerRegistry
from approvalflow.utils.retry import RetryPolicy


async def _prepare(repo, *steps, input_data=None, context_data=None, **definition_fields):
    definition = WorkflowDefinition(name="demo", steps=list(steps), **definition_fields)
    instance = WorkflowInstance(
        workflow_definition_id=definition.id,
        workflow_name=definition.name,
        workflow_version=definition.version,
        status=WorkflowStatus.RUNNING,
        input_data=input_data or {},
        context_data=context_data or {},
    )
    executions = [StepExecution.from_step(instance.id, s) for s in definition.steps]
    await repo.create_instance(instance, executions)
    return definition, instance, executions


def _executor(repo, notifier=None, services=None, actions=None):
    return StepExecutor(
        repo,
        notifier or InMemoryNotifier(),
        services,
        actions,
        retry_policy=RetryPolicy(base=0, jitter=0),
    )


@pytest.mark.asyncio
async def test_automated_step_completes_and_checks_required_fields(repo):
    step = StepDefinition(
        step_name="validate",
        step_order=1,
        step_type=StepType.AUTOMATED,
        step_configuration={"required_fields": ["userId"]},
    )
    definition, instance, (execution,) = await _prepare(repo, step, input_data={"userId": 7})

    result = await _executor(repo).execute(definition, instance, execution)

    assert result.status is StepStatus.COMPLETED
    assert result.output_data["step_name"] == "validate"
    assert instance.output_data["validate"] == result.output_data
    stored = await repo.get_execution(execution.id)
    assert stored.status is StepStatus.COMPLETED
    assert stored.input_data == {"userId": 7}

    definition, instance, (execution,) = await _prepare(repo, step, input_data={})
    result = await _executor(repo).execute(definition, instance, execution)
    assert result.status is StepStatus.FAILED
    assert "userId" in result.error_message


@pytest.mark.asyncio
async def test_automated_step_runs_registered_action(repo):
    actions = HandlerRegistry("automated action")

    @actions.register("score")
    def score(inputs, context, config):
        return {"score": inputs["amount"] * config["factor"]}

    step = StepDefinition(
        step_name="score",
        step_order=1,
        step_type=StepType.AUTOMATED,
        step_configuration={"action": "score", "factor": 2},
        output_mapping={"score": "riskScore"},
    )
    definition, instance, (execution,) = await _prepare(repo, step, input_data={"amount": 21})

    result = await _executor(repo, actions=actions).execute(definition, instance, execution)

    assert result.output_data["score"] == 42
    assert instance.context_data["riskScore"] == 42


@pytest.mark.asyncio
async def test_manual_approval_sends_request_and_waits(repo):
    notifier = InMemoryNotifier()
    step = StepDefinition(
        step_name="review",
        step_order=1,
        step_type=StepType.MANUAL_APPROVAL,
        approval_roles=["SYSTEM_ADMIN"],
    )
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo, notifier).execute(definition, instance, execution)

    assert result.status is StepStatus.WAITING_APPROVAL
    assert result.output_data["notification_sent"] is True
    (sent,) = notifier.sent
    assert sent.template == "step_approval_required"
    assert sent.variables["execution_id"] == execution.id
    assert sent.variables["approval_roles"] == "SYSTEM_ADMIN"


@pytest.mark.asyncio
async def test_manual_approval_waits_even_if_notification_rejected(repo):
    notifier = InMemoryNotifier(reject_templates={"step_approval_required"})
    step = StepDefinition(step_name="review", step_order=1, step_type=StepType.MANUAL_APPROVAL)
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo, notifier).execute(definition, instance, execution)

    assert result.status is StepStatus.WAITING_APPROVAL
    assert result.output_data["notification_sent"] is False


@pytest.mark.asyncio
async def test_service_call_uses_registered_endpoint(repo):
    calls = []
    services = HandlerRegistry("service endpoint")
    services.register("auth-service/approval", lambda data: calls.append(data) or {"ok": True})
    step = StepDefinition(
        step_name="update",
        step_order=1,
        step_type=StepType.SERVICE_CALL,
        service_endpoint="auth-service/approval",
        input_mapping={"user": "userId"},
    )
    definition, instance, (execution,) = await _prepare(repo, step, input_data={"userId": 9, "x": 1})

    result = await _executor(repo, services=services).execute(definition, instance, execution)

    assert result.status is StepStatus.COMPLETED
    assert result.output_data == {"ok": True}
    assert calls == [{"user": 9}]


@pytest.mark.asyncio
async def test_service_call_without_handler_fails(repo):
    step = StepDefinition(
        step_name="update",
        step_order=1,
        step_type=StepType.SERVICE_CALL,
        service_endpoint="auth-service/unknown",
    )
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo).execute(definition, instance, execution)

    assert result.status is StepStatus.FAILED
    assert "auth-service/unknown" in result.error_message


@pytest.mark.asyncio
async def test_failed_service_call_is_retried(repo):
    attempts = []
    services = HandlerRegistry("service endpoint")

    @services.register("flaky")
    async def flaky(data):
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("temporarily unavailable")
        return {"attempts": len(attempts)}

    step = StepDefinition(
        step_name="call",
        step_order=1,
        step_type=StepType.SERVICE_CALL,
        service_endpoint="flaky",
        retry_attempts=2,
    )
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo, services=services).execute(definition, instance, execution)

    assert result.status is StepStatus.COMPLETED
    assert result.retry_count == 2
    assert instance.retry_count == 2
    assert result.output_data == {"attempts": 3}


@pytest.mark.asyncio
async def test_retries_stop_at_instance_budget(repo):
    services = HandlerRegistry("service endpoint")

    @services.register("down")
    async def down(data):
        raise RuntimeError("down")

    step = StepDefinition(
        step_name="call",
        step_order=1,
        step_type=StepType.SERVICE_CALL,
        service_endpoint="down",
        retry_attempts=5,
    )
    definition, instance, (execution,) = await _prepare(repo, step, max_retry_attempts=1)

    result = await _executor(repo, services=services).execute(definition, instance, execution)

    assert result.status is StepStatus.FAILED
    assert result.retry_count == 1
    assert result.error_message == "down"


@pytest.mark.asyncio
async def test_notification_failure_fails_step(repo):
    notifier = InMemoryNotifier(reject_templates={"user_approval_result"})
    step = StepDefinition(
        step_name="notify",
        step_order=1,
        step_type=StepType.NOTIFICATION,
        notification_template="user_approval_result",
    )
    definition, instance, (execution,) = await _prepare(repo, step, input_data={"approved": True})

    result = await _executor(repo, notifier).execute(definition, instance, execution)

    assert result.status is StepStatus.FAILED
    assert result.error_message.startswith("Notification failed")
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_notification_renders_variables_as_text(repo):
    notifier = InMemoryNotifier()
    step = StepDefinition(
        step_name="notify",
        step_order=1,
        step_type=StepType.NOTIFICATION,
        notification_template="user_approval_result",
    )
    definition, instance, (execution,) = await _prepare(
        repo, step, input_data={"userId": 42}, context_data={"approved": True}
    )

    result = await _executor(repo, notifier).execute(definition, instance, execution)

    assert result.status is StepStatus.COMPLETED
    assert notifier.sent[0].variables == {"userId": "42", "approved": "true"}


@pytest.mark.asyncio
async def test_conditional_step_skips_when_false(repo):
    step = StepDefinition(
        step_name="is_admin",
        step_order=1,
        step_type=StepType.CONDITIONAL,
        condition_expression="requestedRole == 'CLINIC_ADMIN'",
    )
    definition, instance, (execution,) = await _prepare(
        repo, step, context_data={"requestedRole": "PATIENT"}
    )

    result = await _executor(repo).execute(definition, instance, execution)

    assert result.status is StepStatus.SKIPPED
    assert result.output_data["condition_met"] is False
    assert "is_admin" not in instance.output_data


@pytest.mark.asyncio
async def test_wait_step_records_resume_time(repo):
    step = StepDefinition(
        step_name="cool_off",
        step_order=1,
        step_type=StepType.WAIT,
        step_configuration={"wait_minutes": 30},
    )
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo).execute(definition, instance, execution)

    assert result.status is StepStatus.WAITING_APPROVAL
    assert result.resume_at is not None
    assert (await repo.get_execution(execution.id)).resume_at == result.resume_at


@pytest.mark.asyncio
async def test_slow_step_times_out(repo):
    services = HandlerRegistry("service endpoint")

    @services.register("slow")
    async def slow(data):
        await asyncio.sleep(5)

    step = StepDefinition(
        step_name="call",
        step_order=1,
        step_type=StepType.SERVICE_CALL,
        service_endpoint="slow",
        timeout_minutes=0.001,
    )
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo, services=services).execute(definition, instance, execution)

    assert result.status is StepStatus.TIMEOUT
    assert "timed out" in result.error_message


@pytest.mark.asyncio
async def test_missing_step_definition_raises(repo):
    step = StepDefinition(step_name="a", step_order=1, step_type=StepType.AUTOMATED)
    definition, instance, (execution,) = await _prepare(repo, step)
    execution.step_order = 9
    with pytest.raises(StepExecutionFailure):
        await _executor(repo).execute(definition, instance, execution)


def test_project_inputs_prefers_context_and_applies_mapping():
    instance = WorkflowInstance(
        workflow_definition_id="d",
        workflow_name="demo",
        workflow_version=1,
        input_data={"userId": 1, "role": "PATIENT"},
        context_data={"role": "DENTIST"},
    )
    plain = StepDefinition(step_name="a", step_order=1, step_type=StepType.AUTOMATED)
    mapped = StepDefinition(
        step_name="b",
        step_order=2,
        step_type=StepType.AUTOMATED,
        input_mapping={"user": "userId", "missing": "nope"},
    )

    assert project_inputs(plain, instance) == {"userId": 1, "role": "DENTIST"}
    assert project_inputs(mapped, instance) == {"user": 1}


def test_merge_output_promotes_mapped_fields():
    instance = WorkflowInstance(workflow_definition_id="d", workflow_name="demo", workflow_version=1)
    step = StepDefinition(
        step_name="review",
        step_order=1,
        step_type=StepType.MANUAL_APPROVAL,
        output_mapping={"approver_id": "reviewedBy"},
    )
    merge_output(step, instance, {"approved": True, "approver_id": "admin-1"})
    assert instance.output_data["review"]["approved"] is True
    assert instance.context_data == {"reviewedBy": "admin-1"}


@pytest.mark.asyncio
async def test_unserializable_action_output_fails_step(repo):
    actions = HandlerRegistry("automated action")
    actions.register("opaque", lambda inputs, context, config: {"handle": object()})
    step = StepDefinition(
        step_name="lookup",
        step_order=1,
        step_type=StepType.AUTOMATED,
        step_configuration={"action": "opaque"},
    )
    definition, instance, (execution,) = await _prepare(repo, step)

    result = await _executor(repo, actions=actions).execute(definition, instance, execution)

    assert result.status is StepStatus.FAILED
    assert "serialize" in result.error_message
    stored = await repo.get_execution(execution.id)
    assert stored.status is StepStatus.FAILED
    assert stored.output_data == {}
    assert "lookup" not in instance.output_data
