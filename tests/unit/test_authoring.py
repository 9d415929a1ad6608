"""Tests for definition authoring and validation."""

import pytest

from approvalflow.authoring import DefinitionService, validate_definition
from approvalflow.exceptions import (
    ConditionSyntaxError,
    DefinitionAlreadyExists,
    DefinitionInvalid,
    DefinitionNotFound,
)
from approvalflow.models import DefinitionUpdate, StepDefinition, StepType, WorkflowDefinition


def _step(order, name=None, step_type=StepType.AUTOMATED, **kwargs):
    return StepDefinition(
        step_name=name or f"step_{order}", step_order=order, step_type=step_type, **kwargs
    )


@pytest.mark.asyncio
async def test_create_sorts_steps_and_links_them(repo):
    service = DefinitionService(repo)
    definition = WorkflowDefinition(name="demo", steps=[_step(3), _step(1), _step(2)])

    created = await service.create_definition(definition)

    assert [s.step_order for s in created.steps] == [1, 2, 3]
    assert all(s.workflow_definition_id == created.id for s in created.steps)
    stored = await service.get_definition(created.id)
    assert [s.step_name for s in stored.steps] == ["step_1", "step_2", "step_3"]


@pytest.mark.asyncio
async def test_duplicate_name_and_version_rejected(repo):
    service = DefinitionService(repo)
    await service.create_definition(WorkflowDefinition(name="demo", steps=[_step(1)]))
    with pytest.raises(DefinitionAlreadyExists):
        await service.create_definition(WorkflowDefinition(name="demo", steps=[_step(1)]))


@pytest.mark.asyncio
async def test_lookup_by_name_returns_highest_active_version(repo):
    service = DefinitionService(repo)
    v1 = await service.create_definition(WorkflowDefinition(name="demo", steps=[_step(1)]))
    v2 = await service.create_definition(
        WorkflowDefinition(name="demo", version=2, steps=[_step(1)])
    )

    assert (await service.get_definition_by_name("demo")).id == v2.id
    await service.deactivate(v2.id)
    assert (await service.get_definition_by_name("demo")).id == v1.id
    assert (await service.get_definition_by_name("demo", version=2)).id == v2.id
    assert await service.next_version("demo") == 3

    await service.deactivate(v1.id)
    with pytest.raises(DefinitionNotFound):
        await service.get_definition_by_name("demo")


@pytest.mark.asyncio
async def test_list_filters_by_activity_and_category(repo):
    service = DefinitionService(repo)
    await service.create_definition(
        WorkflowDefinition(name="a", category="USER_MANAGEMENT", steps=[_step(1)])
    )
    b = await service.create_definition(WorkflowDefinition(name="b", steps=[_step(1)]))
    await service.deactivate(b.id)

    assert [d.name for d in await service.list_definitions()] == ["a"]
    assert [d.name for d in await service.list_definitions(active_only=False)] == ["a", "b"]
    assert [d.name for d in await service.list_definitions(category="USER_MANAGEMENT")] == ["a"]


@pytest.mark.asyncio
async def test_update_leaves_steps_untouched(repo):
    service = DefinitionService(repo)
    created = await service.create_definition(WorkflowDefinition(name="demo", steps=[_step(1)]))

    updated = await service.update_definition(
        created.id, DefinitionUpdate(description="Reviewed", timeout_minutes=60)
    )

    assert updated.description == "Reviewed"
    stored = await service.get_definition(created.id)
    assert stored.timeout_minutes == 60
    assert [s.step_name for s in stored.steps] == ["step_1"]


@pytest.mark.asyncio
async def test_update_missing_definition(repo):
    with pytest.raises(DefinitionNotFound):
        await DefinitionService(repo).update_definition("missing", DefinitionUpdate())


@pytest.mark.parametrize(
    "definition, message",
    [
        (WorkflowDefinition(name="demo", steps=[]), "at least one step"),
        (WorkflowDefinition(name="demo", version=0, steps=[_step(1)]), "version"),
        (WorkflowDefinition(name="demo", steps=[_step(1), _step(1, "other")]), "duplicate step order"),
        (WorkflowDefinition(name="demo", steps=[_step(1, "x"), _step(2, "x")]), "duplicate step name"),
        (WorkflowDefinition(name="demo", steps=[_step(0)]), "positive"),
        (WorkflowDefinition(name="demo", steps=[_step(1, is_parallel=True)]), "parallel"),
        (WorkflowDefinition(name="demo", steps=[_step(1, retry_attempts=-1)]), "negative"),
        (
            WorkflowDefinition(name="demo", steps=[_step(1, step_type=StepType.SERVICE_CALL)]),
            "service endpoint",
        ),
        (
            WorkflowDefinition(name="demo", steps=[_step(1, step_type=StepType.NOTIFICATION)]),
            "template",
        ),
    ],
)
def test_validation_errors(definition, message):
    with pytest.raises(DefinitionInvalid, match=message):
        validate_definition(definition)


def test_conditional_expression_checked_at_authoring():
    definition = WorkflowDefinition(
        name="demo",
        steps=[_step(1, step_type=StepType.CONDITIONAL, condition_expression="role != 'x'")],
    )
    with pytest.raises(ConditionSyntaxError):
        validate_definition(definition)
