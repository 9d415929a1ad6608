"""Definition authoring: create, look up and maintain workflow templates."""

from __future__ import annotations

import logging
from typing import Optional

from .conditions import parse_condition
from .exceptions import DefinitionInvalid, DefinitionNotFound
from .models import (
    DefinitionUpdate,
    StepType,
    WorkflowDefinition,
    utcnow,
)
from .persistence import DefinitionStore

logger = logging.getLogger(__name__)


class DefinitionService:
    """CRUD over workflow definitions.

    Step lists are fixed at creation; changing steps means creating a new
    version. Lookups by name resolve to the highest active version.
    """

    def __init__(self, store: DefinitionStore) -> None:
        self._store = store

    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        validate_definition(definition)
        definition = definition.model_copy(deep=True)
        definition.steps = sorted(definition.steps, key=lambda s: s.step_order)
        for step in definition.steps:
            step.workflow_definition_id = definition.id
        now = utcnow()
        definition.created_at = now
        definition.updated_at = now
        await self._store.create_definition(definition)
        logger.info(
            f"Created workflow definition {definition.name} v{definition.version} "
            f"({len(definition.steps)} steps)"
        )
        return definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self._store.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(f"Workflow definition {definition_id} not found")
        return definition

    async def get_definition_by_name(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        if version is not None:
            definition = await self._store.get_definition_version(name, version)
            if definition is None:
                raise DefinitionNotFound(f"Workflow definition {name} v{version} not found")
            return definition
        definition = await self._store.get_latest_definition(name)
        if definition is None:
            raise DefinitionNotFound(f"No active workflow definition named {name}")
        return definition

    async def list_definitions(
        self, active_only: bool = True, category: Optional[str] = None
    ) -> list[WorkflowDefinition]:
        return await self._store.list_definitions(active_only=active_only, category=category)

    async def next_version(self, name: str) -> int:
        versions = [d.version for d in await self._store.list_definitions() if d.name == name]
        return max(versions, default=0) + 1

    async def update_definition(
        self, definition_id: str, update: DefinitionUpdate
    ) -> WorkflowDefinition:
        definition = await self.get_definition(definition_id)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        for field_name, value in changes.items():
            setattr(definition, field_name, value)
        await self._store.save_definition(definition)
        logger.info(
            f"Updated workflow definition {definition.name} v{definition.version}: "
            f"{', '.join(sorted(changes)) or 'no changes'}"
        )
        return definition

    async def activate(self, definition_id: str) -> WorkflowDefinition:
        return await self.update_definition(definition_id, DefinitionUpdate(is_active=True))

    async def deactivate(self, definition_id: str) -> WorkflowDefinition:
        return await self.update_definition(definition_id, DefinitionUpdate(is_active=False))


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise ``DefinitionInvalid`` if ``definition`` cannot be executed."""
    if not definition.name.strip():
        raise DefinitionInvalid("Workflow definition needs a name")
    if definition.version < 1:
        raise DefinitionInvalid(f"{definition.name}: version must be positive")
    if not definition.steps:
        raise DefinitionInvalid(f"{definition.name}: at least one step is required")

    seen_orders: set[int] = set()
    seen_names: set[str] = set()
    for step in definition.steps:
        where = f"{definition.name} step {step.step_order} '{step.step_name}'"
        if step.step_order < 1:
            raise DefinitionInvalid(f"{where}: step order must be positive")
        if step.step_order in seen_orders:
            raise DefinitionInvalid(f"{where}: duplicate step order")
        if step.step_name in seen_names:
            raise DefinitionInvalid(f"{where}: duplicate step name")
        seen_orders.add(step.step_order)
        seen_names.add(step.step_name)

        if step.is_parallel:
            raise DefinitionInvalid(f"{where}: parallel steps are not supported")
        if step.retry_attempts < 0:
            raise DefinitionInvalid(f"{where}: retry attempts cannot be negative")
        if step.step_type is StepType.SERVICE_CALL and not step.service_endpoint:
            raise DefinitionInvalid(f"{where}: SERVICE_CALL steps need a service endpoint")
        if step.step_type is StepType.NOTIFICATION and not step.notification_template:
            raise DefinitionInvalid(f"{where}: NOTIFICATION steps need a template")
        if step.step_type is StepType.CONDITIONAL:
            parse_condition(step.condition_expression)
