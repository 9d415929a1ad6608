"""Error taxonomy for the workflow engine."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for every error raised by approvalflow."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class DefinitionNotFound(WorkflowError):
    pass


class DefinitionInactive(WorkflowError):
    pass


class DefinitionAlreadyExists(WorkflowError):
    pass


class DefinitionInvalid(WorkflowError):
    """A definition failed validation at authoring time."""


class ConditionSyntaxError(DefinitionInvalid, ValueError):
    """A condition expression could not be parsed."""


class DuplicateBusinessKey(WorkflowError):
    """A live instance already owns the business key."""

    def __init__(self, business_key: str, instance_id: str | None = None) -> None:
        self.business_key = business_key
        self.instance_id = instance_id
        message = f"Business key '{business_key}' is already in use"
        if instance_id:
            message += f" by instance {instance_id}"
        super().__init__(message)


class InstanceNotFound(WorkflowError):
    pass


class StepExecutionNotFound(WorkflowError):
    pass


class InvalidTransition(WorkflowError):
    """A status guard rejected the requested operation."""

    def __init__(self, record: str, current: object, target: object) -> None:
        self.record = record
        self.current = current
        self.target = target
        super().__init__(
            f"{record} cannot move from {_label(current)} to {_label(target)}"
        )


class ConcurrentModification(WorkflowError):
    """A record changed between read and write."""


class StepExecutionFailure(WorkflowError):
    """Raised inside the executor when a step cannot complete."""


class NotificationRejected(StepExecutionFailure):
    """The notification dispatcher refused a message."""


class UnknownHandler(StepExecutionFailure):
    """No handler is registered under the requested name."""


class ApprovalRejected(WorkflowError):
    pass


class WorkflowTimeout(WorkflowError):
    pass


def _label(value: object) -> str:
    return getattr(value, "value", None) or str(value)


__all__ = [
    "WorkflowError",
    "DefinitionNotFound",
    "DefinitionInactive",
    "DefinitionAlreadyExists",
    "DefinitionInvalid",
    "ConditionSyntaxError",
    "DuplicateBusinessKey",
    "InstanceNotFound",
    "StepExecutionNotFound",
    "InvalidTransition",
    "ConcurrentModification",
    "StepExecutionFailure",
    "NotificationRejected",
    "UnknownHandler",
    "ApprovalRejected",
    "WorkflowTimeout",
]
