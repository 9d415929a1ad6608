"""Approvalflow: Durable, auditable approval-chain workflows."""

from .engine import WorkflowEngine, build_engine
from .exceptions import WorkflowError
from .models import (
    StartWorkflowRequest,
    StepDefinition,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)
from .notifications import get_notifier
from .persistence import get_repository
from .registry import HandlerRegistry

__version__ = "0.1.0"
__all__ = [
    "WorkflowEngine",
    "build_engine",
    "WorkflowError",
    "StartWorkflowRequest",
    "StepDefinition",
    "StepExecution",
    "StepStatus",
    "StepType",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowStatus",
    "get_notifier",
    "get_repository",
    "HandlerRegistry",
]
