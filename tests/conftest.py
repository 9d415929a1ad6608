import pytest

import approvalflow.persistence as persistence
from approvalflow.engine import WorkflowEngine
from approvalflow.models import StepDefinition, StepType, WorkflowDefinition
from approvalflow.notifications import InMemoryNotifier
from approvalflow.persistence import InMemoryWorkflowRepository
from approvalflow.registry import HandlerRegistry
from approvalflow.utils.retry import RetryPolicy


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep tests away from real config files and cached repositories."""
    for var in ("APPROVALFLOW_CONFIG", "APPROVALFLOW_DATABASE_URL", "DATABASE_URL", "APPROVALFLOW_NOTIFIER"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


def approval_chain(name: str = "user_approval", **overrides) -> WorkflowDefinition:
    """AUTOMATED -> MANUAL_APPROVAL -> SERVICE_CALL."""
    fields = dict(
        name=name,
        auto_start=True,
        steps=[
            StepDefinition(step_name="validate", step_order=1, step_type=StepType.AUTOMATED),
            StepDefinition(
                step_name="review",
                step_order=2,
                step_type=StepType.MANUAL_APPROVAL,
                approval_roles=["SYSTEM_ADMIN"],
            ),
            StepDefinition(
                step_name="update_status",
                step_order=3,
                step_type=StepType.SERVICE_CALL,
                service_endpoint="auth-service/approval",
            ),
        ],
    )
    fields.update(overrides)
    return WorkflowDefinition(**fields)


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def service_calls():
    return []


@pytest.fixture
def services(service_calls):
    registry = HandlerRegistry("service endpoint")

    @registry.register("auth-service/approval")
    async def update_status(data):
        service_calls.append(dict(data))
        return {"updated": True}

    return registry


@pytest.fixture
def engine(repo, notifier, services):
    return WorkflowEngine(
        repo, notifier, services=services, retry_policy=RetryPolicy(base=0, jitter=0)
    )


@pytest.fixture
def make_chain():
    return approval_chain
