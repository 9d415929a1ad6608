"""Tests for handler registries and HTTP service endpoints."""

import json

import httpx
import pytest

from approvalflow.config import ApprovalflowConfig, ServiceEndpointConfig
from approvalflow.exceptions import StepExecutionFailure, UnknownHandler
from approvalflow.registry import HandlerRegistry, HttpEndpoint, build_service_registry


@pytest.mark.asyncio
async def test_registry_invokes_sync_and_async_handlers():
    registry = HandlerRegistry("automated action")
    registry.register("sync", lambda data: {"seen": data["x"]})

    @registry.register("async")
    async def handler(data):
        return {"seen": data["x"] * 2}

    registry.register("nothing", lambda data: None)

    assert await registry.invoke("sync", {"x": 1}) == {"seen": 1}
    assert await registry.invoke("async", {"x": 1}) == {"seen": 2}
    assert await registry.invoke("nothing", {}) == {}
    assert registry.names() == ["async", "nothing", "sync"]
    assert "sync" in registry and len(registry) == 3


@pytest.mark.asyncio
async def test_registry_errors():
    registry = HandlerRegistry("service endpoint")
    registry.register("bad", lambda data: ["not", "a", "mapping"])

    with pytest.raises(UnknownHandler):
        await registry.invoke("auth-service", {})
    with pytest.raises(StepExecutionFailure):
        await registry.invoke("bad", {})


def test_names_are_not_interpreted():
    registry = HandlerRegistry("service endpoint")
    registry.register("auth-service/user/{userId}/approval", lambda data: {})
    assert "auth-service" not in registry
    assert "auth-service/user/{userId}/approval" in registry


@pytest.mark.asyncio
async def test_http_endpoint_posts_json_and_fills_url():
    seen = []

    def respond(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"updated": True})

    endpoint = HttpEndpoint(
        "http://auth.local/users/{userId}/approval",
        method="put",
        transport=httpx.MockTransport(respond),
    )

    result = await endpoint({"userId": 42, "approved": True})

    assert result == {"updated": True}
    (request,) = seen
    assert request.method == "PUT"
    assert str(request.url) == "http://auth.local/users/42/approval"
    assert json.loads(request.content) == {"userId": 42, "approved": True}


@pytest.mark.asyncio
async def test_http_endpoint_get_uses_query_params():
    def respond(request: httpx.Request) -> httpx.Response:
        assert request.url.params["userId"] == "7"
        return httpx.Response(200, json=["a", "b"])

    endpoint = HttpEndpoint(
        "http://directory.local/users", method="GET", transport=httpx.MockTransport(respond)
    )
    assert await endpoint({"userId": 7}) == {"status_code": 200, "response": ["a", "b"]}


@pytest.mark.asyncio
async def test_http_endpoint_errors():
    endpoint = HttpEndpoint(
        "http://auth.local/users/{userId}",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(StepExecutionFailure):
        await endpoint({})
    with pytest.raises(httpx.HTTPStatusError):
        await endpoint({"userId": 1})


@pytest.mark.asyncio
async def test_build_service_registry_from_config():
    config = ApprovalflowConfig(
        services={
            "auth-service/user/{userId}/approval": ServiceEndpointConfig(
                url="http://auth.local/users/{userId}/approval"
            )
        }
    )
    transport = httpx.MockTransport(lambda request: httpx.Response(204))

    registry = build_service_registry(config, transport=transport)

    assert registry.names() == ["auth-service/user/{userId}/approval"]
    result = await registry.invoke("auth-service/user/{userId}/approval", {"userId": 3})
    assert result == {"status_code": 204}
    assert len(build_service_registry()) == 0
