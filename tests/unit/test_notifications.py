"""Notification dispatcher tests."""

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from approvalflow.exceptions import NotificationRejected
from approvalflow.notifications import InMemoryNotifier, get_notifier
from approvalflow.notifications.redis import RedisNotifier


class _FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.lists = {}

    async def lpush(self, key, value):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_inmemory_notifier_records_and_rejects():
    notifier = InMemoryNotifier(reject_templates={"blocked"})

    await notifier.send("user_approval_request", {"userId": "42"})
    with pytest.raises(NotificationRejected):
        await notifier.send("blocked", {})

    assert notifier.templates() == ["user_approval_request"]
    assert notifier.sent[0].variables == {"userId": "42"}


@pytest.mark.asyncio
async def test_redis_notifier_pushes_envelope():
    notifier = RedisNotifier(queue="test:notifications")
    fake = _FakeRedis()
    notifier._redis = fake

    await notifier.send("staff_approval_request", {"clinicId": "7"})

    (raw,) = fake.lists["test:notifications"]
    envelope = json.loads(raw)
    assert envelope["template"] == "staff_approval_request"
    assert envelope["variables"] == {"clinicId": "7"}
    assert "sent_at" in envelope

    await notifier.disconnect()
    assert notifier._redis is None


@pytest.mark.asyncio
async def test_redis_errors_become_rejections():
    notifier = RedisNotifier()
    notifier._redis = _FakeRedis(fail=True)
    with pytest.raises(NotificationRejected):
        await notifier.send("user_approval_request", {})


def test_get_notifier_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
notifications:
  backend: redis
  redis:
    host: confighost
    port: 6380
    queue: approvals
"""
    )
    monkeypatch.setenv("APPROVALFLOW_CONFIG", str(config_path))

    notifier = get_notifier()
    assert isinstance(notifier, RedisNotifier)
    assert notifier.host == "confighost"
    assert notifier.port == 6380
    assert notifier.queue == "approvals"

    assert isinstance(get_notifier("inmemory"), InMemoryNotifier)
    with pytest.raises(ValueError):
        get_notifier("carrier-pigeon")
