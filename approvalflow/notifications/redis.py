"""Redis notifier for cross-process delivery."""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..constants import NOTIFICATION_QUEUE
from ..exceptions import NotificationRejected
from ..models import utcnow
from .base import BaseNotifier


class RedisNotifier(BaseNotifier):
    """Pushes notification envelopes onto a Redis list.

    A delivery worker pops envelopes from the other end of ``queue`` and
    renders the template; the engine only needs the push to succeed.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        queue: str = NOTIFICATION_QUEUE,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.queue = queue
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        client = redis.Redis(
            host=self.host, port=self.port, db=self.db, password=self.password, decode_responses=True
        )
        await client.ping()
        self._redis = client

    async def disconnect(self) -> None:
        client, self._redis = self._redis, None
        if client is not None:
            await client.aclose()

    async def send(self, template: str, variables: Mapping[str, str]) -> None:
        envelope = {"template": template, "variables": dict(variables), "sent_at": utcnow().isoformat()}
        try:
            if self._redis is None:
                await self.connect()
            await self._redis.lpush(self.queue, json.dumps(envelope))
        except RedisError as exc:
            raise NotificationRejected(f"Redis dispatch failed for {template}: {exc}") from exc
