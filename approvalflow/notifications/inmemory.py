"""In-memory notifier for testing."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from ..exceptions import NotificationRejected
from ..models import utcnow
from .base import BaseNotifier


@dataclass
class SentNotification:
    template: str
    variables: Dict[str, str]
    sent_at: datetime = field(default_factory=utcnow)


class InMemoryNotifier(BaseNotifier):
    """Keeps accepted notifications in a list.

    Templates named in ``reject_templates`` are refused, which lets tests
    exercise dispatch failures.
    """

    def __init__(self, reject_templates: Optional[Iterable[str]] = None) -> None:
        self.sent: List[SentNotification] = []
        self.reject_templates = set(reject_templates or ())
        self._lock = asyncio.Lock()

    async def send(self, template: str, variables: Mapping[str, str]) -> None:
        if template in self.reject_templates:
            raise NotificationRejected(f"Template '{template}' was rejected by the dispatcher")
        async with self._lock:
            self.sent.append(SentNotification(template=template, variables=dict(variables)))

    def templates(self) -> List[str]:
        return [n.template for n in self.sent]
